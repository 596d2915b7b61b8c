# src/core/repositories/interfaces.py
"""
Абстрактные репозитории.

Каждая сущность принадлежит своему репозиторию, ссылки между сущностями
хранятся только по id. Все изменения идут через compare_and_set:
ожидаемые значения полей проверяются и изменения применяются атомарно,
version увеличивается на единицу.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Generic, Optional, TypeVar

from src.core.bookings.models import DriverBooking, DriverBookingFilter, Reservation, ReservationFilter
from src.core.chat.models import Conversation, Message
from src.core.notifications.models import Notification, NotificationFilter
from src.core.payments.models import Payment, PaymentFilter
from src.core.promos.models import PromoCode
from src.core.tracking.models import TrackerFilter, VehicleTracker
from src.core.users.models import DriverProfile, User, Vehicle
from src.shared.models.common import Document

D = TypeVar("D", bound=Document)


class DocumentRepository(ABC, Generic[D]):
    """Базовые операции над документами одной коллекции."""

    @abstractmethod
    async def get(self, doc_id: str) -> Optional[D]:
        ...

    @abstractmethod
    async def insert(self, doc: D) -> D:
        """Вставка. Дубликат уникального ключа -> ConflictError."""

    @abstractmethod
    async def compare_and_set(
        self,
        doc_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[D]:
        """
        Применяет changes, если текущие значения полей совпадают с expected.

        Returns:
            Обновлённый документ или None (документа нет либо ожидание не совпало)
        """

    async def update(self, doc_id: str, changes: Mapping[str, Any]) -> Optional[D]:
        """Безусловное обновление."""
        return await self.compare_and_set(doc_id, {}, changes)

    @abstractmethod
    async def delete(self, doc_id: str) -> bool:
        ...


# =============================================================================
# СПРАВОЧНЫЕ ДАННЫЕ
# =============================================================================

class UserRepository(DocumentRepository[User]):
    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[User]:
        ...


class DriverProfileRepository(DocumentRepository[DriverProfile]):
    @abstractmethod
    async def get_by_user(self, user_id: str) -> Optional[DriverProfile]:
        ...


class VehicleRepository(DocumentRepository[Vehicle]):
    pass


# =============================================================================
# БРОНИРОВАНИЯ
# =============================================================================

class ReservationRepository(DocumentRepository[Reservation]):
    """Бронирования автомобилей."""

    CONFLICT_CODE = "VEHICLE_TIME_CONFLICT"

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[Reservation]:
        ...

    @abstractmethod
    async def list(self, flt: ReservationFilter) -> list[Reservation]:
        """Отфильтрованный список, новые первыми."""

    @abstractmethod
    async def find_blocking(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> list[Reservation]:
        """Блокирующие брони автомобиля, пересекающие [start, end)."""

    @abstractmethod
    async def insert_exclusive(self, reservation: Reservation) -> Reservation:
        """Вставка с атомарной проверкой пересечений (ConflictError при пересечении)."""

    @abstractmethod
    async def compare_and_set_exclusive(
        self,
        doc_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[Reservation]:
        """CAS с повторной проверкой пересечений для нового состояния."""


class DriverBookingRepository(DocumentRepository[DriverBooking]):
    """Заказы водителей."""

    CONFLICT_CODE = "DRIVER_TIME_CONFLICT"

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[DriverBooking]:
        ...

    @abstractmethod
    async def list(self, flt: DriverBookingFilter) -> list[DriverBooking]:
        """Отфильтрованный список, сортировка по start_at по убыванию."""

    @abstractmethod
    async def find_blocking(
        self,
        driver_user_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> list[DriverBooking]:
        ...

    @abstractmethod
    async def insert_exclusive(self, booking: DriverBooking) -> DriverBooking:
        ...

    @abstractmethod
    async def compare_and_set_exclusive(
        self,
        doc_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[DriverBooking]:
        ...

    @abstractmethod
    async def list_expirable(self, now: datetime, requested_before: datetime) -> list[DriverBooking]:
        """
        Кандидаты на истечение: принятые с payment_deadline_at < now
        и запрошенные с requested_at < requested_before.
        """


# =============================================================================
# ПЛАТЕЖИ И ПРОМОКОДЫ
# =============================================================================

class PaymentRepository(DocumentRepository[Payment]):
    """Платежи."""

    ACTIVE_CONFLICT_CODE = "PAYMENT_ALREADY_ACTIVE"

    @abstractmethod
    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        """Поиск по provider_ref или merchant_reference."""

    @abstractmethod
    async def find_active_for_target(
        self,
        reservation_id: Optional[str] = None,
        driver_booking_id: Optional[str] = None,
    ) -> Optional[Payment]:
        ...

    @abstractmethod
    async def insert_exclusive(self, payment: Payment) -> Payment:
        """Вставка, если у цели нет активного платежа (иначе ConflictError)."""

    @abstractmethod
    async def list(self, flt: PaymentFilter) -> list[Payment]:
        ...

    @abstractmethod
    async def list_pollable(self, limit: int) -> list[Payment]:
        """Нетерминальные платежи с poll_url, давно не обновлявшиеся первыми."""


class PromoCodeRepository(DocumentRepository[PromoCode]):
    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        ...

    @abstractmethod
    async def list_active(self, now: datetime) -> list[PromoCode]:
        ...

    @abstractmethod
    async def increment_usage(self, promo_id: str) -> bool:
        """used_count += 1, если лимит не исчерпан. False, если исчерпан."""


# =============================================================================
# ЧАТ
# =============================================================================

class ConversationRepository(DocumentRepository[Conversation]):
    @abstractmethod
    async def list_for_user(self, user_id: str) -> list[Conversation]:
        """Неархивные беседы пользователя, по last_message_at по убыванию."""


class MessageRepository(DocumentRepository[Message]):
    @abstractmethod
    async def list_for_conversation(
        self,
        conversation_id: str,
        offset: int,
        limit: int,
    ) -> tuple[list[Message], int]:
        """Страница сообщений (новые первыми) и общее количество."""

    @abstractmethod
    async def add_reader(self, message_id: str, user_id: str) -> Optional[Message]:
        """Идемпотентно добавляет user_id в read_by."""


# =============================================================================
# ТРЕКИНГ И УВЕДОМЛЕНИЯ
# =============================================================================

class TrackerRepository(DocumentRepository[VehicleTracker]):
    @abstractmethod
    async def get_by_device(self, device_id: str) -> Optional[VehicleTracker]:
        ...

    @abstractmethod
    async def find_by_vehicle(self, vehicle_id: str, statuses: set[str]) -> Optional[VehicleTracker]:
        ...

    @abstractmethod
    async def list(self, flt: TrackerFilter) -> list[VehicleTracker]:
        ...


class NotificationRepository(DocumentRepository[Notification]):
    @abstractmethod
    async def list(self, flt: NotificationFilter) -> list[Notification]:
        """Новые первыми."""

    @abstractmethod
    async def list_candidates(self) -> list[Notification]:
        """Активные уведомления в статусах sent/scheduled."""


class Repositories:
    """Набор репозиториев, передаваемый сервисам."""

    def __init__(
        self,
        users: UserRepository,
        driver_profiles: DriverProfileRepository,
        vehicles: VehicleRepository,
        reservations: ReservationRepository,
        driver_bookings: DriverBookingRepository,
        payments: PaymentRepository,
        promos: PromoCodeRepository,
        conversations: ConversationRepository,
        messages: MessageRepository,
        trackers: TrackerRepository,
        notifications: NotificationRepository,
    ) -> None:
        self.users = users
        self.driver_profiles = driver_profiles
        self.vehicles = vehicles
        self.reservations = reservations
        self.driver_bookings = driver_bookings
        self.payments = payments
        self.promos = promos
        self.conversations = conversations
        self.messages = messages
        self.trackers = trackers
        self.notifications = notifications
