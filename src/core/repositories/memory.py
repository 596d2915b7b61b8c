# src/core/repositories/memory.py
"""
In-memory реализации репозиториев.

Используются в тестах и при STORAGE_BACKEND=memory. Атомарность
обеспечивается asyncio.Lock на коллекцию, наружу отдаются копии
документов, чтобы вызывающий код не мог изменить хранимое состояние.
"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import ValidationError as PydanticValidationError

from src.common.clock import Clock, SystemClock
from src.common.constants import ACTIVE_PAYMENT_STATUSES, TERMINAL_PAYMENT_STATUSES, DriverBookingStatus
from src.common.errors import ConflictError, ValidationError
from src.core.bookings.models import (
    DriverBooking,
    DriverBookingFilter,
    Reservation,
    ReservationFilter,
    intervals_overlap,
)
from src.core.chat.models import Conversation, Message
from src.core.notifications.models import Notification, NotificationFilter
from src.core.payments.models import Payment, PaymentFilter
from src.core.promos.models import PromoCode, normalize_code
from src.core.repositories.interfaces import (
    ConversationRepository,
    DocumentRepository,
    DriverBookingRepository,
    DriverProfileRepository,
    MessageRepository,
    NotificationRepository,
    PaymentRepository,
    PromoCodeRepository,
    Repositories,
    ReservationRepository,
    TrackerRepository,
    UserRepository,
    VehicleRepository,
)
from src.core.tracking.models import TrackerFilter, VehicleTracker
from src.core.users.models import DriverProfile, User, Vehicle
from src.shared.models.common import Document

D = TypeVar("D", bound=Document)


def apply_changes(current: D, changes: Mapping[str, Any], now: datetime) -> D:
    """
    Новая версия документа: changes поверх текущих данных, version + 1.

    Raises:
        ValidationError: Результат нарушает инварианты модели
    """
    data = current.model_dump()
    data.update(changes)
    data["version"] = current.version + 1
    data["updated_at"] = now
    try:
        return type(current).model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {type(current).__name__} update", details=e.errors(include_url=False)) from e


def matches_expected(current: Document, expected: Mapping[str, Any]) -> bool:
    """Совпадают ли текущие значения полей с ожидаемыми."""
    return all(getattr(current, field) == value for field, value in expected.items())


class MemoryDocumentRepository(DocumentRepository[D]):
    """Коллекция документов в памяти процесса."""

    unique_fields: tuple[str, ...] = ()

    def __init__(self, clock: Clock | None = None) -> None:
        self._docs: dict[str, D] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or SystemClock()

    @staticmethod
    def _copy(doc: D | None) -> D | None:
        return doc.model_copy(deep=True) if doc is not None else None

    def _check_unique(self, doc: D) -> None:
        for field in self.unique_fields:
            value = getattr(doc, field)
            if value is None:
                continue
            for other in self._docs.values():
                if other.id != doc.id and getattr(other, field) == value:
                    raise ConflictError(
                        f"{type(doc).__name__} with {field}={value!r} already exists",
                        code="DUPLICATE_KEY",
                    )

    def _store(self, doc: D) -> D:
        self._docs[doc.id] = doc.model_copy(deep=True)
        return doc

    async def get(self, doc_id: str) -> Optional[D]:
        return self._copy(self._docs.get(doc_id))

    async def insert(self, doc: D) -> D:
        async with self._lock:
            if doc.id in self._docs:
                raise ConflictError(f"{type(doc).__name__} {doc.id} already exists", code="DUPLICATE_KEY")
            self._check_unique(doc)
            return self._store(doc)

    async def compare_and_set(
        self,
        doc_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[D]:
        async with self._lock:
            current = self._docs.get(doc_id)
            if current is None or not matches_expected(current, expected):
                return None
            updated = apply_changes(current, changes, self._clock.now())
            self._check_unique(updated)
            return self._store(updated)

    async def delete(self, doc_id: str) -> bool:
        async with self._lock:
            return self._docs.pop(doc_id, None) is not None

    async def all(self) -> list[D]:
        """Все документы (для тестов и отладки)."""
        return [d.model_copy(deep=True) for d in self._docs.values()]

    def preload(self, *docs: D) -> None:
        """Загрузка справочных данных до старта (фикстуры, dev-окружение)."""
        for doc in docs:
            self._check_unique(doc)
            self._store(doc)


class ExclusiveMemoryRepository(MemoryDocumentRepository[D]):
    """
    Коллекция с эксклюзивным владением интервалом ресурса.

    Проверка пересечений и запись выполняются под одной блокировкой.
    """

    conflict_message = "Resource is already booked for this time"

    def _overlapping(self, doc: D) -> list[D]:
        raise NotImplementedError

    def _raise_if_conflicts(self, doc: D) -> None:
        if not getattr(doc, "is_blocking", False):
            return
        conflicts = self._overlapping(doc)
        if conflicts:
            raise ConflictError(
                self.conflict_message,
                code=self.CONFLICT_CODE,  # type: ignore[attr-defined]
                details={"conflicts": [c.as_ref().to_dict() for c in conflicts]},  # type: ignore[attr-defined]
            )

    async def insert_exclusive(self, doc: D) -> D:
        async with self._lock:
            if doc.id in self._docs:
                raise ConflictError(f"{type(doc).__name__} {doc.id} already exists", code="DUPLICATE_KEY")
            self._check_unique(doc)
            self._raise_if_conflicts(doc)
            return self._store(doc)

    async def compare_and_set_exclusive(
        self,
        doc_id: str,
        expected: Mapping[str, Any],
        changes: Mapping[str, Any],
    ) -> Optional[D]:
        async with self._lock:
            current = self._docs.get(doc_id)
            if current is None or not matches_expected(current, expected):
                return None
            updated = apply_changes(current, changes, self._clock.now())
            self._check_unique(updated)
            self._raise_if_conflicts(updated)
            return self._store(updated)


# =============================================================================
# СПРАВОЧНЫЕ ДАННЫЕ
# =============================================================================

class MemoryUserRepository(MemoryDocumentRepository[User], UserRepository):
    unique_fields = ("email",)

    async def get_by_email(self, email: str) -> Optional[User]:
        wanted = email.strip().lower()
        for user in self._docs.values():
            if user.email == wanted:
                return self._copy(user)
        return None


class MemoryDriverProfileRepository(MemoryDocumentRepository[DriverProfile], DriverProfileRepository):
    unique_fields = ("user_id",)

    async def get_by_user(self, user_id: str) -> Optional[DriverProfile]:
        for profile in self._docs.values():
            if profile.user_id == user_id:
                return self._copy(profile)
        return None


class MemoryVehicleRepository(MemoryDocumentRepository[Vehicle], VehicleRepository):
    pass


# =============================================================================
# БРОНИРОВАНИЯ
# =============================================================================

class MemoryReservationRepository(ExclusiveMemoryRepository[Reservation], ReservationRepository):
    unique_fields = ("code",)
    conflict_message = "Vehicle is already booked for this time"

    def _blocking_unlocked(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str],
    ) -> list[Reservation]:
        found = [
            r for r in self._docs.values()
            if r.vehicle_id == vehicle_id
            and r.id != exclude_id
            and r.is_blocking
            and intervals_overlap(start, end, r.pickup.at, r.dropoff.at)
        ]
        return sorted(found, key=lambda r: r.pickup.at)

    def _overlapping(self, doc: Reservation) -> list[Reservation]:
        return self._blocking_unlocked(doc.vehicle_id, doc.pickup.at, doc.dropoff.at, doc.id)  # type: ignore[arg-type]

    async def get_by_code(self, code: str) -> Optional[Reservation]:
        for r in self._docs.values():
            if r.code == code:
                return self._copy(r)
        return None

    async def find_blocking(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> list[Reservation]:
        return [r.model_copy(deep=True) for r in self._blocking_unlocked(vehicle_id, start, end, exclude_id)]

    async def list(self, flt: ReservationFilter) -> list[Reservation]:
        def ok(r: Reservation) -> bool:
            if flt.code and r.code != flt.code:
                return False
            if flt.user_id and r.user_id != flt.user_id:
                return False
            if flt.created_by and r.created_by != flt.created_by:
                return False
            if flt.status and r.status != flt.status:
                return False
            if flt.vehicle_id and r.vehicle_id != flt.vehicle_id:
                return False
            if flt.vehicle_model_id and r.vehicle_model_id != flt.vehicle_model_id:
                return False
            if flt.pickup_from and r.pickup.at < flt.pickup_from:
                return False
            if flt.pickup_to and r.pickup.at > flt.pickup_to:
                return False
            if flt.dropoff_from and r.dropoff.at < flt.dropoff_from:
                return False
            if flt.dropoff_to and r.dropoff.at > flt.dropoff_to:
                return False
            return True

        items = [r.model_copy(deep=True) for r in self._docs.values() if ok(r)]
        return sorted(items, key=lambda r: r.created_at, reverse=True)


class MemoryDriverBookingRepository(ExclusiveMemoryRepository[DriverBooking], DriverBookingRepository):
    unique_fields = ("code",)
    conflict_message = "Driver is already booked for this time"

    def _blocking_unlocked(
        self,
        driver_user_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str],
    ) -> list[DriverBooking]:
        found = [
            b for b in self._docs.values()
            if b.driver_user_id == driver_user_id
            and b.id != exclude_id
            and b.is_blocking
            and intervals_overlap(start, end, b.start_at, b.effective_end_at)
        ]
        return sorted(found, key=lambda b: b.start_at)

    def _overlapping(self, doc: DriverBooking) -> list[DriverBooking]:
        return self._blocking_unlocked(doc.driver_user_id, doc.start_at, doc.effective_end_at, doc.id)

    async def get_by_code(self, code: str) -> Optional[DriverBooking]:
        for b in self._docs.values():
            if b.code == code:
                return self._copy(b)
        return None

    async def find_blocking(
        self,
        driver_user_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> list[DriverBooking]:
        return [b.model_copy(deep=True) for b in self._blocking_unlocked(driver_user_id, start, end, exclude_id)]

    async def list(self, flt: DriverBookingFilter) -> list[DriverBooking]:
        def ok(b: DriverBooking) -> bool:
            if flt.status and b.status != flt.status:
                return False
            if flt.customer_id and b.customer_id != flt.customer_id:
                return False
            if flt.driver_user_id and b.driver_user_id != flt.driver_user_id:
                return False
            if flt.start_from and b.start_at < flt.start_from:
                return False
            if flt.start_to and b.start_at > flt.start_to:
                return False
            return True

        items = [b.model_copy(deep=True) for b in self._docs.values() if ok(b)]
        return sorted(items, key=lambda b: b.start_at, reverse=True)

    async def list_expirable(self, now: datetime, requested_before: datetime) -> list[DriverBooking]:
        accepted = {DriverBookingStatus.ACCEPTED_BY_DRIVER.value, DriverBookingStatus.AWAITING_PAYMENT.value}
        found = []
        for b in self._docs.values():
            if b.status in accepted and b.payment_deadline_at is not None and b.payment_deadline_at < now:
                found.append(b.model_copy(deep=True))
            elif b.status == DriverBookingStatus.REQUESTED and b.requested_at < requested_before:
                found.append(b.model_copy(deep=True))
        return found


# =============================================================================
# ПЛАТЕЖИ И ПРОМОКОДЫ
# =============================================================================

class MemoryPaymentRepository(MemoryDocumentRepository[Payment], PaymentRepository):
    unique_fields = ("merchant_reference",)

    def _active_unlocked(self, reservation_id: Optional[str], driver_booking_id: Optional[str]) -> Optional[Payment]:
        for p in self._docs.values():
            if p.status not in ACTIVE_PAYMENT_STATUSES:
                continue
            if reservation_id and p.reservation_id == reservation_id:
                return p
            if driver_booking_id and p.driver_booking_id == driver_booking_id:
                return p
        return None

    async def get_by_reference(self, reference: str) -> Optional[Payment]:
        for p in self._docs.values():
            if p.provider_ref == reference or p.merchant_reference == reference:
                return self._copy(p)
        return None

    async def find_active_for_target(
        self,
        reservation_id: Optional[str] = None,
        driver_booking_id: Optional[str] = None,
    ) -> Optional[Payment]:
        return self._copy(self._active_unlocked(reservation_id, driver_booking_id))

    async def insert_exclusive(self, payment: Payment) -> Payment:
        async with self._lock:
            self._check_unique(payment)
            if payment.status in ACTIVE_PAYMENT_STATUSES:
                active = self._active_unlocked(payment.reservation_id, payment.driver_booking_id)
                if active is not None:
                    raise ConflictError(
                        "An active payment already exists for this booking",
                        code=self.ACTIVE_CONFLICT_CODE,
                        details={"payment_id": active.id},
                    )
            return self._store(payment)

    async def list(self, flt: PaymentFilter) -> list[Payment]:
        def ok(p: Payment) -> bool:
            if flt.user_id and p.user_id != flt.user_id:
                return False
            if flt.status and p.status != flt.status:
                return False
            if flt.reservation_id and p.reservation_id != flt.reservation_id:
                return False
            if flt.driver_booking_id and p.driver_booking_id != flt.driver_booking_id:
                return False
            return True

        items = [p.model_copy(deep=True) for p in self._docs.values() if ok(p)]
        return sorted(items, key=lambda p: p.created_at, reverse=True)

    async def list_pollable(self, limit: int) -> list[Payment]:
        items = [
            p for p in self._docs.values()
            if p.poll_url and p.status not in TERMINAL_PAYMENT_STATUSES
        ]
        items.sort(key=lambda p: p.updated_at)
        return [p.model_copy(deep=True) for p in items[:limit]]


class MemoryPromoCodeRepository(MemoryDocumentRepository[PromoCode], PromoCodeRepository):
    unique_fields = ("code",)

    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        wanted = normalize_code(code)
        for promo in self._docs.values():
            if promo.code == wanted:
                return self._copy(promo)
        return None

    async def list_active(self, now: datetime) -> list[PromoCode]:
        items = [
            p for p in self._docs.values()
            if p.active
            and p.valid_from <= now
            and (p.valid_to is None or p.valid_to >= now)
            and not p.is_exhausted
        ]
        return [p.model_copy(deep=True) for p in sorted(items, key=lambda p: p.code)]

    async def increment_usage(self, promo_id: str) -> bool:
        async with self._lock:
            promo = self._docs.get(promo_id)
            if promo is None or promo.is_exhausted:
                return False
            self._store(apply_changes(promo, {"used_count": promo.used_count + 1}, self._clock.now()))
            return True


# =============================================================================
# ЧАТ
# =============================================================================

class MemoryConversationRepository(MemoryDocumentRepository[Conversation], ConversationRepository):
    async def list_for_user(self, user_id: str) -> list[Conversation]:
        items = [
            c for c in self._docs.values()
            if not c.is_archived and c.has_participant(user_id)
        ]
        items.sort(key=lambda c: c.last_message_at or c.created_at, reverse=True)
        return [c.model_copy(deep=True) for c in items]


class MemoryMessageRepository(MemoryDocumentRepository[Message], MessageRepository):
    async def list_for_conversation(
        self,
        conversation_id: str,
        offset: int,
        limit: int,
    ) -> tuple[list[Message], int]:
        items = [m for m in self._docs.values() if m.conversation_id == conversation_id]
        items.sort(key=lambda m: m.created_at, reverse=True)
        return [m.model_copy(deep=True) for m in items[offset:offset + limit]], len(items)

    async def add_reader(self, message_id: str, user_id: str) -> Optional[Message]:
        async with self._lock:
            message = self._docs.get(message_id)
            if message is None:
                return None
            if user_id in message.read_by:
                return self._copy(message)
            updated = apply_changes(message, {"read_by": [*message.read_by, user_id]}, self._clock.now())
            return self._store(updated)


# =============================================================================
# ТРЕКИНГ И УВЕДОМЛЕНИЯ
# =============================================================================

class MemoryTrackerRepository(MemoryDocumentRepository[VehicleTracker], TrackerRepository):
    unique_fields = ("device_id",)

    async def get_by_device(self, device_id: str) -> Optional[VehicleTracker]:
        wanted = device_id.strip().upper()
        for tracker in self._docs.values():
            if tracker.device_id == wanted:
                return self._copy(tracker)
        return None

    async def find_by_vehicle(self, vehicle_id: str, statuses: set[str]) -> Optional[VehicleTracker]:
        for tracker in self._docs.values():
            if tracker.vehicle_id == vehicle_id and tracker.status in statuses:
                return self._copy(tracker)
        return None

    async def list(self, flt: TrackerFilter) -> list[VehicleTracker]:
        def ok(t: VehicleTracker) -> bool:
            if flt.status and t.status != flt.status:
                return False
            if flt.vehicle_id and t.vehicle_id != flt.vehicle_id:
                return False
            if flt.branch_id and t.branch_id != flt.branch_id:
                return False
            return True

        items = [t.model_copy(deep=True) for t in self._docs.values() if ok(t)]
        return sorted(items, key=lambda t: t.created_at, reverse=True)


class MemoryNotificationRepository(MemoryDocumentRepository[Notification], NotificationRepository):
    async def list(self, flt: NotificationFilter) -> list[Notification]:
        def ok(n: Notification) -> bool:
            if flt.status and n.status != flt.status:
                return False
            if flt.type and n.type != flt.type:
                return False
            if flt.audience_scope and n.audience.scope != flt.audience_scope:
                return False
            if flt.created_by and n.created_by != flt.created_by:
                return False
            return True

        items = [n.model_copy(deep=True) for n in self._docs.values() if ok(n)]
        return sorted(items, key=lambda n: n.created_at, reverse=True)

    async def list_candidates(self) -> list[Notification]:
        items = [
            n for n in self._docs.values()
            if n.is_active and n.status in ("sent", "scheduled")
        ]
        return [n.model_copy(deep=True) for n in items]


def build_memory_repositories(clock: Clock | None = None) -> Repositories:
    """Полный набор in-memory репозиториев с общими часами."""
    clock = clock or SystemClock()
    return Repositories(
        users=MemoryUserRepository(clock),
        driver_profiles=MemoryDriverProfileRepository(clock),
        vehicles=MemoryVehicleRepository(clock),
        reservations=MemoryReservationRepository(clock),
        driver_bookings=MemoryDriverBookingRepository(clock),
        payments=MemoryPaymentRepository(clock),
        promos=MemoryPromoCodeRepository(clock),
        conversations=MemoryConversationRepository(clock),
        messages=MemoryMessageRepository(clock),
        trackers=MemoryTrackerRepository(clock),
        notifications=MemoryNotificationRepository(clock),
    )
