# src/services/api/dependencies.py
"""
Dependency Injection для HTTP API и real-time сессий.

Сервисы собираются один раз при старте процесса (build_container)
и выдаются роутерам через Depends(get_...).
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from src.common.clock import Clock, IdGenerator, SystemClock
from src.core.bookings.availability import AvailabilityIndex
from src.core.bookings.driver_bookings import DriverBookingService
from src.core.bookings.reservations import ReservationService
from src.core.broadcast import Broadcaster
from src.core.chat.service import ChatService
from src.core.notifications.service import NotificationService
from src.core.payments.service import PaymentService
from src.core.payments.webhook import PaynowWebhookHandler
from src.core.pricing.service import PricingSnapshotBuilder
from src.core.promos.service import PromoService
from src.core.repositories.interfaces import Repositories
from src.core.tracking.service import TrackingService
from src.infra.security import TokenCodec
from src.services.realtime_ws.chat_gateway import ChatGateway
from src.services.realtime_ws.fabric import SessionFabric
from src.services.realtime_ws.tracking_gateway import TrackingGateway

if TYPE_CHECKING:
    from src.config.loader import Settings
    from src.infra.event_bus import EventBus
    from src.infra.paynow import PaymentGateway
    from src.services.realtime_ws.redis_subscriber import RedisSubscriber


class ServiceContainer:
    """Собранный граф сервисов одного процесса."""

    def __init__(
        self,
        settings: "Settings",
        repos: Repositories,
        gateway: "PaymentGateway",
        tokens: TokenCodec,
        clock: Clock | None = None,
        ids: IdGenerator | None = None,
        event_bus: Optional["EventBus"] = None,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        """
        Args:
            settings: Настройки приложения
            repos: Репозитории (память или PostgreSQL)
            gateway: Клиент платёжного шлюза
            tokens: Проверка JWT
            clock: Часы (по умолчанию системные)
            ids: Генератор кодов бронирований
            event_bus: Шина событий RabbitMQ (None - события не публикуются)
            broadcaster: Рассылка в комнаты (по умолчанию локальная фабрика)
        """
        booking = settings.booking
        self.settings = settings
        self.repos = repos
        self.gateway = gateway
        self.tokens = tokens
        self.clock: Clock = clock or SystemClock()
        self.ids = ids or IdGenerator()
        self.event_bus = event_bus
        self.subscriber: Optional["RedisSubscriber"] = None

        self.fabric = SessionFabric(queue_size=settings.realtime.SESSION_QUEUE_SIZE)
        self.broadcaster: Broadcaster = broadcaster or self.fabric

        self.pricing = PricingSnapshotBuilder()
        self.availability = AvailabilityIndex(repos.reservations, repos.driver_bookings)
        self.promos = PromoService(repos.promos, self.clock)
        self.reservations = ReservationService(
            repos,
            self.availability,
            self.pricing,
            self.clock,
            self.ids,
            event_bus=event_bus,
            code_attempts=booking.BOOKING_CODE_MAX_ATTEMPTS,
        )
        self.driver_bookings = DriverBookingService(
            repos,
            self.pricing,
            self.clock,
            self.ids,
            event_bus=event_bus,
            payment_window_minutes=booking.PAYMENT_WINDOW_MINUTES,
            request_ttl_minutes=booking.DRIVER_REQUEST_TTL_MINUTES,
            code_attempts=booking.BOOKING_CODE_MAX_ATTEMPTS,
        )
        self.payments = PaymentService(
            repos,
            gateway,
            self.reservations,
            self.driver_bookings,
            self.clock,
            self.ids,
            event_bus=event_bus,
        )
        self.webhook = PaynowWebhookHandler(repos, self.payments, gateway)
        self.notifications = NotificationService(repos, self.clock, event_bus=event_bus)
        self.chat = ChatService(repos, self.clock, broadcaster=self.broadcaster)
        self.tracking = TrackingService(repos, tokens, self.clock, broadcaster=self.broadcaster)

        self.chat_gateway = ChatGateway(self.fabric, self.chat)
        self.tracking_gateway = TrackingGateway(self.fabric, self.tracking)


def build_tokens(settings: "Settings") -> TokenCodec:
    return TokenCodec(
        settings.auth.JWT_SECRET,
        settings.auth.JWT_ALGORITHM,
        settings.auth.DEVICE_TOKEN_TTL_DAYS,
    )


# Синглтон
_container: ServiceContainer | None = None


def init_dependencies(container: ServiceContainer) -> None:
    """Зарегистрировать собранный контейнер при старте приложения."""
    global _container
    _container = container


def get_container() -> ServiceContainer:
    """Получить контейнер сервисов."""
    if _container is None:
        raise RuntimeError("Сервисы не инициализированы. Вызовите init_dependencies()")
    return _container


def get_reservation_service() -> ReservationService:
    return get_container().reservations


def get_driver_booking_service() -> DriverBookingService:
    return get_container().driver_bookings


def get_payment_service() -> PaymentService:
    return get_container().payments


def get_webhook_handler() -> PaynowWebhookHandler:
    return get_container().webhook


def get_chat_service() -> ChatService:
    return get_container().chat


def get_tracking_service() -> TrackingService:
    return get_container().tracking


def get_notification_service() -> NotificationService:
    return get_container().notifications


def get_fabric() -> SessionFabric:
    return get_container().fabric


def get_tokens() -> TokenCodec:
    return get_container().tokens


def get_repositories() -> Repositories:
    return get_container().repos


async def cleanup_dependencies() -> None:
    """Закрыть сессии и подписчика при остановке приложения."""
    global _container
    if _container is None:
        return
    if _container.subscriber is not None:
        await _container.subscriber.stop()
    await _container.fabric.close_all()
    _container = None
