# src/infra/event_bus.py
"""
Доменные события поверх RabbitMQ (topic exchange).

Сервисы публикуют переходы броней, заказов водителей и платежей через emit().
Публикация best-effort: сбой брокера логируется и не откатывает операцию,
которая уже зафиксирована в хранилище.
"""

from __future__ import annotations

import json
from collections import defaultdict
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable
from uuid import uuid4

import aio_pika
from aio_pika import ExchangeType, Message
from aio_pika.abc import AbstractChannel, AbstractExchange, AbstractIncomingMessage, AbstractRobustConnection

from src.common.constants import TypeMsg
from src.common.logger import get_logger, log_error, log_info

if TYPE_CHECKING:
    from src.config.loader import RabbitMQSettings

logger = get_logger("event_bus")


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DomainEvent:
    event_type: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: str = field(default_factory=_utc_timestamp)

    def to_json(self) -> str:
        # Decimal и datetime в payload уходят строками
        return json.dumps(asdict(self), ensure_ascii=False, default=str)

    @classmethod
    def from_json(cls, data: str) -> DomainEvent:
        """Неизвестные поля отбрасываются, отсутствующие получают значения по умолчанию."""
        raw = json.loads(data)
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in raw.items() if key in known})


class EventTypes:
    """Routing keys."""
    RESERVATION_CREATED = "reservation.created"
    RESERVATION_STATUS_CHANGED = "reservation.status_changed"

    DRIVER_BOOKING_REQUESTED = "driver_booking.requested"
    DRIVER_BOOKING_ACCEPTED = "driver_booking.accepted"
    DRIVER_BOOKING_DECLINED = "driver_booking.declined"
    DRIVER_BOOKING_CONFIRMED = "driver_booking.confirmed"
    DRIVER_BOOKING_CANCELLED = "driver_booking.cancelled"
    DRIVER_BOOKING_EXPIRED = "driver_booking.expired"
    DRIVER_BOOKING_COMPLETED = "driver_booking.completed"

    PAYMENT_INITIATED = "payment.initiated"
    PAYMENT_STATUS_CHANGED = "payment.status_changed"
    PAYMENT_PAID = "payment.paid"
    PAYMENT_REFUNDED = "payment.refunded"

    NOTIFICATION_SENT = "notification.sent"


EventHandler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    """
    Публикация в durable topic exchange и подписка через durable очереди.

    На каждый routing key создаётся одна очередь "<prefix>.<key>" (точки
    заменяются на "_"), все обработчики этого ключа получают сообщение
    по очереди. Ошибка обработчика не мешает остальным и не возвращает
    сообщение в очередь.
    """

    def __init__(self, url: str, exchange_name: str = "rental.events", prefetch_count: int = 10) -> None:
        self._url = url
        self._exchange_name = exchange_name
        self._prefetch_count = prefetch_count
        self._queue_prefix = exchange_name.split(".", 1)[0]
        self._connection: AbstractRobustConnection | None = None
        self._channel: AbstractChannel | None = None
        self._exchange: AbstractExchange | None = None
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)

    @classmethod
    def from_settings(cls, cfg: RabbitMQSettings) -> EventBus:
        return cls(cfg.url, cfg.RABBITMQ_EXCHANGE, cfg.RABBITMQ_PREFETCH_COUNT)

    @property
    def is_connected(self) -> bool:
        return self._connection is not None and not self._connection.is_closed

    def queue_name(self, event_type: str) -> str:
        return f"{self._queue_prefix}.{event_type.replace('.', '_')}"

    async def connect(self) -> None:
        if self.is_connected:
            return

        self._connection = await aio_pika.connect_robust(self._url)
        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self._prefetch_count)
        self._exchange = await self._channel.declare_exchange(
            self._exchange_name,
            ExchangeType.TOPIC,
            durable=True,
        )
        await log_info(f"RabbitMQ: exchange {self._exchange_name} объявлен", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        connection = self._connection
        self._connection = self._channel = self._exchange = None
        if connection is not None:
            await connection.close()
            await log_info("RabbitMQ: соединение закрыто", type_msg=TypeMsg.INFO)

    async def publish(self, event: DomainEvent) -> None:
        if self._exchange is None or not self.is_connected:
            await log_error(f"Событие {event.event_type} потеряно: RabbitMQ не подключён")
            return

        message = Message(
            body=event.to_json().encode(),
            content_type="application/json",
            message_id=event.event_id,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            await self._exchange.publish(message, routing_key=event.event_type)
        except Exception as e:
            await log_error(f"Событие {event.event_type} не опубликовано: {e}")
            return
        await log_info(f"-> {event.event_type} {event.event_id}", type_msg=TypeMsg.DEBUG)

    async def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """Первая подписка на ключ объявляет и привязывает очередь."""
        if self._channel is None or self._exchange is None:
            await log_error(f"Подписка на {event_type} невозможна: RabbitMQ не подключён")
            return

        first = event_type not in self._handlers
        self._handlers[event_type].append(handler)
        if not first:
            return

        queue = await self._channel.declare_queue(self.queue_name(event_type), durable=True)
        await queue.bind(self._exchange, routing_key=event_type)
        await queue.consume(self._make_consumer(event_type))
        await log_info(f"Подписка: {event_type} -> {queue.name}", type_msg=TypeMsg.DEBUG)

    def _make_consumer(self, event_type: str) -> Callable[[AbstractIncomingMessage], Awaitable[None]]:
        async def consumer(message: AbstractIncomingMessage) -> None:
            async with message.process():
                try:
                    event = DomainEvent.from_json(message.body.decode())
                except (ValueError, TypeError, AttributeError, UnicodeDecodeError) as e:
                    await log_error(f"Отброшено сообщение {event_type}: {e}")
                    return
                await self._dispatch(event_type, event)

        return consumer

    async def _dispatch(self, event_type: str, event: DomainEvent) -> None:
        for handler in list(self._handlers.get(event_type, ())):
            try:
                await handler(event)
            except Exception as e:
                name = getattr(handler, "__name__", repr(handler))
                await log_error(f"Обработчик {name} упал на {event.event_id}: {e}", exc_info=True)

    async def health_check(self) -> bool:
        return self.is_connected


async def emit(event_bus: EventBus | None, event_type: str, payload: dict[str, Any]) -> None:
    """Публикует событие, если шина настроена."""
    if event_bus is None:
        return
    await event_bus.publish(DomainEvent(event_type=event_type, payload=payload))


_event_bus: EventBus | None = None


def get_event_bus() -> EventBus | None:
    """Шина, созданная init_event_bus, или None, если RabbitMQ выключен."""
    return _event_bus


async def init_event_bus(cfg: RabbitMQSettings | None = None) -> EventBus:
    global _event_bus
    if cfg is None:
        from src.config import settings
        cfg = settings.rabbitmq

    if _event_bus is None:
        _event_bus = EventBus.from_settings(cfg)
    await _event_bus.connect()
    await log_info(f"RabbitMQ: {cfg.RABBITMQ_HOST}:{cfg.RABBITMQ_PORT}{cfg.RABBITMQ_VHOST}", type_msg=TypeMsg.INFO)
    return _event_bus


async def close_event_bus() -> None:
    global _event_bus
    bus, _event_bus = _event_bus, None
    if bus is not None:
        await bus.disconnect()
