# src/services/bootstrap.py
"""
Сборка процесса: инфраструктура по настройкам и граф сервисов.

- STORAGE_BACKEND=postgres: asyncpg пул и схема; memory: in-memory репозитории
- BROADCAST_BUS=redis: рассылка между процессами через Redis Pub/Sub
- RABBITMQ_ENABLED: публикация доменных событий в RabbitMQ
"""

from __future__ import annotations

from src.common.constants import TypeMsg
from src.common.errors import ConfigurationError
from src.common.logger import log_info
from src.config.loader import Settings
from src.core.broadcast import Broadcaster
from src.core.repositories.interfaces import Repositories
from src.core.repositories.memory import build_memory_repositories
from src.core.repositories.postgres import build_postgres_repositories
from src.infra.database import close_db, init_db
from src.infra.event_bus import close_event_bus, init_event_bus
from src.infra.paynow import build_paynow_client
from src.infra.redis_client import close_redis, init_redis
from src.services.api.dependencies import ServiceContainer, build_tokens
from src.services.realtime_ws.redis_subscriber import RedisBroadcastBus, RedisSubscriber, fabric_delivery

STORAGE_BACKENDS = ("postgres", "memory")
BROADCAST_BUSES = ("local", "redis")


async def init_runtime(settings: Settings) -> ServiceContainer:
    """
    Подключает инфраструктуру и собирает сервисы.

    Raises:
        ConfigurationError: неизвестный STORAGE_BACKEND или BROADCAST_BUS
    """
    backend = settings.booking.STORAGE_BACKEND
    bus_kind = settings.realtime.BROADCAST_BUS
    if backend not in STORAGE_BACKENDS:
        raise ConfigurationError(f"Unknown STORAGE_BACKEND: {backend}")
    if bus_kind not in BROADCAST_BUSES:
        raise ConfigurationError(f"Unknown BROADCAST_BUS: {bus_kind}")

    repos: Repositories
    if backend == "postgres":
        repos = build_postgres_repositories(await init_db())
    else:
        repos = build_memory_repositories()

    event_bus = await init_event_bus() if settings.rabbitmq.RABBITMQ_ENABLED else None

    redis = None
    broadcaster: Broadcaster | None = None
    if bus_kind == "redis":
        redis = await init_redis()
        broadcaster = RedisBroadcastBus(redis, settings.realtime.BROADCAST_CHANNEL)

    container = ServiceContainer(
        settings,
        repos,
        build_paynow_client(settings),
        build_tokens(settings),
        event_bus=event_bus,
        broadcaster=broadcaster,
    )
    if redis is not None:
        container.subscriber = RedisSubscriber(
            redis,
            settings.realtime.BROADCAST_CHANNEL,
            fabric_delivery(container.fabric),
        )

    await log_info(
        f"Сервисы собраны: storage={backend}, broadcast={bus_kind}, "
        f"events={'rabbitmq' if event_bus else 'off'}",
        type_msg=TypeMsg.INFO,
    )
    return container


async def close_runtime(container: ServiceContainer) -> None:
    """Закрывает подключения, открытые init_runtime."""
    settings = container.settings
    await container.gateway.close()
    if settings.rabbitmq.RABBITMQ_ENABLED:
        await close_event_bus()
    if settings.realtime.BROADCAST_BUS == "redis":
        await close_redis()
    if settings.booking.STORAGE_BACKEND == "postgres":
        await close_db()
