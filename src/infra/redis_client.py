# src/infra/redis_client.py
"""
Redis для межпроцессной шины трансляций: publish и PubSub.
Все каналы получают префикс namespace, чтобы несколько окружений
могли делить один Redis.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import redis.asyncio as redis
from redis.asyncio.client import PubSub

from src.common.constants import TypeMsg
from src.common.logger import get_logger, log_error, log_info

if TYPE_CHECKING:
    from src.config.loader import RedisSettings

logger = get_logger("redis")


class RedisClient:
    """Обёртка над redis.asyncio с namespace для каналов."""

    def __init__(self, url: str, *, max_connections: int = 50, namespace: str = "rental") -> None:
        self._url = url
        self._max_connections = max_connections
        self.namespace = namespace
        self._client: redis.Redis | None = None

    @classmethod
    def from_settings(cls, cfg: RedisSettings) -> RedisClient:
        return cls(cfg.url, max_connections=cfg.REDIS_MAX_CONNECTIONS, namespace=cfg.REDIS_NAMESPACE)

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            raise RuntimeError("Redis не подключён: сначала connect()")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    def channel_name(self, channel: str) -> str:
        """"broadcast" -> "<namespace>:broadcast"."""
        return f"{self.namespace}:{channel}"

    async def connect(self) -> None:
        """Создаёт клиент и проверяет его PING. Повторный вызов ничего не делает."""
        if self._client is not None:
            return
        client = redis.from_url(self._url, max_connections=self._max_connections, decode_responses=True)
        await client.ping()
        self._client = client
        await log_info(f"Redis: namespace {self.namespace}", type_msg=TypeMsg.INFO)

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def publish(self, channel: str, message: dict[str, Any] | str) -> int:
        """Возвращает число подписчиков, получивших сообщение."""
        body = message if isinstance(message, str) else json.dumps(message, ensure_ascii=False, default=str)
        return await self.client.publish(self.channel_name(channel), body)

    def pubsub(self) -> PubSub:
        """Отдельный PubSub на каждого подписчика, без подтверждений подписки."""
        return self.client.pubsub(ignore_subscribe_messages=True)

    async def health_check(self) -> bool:
        try:
            return bool(await self.client.ping())
        except Exception as e:
            await log_error(f"Redis не отвечает: {e}")
            return False


_redis: RedisClient | None = None


def get_redis() -> RedisClient | None:
    """Клиент, созданный init_redis, или None при локальной шине."""
    return _redis


async def init_redis(cfg: RedisSettings | None = None) -> RedisClient:
    global _redis
    if cfg is None:
        from src.config import settings
        cfg = settings.redis

    if _redis is None:
        _redis = RedisClient.from_settings(cfg)
    await _redis.connect()
    await log_info(f"Redis: {cfg.REDIS_HOST}:{cfg.REDIS_PORT}/{cfg.REDIS_DB}", type_msg=TypeMsg.INFO)
    return _redis


async def close_redis() -> None:
    global _redis
    client, _redis = _redis, None
    if client is not None:
        await client.disconnect()
        await log_info("Redis отключён", type_msg=TypeMsg.INFO)
