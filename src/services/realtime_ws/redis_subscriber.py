# src/services/realtime_ws/redis_subscriber.py
"""
Шина трансляций через Redis Pub/Sub для нескольких процессов.

RedisBroadcastBus публикует кадр комнаты в общий канал,
RedisSubscriber каждого процесса получает его и доставляет
локальным сессиям через фабрику.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
from typing import TYPE_CHECKING, Any, Callable, Coroutine, Optional

from src.common.logger import log_error, log_info, log_warning

if TYPE_CHECKING:
    from redis.asyncio.client import PubSub

    from src.infra.redis_client import RedisClient
    from src.services.realtime_ws.fabric import SessionFabric


class RedisBroadcastBus:
    """
    Broadcaster, публикующий события комнат в Redis.

    Локальная доставка тоже идёт через подписчика, поэтому все процессы
    получают кадры в одном порядке публикации.
    """

    def __init__(self, redis: "RedisClient", channel: str) -> None:
        self._redis = redis
        self._channel = channel

    async def broadcast(
        self,
        room: str,
        event: str,
        data: dict[str, Any],
        exclude_session: Optional[str] = None,
    ) -> None:
        await self._redis.publish(self._channel, {
            "room": room,
            "event": event,
            "data": data,
            "exclude_session": exclude_session,
        })


def fabric_delivery(fabric: "SessionFabric") -> Callable[[str, dict[str, Any]], Coroutine[Any, Any, None]]:
    """Обработчик подписчика, доставляющий кадр локальным сессиям."""

    async def deliver(channel: str, message: dict[str, Any]) -> None:
        room = message.get("room")
        event = message.get("event")
        if not room or not event:
            await log_warning(f"Некорректное сообщение шины трансляций в канале {channel}")
            return
        await fabric.broadcast(room, event, message.get("data") or {}, message.get("exclude_session"))

    return deliver


def _text(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class RedisSubscriber:
    """
    Фоновая задача, читающая канал шины трансляций.

    Сбой чтения не останавливает подписчика: ошибка логируется,
    чтение продолжается после паузы RETRY_DELAY.
    """

    POLL_TIMEOUT = 1.0
    RETRY_DELAY = 1.0

    def __init__(
        self,
        redis: "RedisClient",
        channel: str,
        message_handler: Callable[[str, dict[str, Any]], Coroutine[Any, Any, None]],
    ) -> None:
        self._redis = redis
        self.channel = redis.channel_name(channel)
        self._handler = message_handler
        self._pubsub: Optional["PubSub"] = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is not None:
            return
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen(self._pubsub), name=f"redis-sub:{self.channel}")
        await log_info(f"Шина трансляций: подписка на {self.channel}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        pubsub, self._pubsub = self._pubsub, None
        if pubsub is not None:
            await pubsub.unsubscribe()
            await pubsub.aclose()

    async def _listen(self, pubsub: "PubSub") -> None:
        while True:
            try:
                message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=self.POLL_TIMEOUT)
                if message is not None:
                    await self._process_message(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await log_error(f"Шина трансляций: ошибка чтения {self.channel}: {e}")
                await asyncio.sleep(self.RETRY_DELAY)

    async def _process_message(self, message: dict[str, Any]) -> None:
        """Передаёт обработчику разобранный JSON. Служебные и не-JSON сообщения пропускаются."""
        if message.get("type") != "message":
            return

        channel = _text(message.get("channel", ""))
        try:
            payload = json.loads(_text(message.get("data", "")))
        except json.JSONDecodeError:
            await log_warning(f"Шина трансляций: не-JSON сообщение в {channel}")
            return

        await self._handler(channel, payload)
