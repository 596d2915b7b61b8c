# tests/infra/test_redis_client.py
"""
Тесты для клиента Redis (Pub/Sub шины трансляций).
"""

from __future__ import annotations

import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.config.loader import RedisSettings
from src.infra.redis_client import RedisClient, close_redis, get_redis, init_redis


@pytest.fixture
def fresh() -> RedisClient:
    """Клиент без подключения."""
    return RedisClient("redis://cache:6379/2")


@pytest.fixture
def wired(fresh: RedisClient) -> RedisClient:
    fresh._client = AsyncMock()
    return fresh


class TestLifecycle:
    """Подключение и отключение."""

    @pytest.mark.asyncio
    async def test_module_instance(self) -> None:
        cfg = RedisSettings(REDIS_HOST="cache", REDIS_DB=2, REDIS_NAMESPACE="rental-test")

        with patch.object(RedisClient, "connect", AsyncMock()), \
             patch.object(RedisClient, "disconnect", AsyncMock()) as disconnect:
            client = await init_redis(cfg)
            assert get_redis() is client
            assert client.channel_name("broadcast") == "rental-test:broadcast"

            await close_redis()

        disconnect.assert_awaited_once()
        assert get_redis() is None

    def test_unconnected_client_raises(self, fresh: RedisClient) -> None:
        assert fresh.is_connected is False
        with pytest.raises(RuntimeError):
            fresh.pubsub()

    @pytest.mark.asyncio
    async def test_connect_once(self) -> None:
        client = RedisClient("redis://cache:6379/2", max_connections=8, namespace="rental-test")
        backend = AsyncMock()
        backend.ping.return_value = True

        with patch("src.infra.redis_client.redis.from_url", return_value=backend) as from_url:
            await client.connect()
            await client.connect()

        from_url.assert_called_once_with("redis://cache:6379/2", max_connections=8, decode_responses=True)
        backend.ping.assert_awaited_once()
        assert client.is_connected is True

    @pytest.mark.asyncio
    async def test_disconnect_twice(self, wired: RedisClient) -> None:
        backend = wired._client

        await wired.disconnect()
        await wired.disconnect()

        backend.aclose.assert_awaited_once()
        assert wired.is_connected is False


class TestPubSub:
    """Публикация в канал с namespace."""

    @pytest.mark.asyncio
    async def test_payload_serialized(self, wired: RedisClient) -> None:
        wired._client.publish.return_value = 3
        envelope = {"target": "room:chat:c-1", "event": "message_created", "data": {"total": Decimal("12.50")}}

        receivers = await wired.publish("broadcast", envelope)

        channel, body = wired._client.publish.await_args.args
        assert receivers == 3
        assert channel == "rental:broadcast"
        assert json.loads(body)["data"] == {"total": "12.50"}

    @pytest.mark.asyncio
    async def test_preencoded_text_passed_through(self, wired: RedisClient) -> None:
        await wired.publish("broadcast", '{"event":"typing"}')

        wired._client.publish.assert_awaited_once_with("rental:broadcast", '{"event":"typing"}')

    def test_subscriber_skips_confirmations(self, fresh: RedisClient) -> None:
        fresh._client = MagicMock()

        fresh.pubsub()

        fresh._client.pubsub.assert_called_once_with(ignore_subscribe_messages=True)


class TestHealth:
    """PING."""

    @pytest.mark.asyncio
    async def test_ping_ok(self, wired: RedisClient) -> None:
        wired._client.ping.return_value = True

        assert await wired.health_check() is True

    @pytest.mark.asyncio
    async def test_ping_error(self, wired: RedisClient) -> None:
        wired._client.ping.side_effect = ConnectionError("reset by peer")

        assert await wired.health_check() is False

    @pytest.mark.asyncio
    async def test_not_connected(self, fresh: RedisClient) -> None:
        assert await fresh.health_check() is False
