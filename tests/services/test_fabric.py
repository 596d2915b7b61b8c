# tests/services/test_fabric.py
"""
Тесты фабрики сессий: комнаты, рассылка, медленные клиенты.
"""

from __future__ import annotations

import asyncio

import pytest

from src.services.realtime_ws.fabric import CHAT_NAMESPACE, TRACKING_NAMESPACE, SessionFabric, frame
from tests.services.sessions import events, fake_socket, frames


class TestSessions:
    """Подключение и отключение."""

    @pytest.mark.asyncio
    async def test_connect_accepts(self, standalone_fabric: SessionFabric) -> None:
        websocket = fake_socket()

        session = await standalone_fabric.connect(websocket, CHAT_NAMESPACE, "customer-1")

        websocket.accept.assert_awaited_once()
        assert standalone_fabric.get_session(session.session_id) is session
        assert standalone_fabric.active_sessions == 1

    @pytest.mark.asyncio
    async def test_connect_without_accept(self, standalone_fabric: SessionFabric) -> None:
        websocket = fake_socket()

        await standalone_fabric.connect(websocket, CHAT_NAMESPACE, "customer-1", accept=False)

        websocket.accept.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnect_leaves_rooms(self, standalone_fabric: SessionFabric) -> None:
        session = await standalone_fabric.connect(fake_socket(), CHAT_NAMESPACE, "customer-1")
        await standalone_fabric.join(session.session_id, "conversation:c1")

        await standalone_fabric.disconnect(session.session_id)

        assert standalone_fabric.room_members("conversation:c1") == set()
        assert standalone_fabric.get_session(session.session_id) is None

    @pytest.mark.asyncio
    async def test_disconnect_unknown_is_noop(self, standalone_fabric: SessionFabric) -> None:
        await standalone_fabric.disconnect("missing")

    @pytest.mark.asyncio
    async def test_join_unknown_session(self, standalone_fabric: SessionFabric) -> None:
        assert await standalone_fabric.join("missing", "room") is False


class TestBroadcast:
    """Рассылка по комнатам."""

    @pytest.mark.asyncio
    async def test_room_members_receive(self, standalone_fabric: SessionFabric) -> None:
        first, second, outsider = fake_socket(), fake_socket(), fake_socket()
        s1 = await standalone_fabric.connect(first, CHAT_NAMESPACE, "u1")
        s2 = await standalone_fabric.connect(second, CHAT_NAMESPACE, "u2")
        await standalone_fabric.connect(outsider, CHAT_NAMESPACE, "u3")
        await standalone_fabric.join(s1.session_id, "conversation:c1")
        await standalone_fabric.join(s2.session_id, "conversation:c1")

        queued = await standalone_fabric.broadcast("conversation:c1", "chat:message_created", {"id": "m1"})
        await standalone_fabric.drain()

        assert queued == 2
        assert frames(first) == [frame("chat:message_created", {"id": "m1"})]
        assert frames(second) == [frame("chat:message_created", {"id": "m1"})]
        assert frames(outsider) == []

    @pytest.mark.asyncio
    async def test_exclude_session(self, standalone_fabric: SessionFabric) -> None:
        sender, receiver = fake_socket(), fake_socket()
        s1 = await standalone_fabric.connect(sender, CHAT_NAMESPACE, "u1")
        s2 = await standalone_fabric.connect(receiver, CHAT_NAMESPACE, "u2")
        for session in (s1, s2):
            await standalone_fabric.join(session.session_id, "conversation:c1")

        await standalone_fabric.broadcast("conversation:c1", "typing:start", {}, exclude_session=s1.session_id)
        await standalone_fabric.drain()

        assert events(sender) == []
        assert events(receiver) == ["typing:start"]

    @pytest.mark.asyncio
    async def test_empty_room(self, standalone_fabric: SessionFabric) -> None:
        assert await standalone_fabric.broadcast("vehicle:none", "vehicle:location_update", {}) == 0

    @pytest.mark.asyncio
    async def test_frames_keep_order(self, standalone_fabric: SessionFabric) -> None:
        websocket = fake_socket()
        session = await standalone_fabric.connect(websocket, TRACKING_NAMESPACE, "u1")
        await standalone_fabric.join(session.session_id, "vehicle:v1")

        for n in range(5):
            await standalone_fabric.broadcast("vehicle:v1", "vehicle:location_update", {"n": n})
        await standalone_fabric.drain()

        assert [item["data"]["n"] for item in frames(websocket)] == [0, 1, 2, 3, 4]


class TestSlowConsumers:
    """Переполнение очереди и ошибки отправки."""

    @pytest.mark.asyncio
    async def test_full_queue_drops_session(self) -> None:
        fabric = SessionFabric(queue_size=1)
        slow, fast = fake_socket(), fake_socket()
        s1 = await fabric.connect(slow, CHAT_NAMESPACE, "u1")
        s2 = await fabric.connect(fast, CHAT_NAMESPACE, "u2")
        await fabric.join(s1.session_id, "room")

        # Писатель ещё не запускался: вторая запись переполняет очередь
        await fabric.send(s1.session_id, "first", {})
        delivered = await fabric.send(s1.session_id, "second", {})

        assert delivered is False
        assert fabric.get_session(s1.session_id) is None
        assert fabric.room_members("room") == set()
        slow.close.assert_awaited_once()
        assert fabric.get_stats()["dropped_sessions"] == 1

        # Остальные сессии не затронуты
        assert await fabric.send(s2.session_id, "ok", {}) is True
        await fabric.drain()
        assert events(fast) == ["ok"]
        await fabric.close_all()

    @pytest.mark.asyncio
    async def test_send_failure_disconnects(self, standalone_fabric: SessionFabric) -> None:
        websocket = fake_socket()
        websocket.send_json.side_effect = RuntimeError("socket closed")
        session = await standalone_fabric.connect(websocket, CHAT_NAMESPACE, "u1")

        await standalone_fabric.send(session.session_id, "pong", {})
        await asyncio.wait_for(session.writer, timeout=1)

        assert standalone_fabric.get_session(session.session_id) is None

    @pytest.mark.asyncio
    async def test_send_after_close(self, standalone_fabric: SessionFabric) -> None:
        session = await standalone_fabric.connect(fake_socket(), CHAT_NAMESPACE, "u1")
        await standalone_fabric.disconnect(session.session_id)

        assert await standalone_fabric.send(session.session_id, "pong", {}) is False


class TestStats:
    """Статистика."""

    @pytest.mark.asyncio
    async def test_counts_by_namespace(self, standalone_fabric: SessionFabric) -> None:
        await standalone_fabric.connect(fake_socket(), CHAT_NAMESPACE, "u1")
        await standalone_fabric.connect(fake_socket(), TRACKING_NAMESPACE, "tracker-1", kind="tracker")
        await standalone_fabric.connect(fake_socket(), TRACKING_NAMESPACE, "u2")

        stats = standalone_fabric.get_stats()

        assert stats["active_sessions"] == 3
        assert stats["sessions_by_namespace"] == {"chat": 1, "tracking": 2}
        assert stats["total_sessions_ever"] == 3
