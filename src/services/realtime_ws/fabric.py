# src/services/realtime_ws/fabric.py
"""
Фабрика real-time сессий.

Управляет WebSocket сессиями, комнатами и рассылкой.
У каждой сессии своя очередь исходящих кадров и отдельная задача-писатель,
поэтому медленный клиент не задерживает рассылку остальным.
Порядок кадров сохраняется в пределах одной сессии (FIFO очереди),
между разными источниками порядок не гарантируется.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

from fastapi import WebSocket

from src.common.logger import log_debug, log_warning

CHAT_NAMESPACE = "chat"
TRACKING_NAMESPACE = "tracking"


def frame(event: str, data: dict[str, Any]) -> dict[str, Any]:
    """Кадр протокола: {"event": ..., "data": ...}."""
    return {"event": event, "data": data}


@dataclass
class Session:
    """Информация о сессии."""
    session_id: str
    websocket: WebSocket
    namespace: str
    principal_id: str
    kind: str  # user, tracker
    queue: asyncio.Queue
    principal: Any = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rooms: set[str] = field(default_factory=set)
    writer: Optional[asyncio.Task] = None
    closed: bool = False


class SessionFabric:
    """
    Сессии, комнаты и рассылка.

    Реализует протокол Broadcaster: broadcast(room, event, data, exclude_session).
    """

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size

        # session_id -> Session
        self._sessions: dict[str, Session] = {}

        # room -> set of session_ids
        self._rooms: dict[str, set[str]] = {}

        # Для статистики
        self._total_sessions: int = 0
        self._total_frames_sent: int = 0
        self._dropped_sessions: int = 0

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    # =========================================================================
    # СЕССИИ
    # =========================================================================

    async def connect(
        self,
        websocket: WebSocket,
        namespace: str,
        principal_id: str,
        kind: str = "user",
        principal: Any = None,
        accept: bool = True,
    ) -> Session:
        """Принимает соединение и запускает писателя сессии."""
        if accept:
            await websocket.accept()

        session = Session(
            session_id=uuid4().hex,
            websocket=websocket,
            namespace=namespace,
            principal_id=principal_id,
            kind=kind,
            principal=principal,
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        session.writer = asyncio.create_task(self._write_loop(session))
        self._sessions[session.session_id] = session
        self._total_sessions += 1

        await log_debug(f"[{namespace}] сессия {session.session_id} подключена: {kind}:{principal_id}")
        return session

    async def disconnect(self, session_id: str) -> None:
        """Удаляет сессию из всех комнат, неотправленные кадры отбрасываются."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return

        session.closed = True
        for room in list(session.rooms):
            self._leave_room(session, room)

        if session.writer and session.writer is not asyncio.current_task():
            session.writer.cancel()
            try:
                await session.writer
            except asyncio.CancelledError:
                pass

        await log_debug(f"[{session.namespace}] сессия {session_id} отключена")

    def get_session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    # =========================================================================
    # КОМНАТЫ
    # =========================================================================

    async def join(self, session_id: str, room: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.rooms.add(room)
        self._rooms.setdefault(room, set()).add(session_id)
        return True

    async def leave(self, session_id: str, room: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            self._leave_room(session, room)

    def _leave_room(self, session: Session, room: str) -> None:
        session.rooms.discard(room)
        if room in self._rooms:
            self._rooms[room].discard(session.session_id)
            if not self._rooms[room]:
                del self._rooms[room]

    def room_members(self, room: str) -> set[str]:
        return self._rooms.get(room, set()).copy()

    # =========================================================================
    # ОТПРАВКА
    # =========================================================================

    async def send(self, session_id: str, event: str, data: dict[str, Any]) -> bool:
        """Персональный кадр сессии."""
        session = self._sessions.get(session_id)
        if session is None:
            return False
        return await self._enqueue(session, frame(event, data))

    async def broadcast(
        self,
        room: str,
        event: str,
        data: dict[str, Any],
        exclude_session: Optional[str] = None,
    ) -> int:
        """
        Рассылает кадр всем сессиям комнаты.

        Returns:
            Количество сессий, которым кадр поставлен в очередь
        """
        message = frame(event, data)
        queued = 0
        for session_id in self.room_members(room):
            if session_id == exclude_session:
                continue
            session = self._sessions.get(session_id)
            if session is not None and await self._enqueue(session, message):
                queued += 1
        return queued

    async def _enqueue(self, session: Session, message: dict[str, Any]) -> bool:
        if session.closed:
            return False
        try:
            session.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            # Клиент не успевает читать: отключаем его
            self._dropped_sessions += 1
            await log_warning(f"[{session.namespace}] очередь сессии {session.session_id} переполнена, отключаем")
            await self.disconnect(session.session_id)
            await self._close_websocket(session)
            return False

    async def _write_loop(self, session: Session) -> None:
        while True:
            message = await session.queue.get()
            try:
                await session.websocket.send_json(message)
                self._total_frames_sent += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Соединение разорвано
                await log_debug(f"[{session.namespace}] отправка в сессию {session.session_id} не удалась: {e}")
                session.queue.task_done()
                await self.disconnect(session.session_id)
                return
            session.queue.task_done()

    async def drain(self) -> None:
        """Ждёт, пока все поставленные в очередь кадры будут отправлены."""
        for session in list(self._sessions.values()):
            if not session.closed:
                await session.queue.join()

    async def close_all(self) -> None:
        for session_id in list(self._sessions):
            session = self._sessions.get(session_id)
            await self.disconnect(session_id)
            if session is not None:
                await self._close_websocket(session)

    @staticmethod
    async def _close_websocket(session: Session) -> None:
        try:
            await session.websocket.close()
        except Exception as e:
            await log_debug(f"Закрытие сокета сессии {session.session_id}: {e}")

    # =========================================================================
    # СТАТИСТИКА
    # =========================================================================

    def get_stats(self) -> dict[str, Any]:
        return {
            "active_sessions": len(self._sessions),
            "total_rooms": len(self._rooms),
            "total_sessions_ever": self._total_sessions,
            "total_frames_sent": self._total_frames_sent,
            "dropped_sessions": self._dropped_sessions,
            "sessions_by_namespace": self._count_by_namespace(),
        }

    def _count_by_namespace(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for session in self._sessions.values():
            counts[session.namespace] = counts.get(session.namespace, 0) + 1
        return counts
