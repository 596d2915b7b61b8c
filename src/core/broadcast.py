# src/core/broadcast.py
"""
Точка расширения для рассылки событий в комнаты real-time сессий.

Сервисы чата и трекинга зависят только от этого протокола,
реализация (локальная фабрика сессий или Redis шина) подставляется при сборке.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def vehicle_room(vehicle_id: str) -> str:
    return f"vehicle:{vehicle_id}"


class Broadcaster(Protocol):
    """Рассылка события всем сессиям комнаты."""

    async def broadcast(
        self,
        room: str,
        event: str,
        data: dict[str, Any],
        exclude_session: Optional[str] = None,
    ) -> None:
        ...


class NullBroadcaster:
    """Ничего не рассылает (воркеры, тесты без фабрики)."""

    async def broadcast(
        self,
        room: str,
        event: str,
        data: dict[str, Any],
        exclude_session: Optional[str] = None,
    ) -> None:
        return None
