# src/services/realtime_ws/routes.py
"""
WebSocket endpoints real-time сессий.

- /ws/chat?token=<user jwt>
- /ws/tracking?token=<user jwt> | ?device_token=<tracker jwt>

Кадры в обе стороны: {"event": "<name>", "data": {...}}.
Кадры одной сессии обрабатываются последовательно.
"""

from __future__ import annotations

import json
from typing import Any, Awaitable, Callable, Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from src.common.constants import UserRole
from src.common.errors import AuthenticationError, DomainError
from src.common.logger import log_debug, log_warning, request_id_var
from src.core.users.models import User
from src.services.api.auth import require_roles, resolve_user
from src.services.api.dependencies import ServiceContainer, get_container
from src.services.api.responses import ok
from src.services.realtime_ws.fabric import CHAT_NAMESPACE, TRACKING_NAMESPACE, Session
from src.services.realtime_ws.tracking_gateway import KIND_TRACKER, KIND_USER

# Код закрытия при ошибке аутентификации
CLOSE_UNAUTHORIZED = 4401

router = APIRouter(tags=["Realtime"])

EventHandler = Callable[[Session, str, dict[str, Any]], Awaitable[None]]


async def _reject(websocket: WebSocket, error: DomainError) -> None:
    await log_debug(f"WebSocket отклонён: {error.code}")
    await websocket.accept()
    await websocket.close(code=CLOSE_UNAUTHORIZED, reason=error.code)


def _parse_frame(raw: str) -> tuple[Optional[str], dict[str, Any]]:
    try:
        message = json.loads(raw)
    except ValueError:
        return None, {}
    if not isinstance(message, dict) or not isinstance(message.get("event"), str):
        return None, {}
    data = message.get("data")
    return message["event"], data if isinstance(data, dict) else {}


async def _serve(websocket: WebSocket, session: Session, container: ServiceContainer, handle: EventHandler, error_event: str) -> None:
    """Цикл чтения кадров сессии до отключения клиента."""
    request_id_var.set(session.session_id)
    fabric = container.fabric
    try:
        while True:
            raw = await websocket.receive_text()
            event, data = _parse_frame(raw)
            if event is None:
                await fabric.send(session.session_id, error_event, {
                    "code": "INVALID_FRAME",
                    "message": "Frame must be a JSON object with an event name",
                })
                continue
            await handle(session, event, data)
    except WebSocketDisconnect:
        pass
    finally:
        await fabric.disconnect(session.session_id)


@router.websocket("/ws/chat")
async def chat_socket(
    websocket: WebSocket,
    token: str = Query(default=""),
) -> None:
    container = get_container()
    try:
        user = await resolve_user(token, container.tokens, container.repos.users)
    except DomainError as e:
        await _reject(websocket, e)
        return

    session = await container.fabric.connect(websocket, CHAT_NAMESPACE, user.id, KIND_USER, principal=user)
    await _serve(websocket, session, container, container.chat_gateway.handle, "chat:error")


@router.websocket("/ws/tracking")
async def tracking_socket(
    websocket: WebSocket,
    token: str = Query(default=""),
    device_token: str = Query(default=""),
) -> None:
    container = get_container()
    try:
        if device_token:
            claims = container.tokens.decode_device_token(device_token)
            tracker = await container.tracking.get_device_tracker(claims["tracker_id"])
            principal_id, kind, principal = tracker.id, KIND_TRACKER, None
        elif token:
            user = await resolve_user(token, container.tokens, container.repos.users)
            principal_id, kind, principal = user.id, KIND_USER, user
        else:
            raise AuthenticationError("Missing token", code="TOKEN_MISSING")
    except DomainError as e:
        await _reject(websocket, e)
        return

    session = await container.fabric.connect(websocket, TRACKING_NAMESPACE, principal_id, kind, principal=principal)
    try:
        await container.tracking_gateway.on_connect(session)
    except DomainError as e:
        await log_warning(f"Трекер {principal_id} не вошёл в комнату автомобиля: {e.code}")
    await _serve(websocket, session, container, container.tracking_gateway.handle, "tracking:error")


@router.get("/ws/stats")
async def ws_stats(user: User = Depends(require_roles(UserRole.MANAGER, UserRole.ADMIN))):
    """Статистика сессий."""
    return ok(get_container().fabric.get_stats())
