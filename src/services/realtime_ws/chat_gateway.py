# src/services/realtime_ws/chat_gateway.py
"""
Обработчики событий пространства chat.

Входящие события:
- chat:join / chat:leave {conversation_id}
- chat:send_message {conversation_id, content, attachments}
- chat:mark_read {message_id}
- chat:delete_message {message_id}
- typing:start / typing:stop {conversation_id}
- ping
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from src.common.errors import DomainError, ForbiddenError, ValidationError
from src.common.logger import log_error
from src.core.broadcast import conversation_room
from src.core.chat.models import MessageCreateDTO
from src.core.chat.service import ChatService, message_payload
from src.services.realtime_ws.fabric import Session, SessionFabric

ERROR_EVENT = "chat:error"


def _require(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not value or not isinstance(value, str):
        raise ValidationError(f"{key} is required", code="VALIDATION_ERROR")
    return value


class ChatGateway:
    """Маршрутизация событий chat-сессий в сервис чата."""

    def __init__(self, fabric: SessionFabric, chat: ChatService) -> None:
        self._fabric = fabric
        self._chat = chat
        self._handlers: dict[str, Callable[[Session, dict[str, Any]], Awaitable[None]]] = {
            "chat:join": self._join,
            "chat:leave": self._leave,
            "chat:send_message": self._send_message,
            "chat:mark_read": self._mark_read,
            "chat:delete_message": self._delete_message,
            "typing:start": self._typing_start,
            "typing:stop": self._typing_stop,
            "ping": self._ping,
        }

    async def handle(self, session: Session, event: str, data: dict[str, Any]) -> None:
        """
        Обрабатывает одно событие сессии.

        Доменные ошибки превращаются в chat:error, сессия остаётся открытой.
        """
        handler = self._handlers.get(event)
        try:
            if handler is None:
                raise ValidationError(f"Unknown event: {event}", code="UNKNOWN_EVENT")
            await handler(session, data)
        except DomainError as e:
            await self._fabric.send(session.session_id, ERROR_EVENT, {"code": e.code, "message": e.message})
        except PydanticValidationError as e:
            await self._fabric.send(session.session_id, ERROR_EVENT, {
                "code": "VALIDATION_ERROR",
                "message": str(e.errors(include_url=False)[0].get("msg", "Invalid payload")),
            })
        except Exception as e:
            await log_error(f"Ошибка обработки {event} в сессии {session.session_id}: {e}", exc_info=True)
            await self._fabric.send(session.session_id, ERROR_EVENT, {
                "code": "INTERNAL_ERROR",
                "message": "Failed to process event",
            })

    async def _join(self, session: Session, data: dict[str, Any]) -> None:
        conversation_id = _require(data, "conversation_id")
        if not await self._chat.can_join(session.principal_id, conversation_id):
            raise ForbiddenError("Not a participant of this conversation", code="NOT_A_PARTICIPANT")
        await self._fabric.join(session.session_id, conversation_room(conversation_id))
        await self._fabric.send(session.session_id, "chat:joined", {"conversation_id": conversation_id})

    async def _leave(self, session: Session, data: dict[str, Any]) -> None:
        conversation_id = _require(data, "conversation_id")
        await self._fabric.leave(session.session_id, conversation_room(conversation_id))
        await self._fabric.send(session.session_id, "chat:left", {"conversation_id": conversation_id})

    async def _send_message(self, session: Session, data: dict[str, Any]) -> None:
        dto = MessageCreateDTO.model_validate(data)
        message = await self._chat.send_message(session.principal, dto)
        await self._fabric.send(session.session_id, "chat:message_sent", message_payload(message))

    async def _mark_read(self, session: Session, data: dict[str, Any]) -> None:
        await self._chat.mark_read(session.principal, _require(data, "message_id"))

    async def _delete_message(self, session: Session, data: dict[str, Any]) -> None:
        await self._chat.soft_delete(session.principal, _require(data, "message_id"))

    async def _typing_start(self, session: Session, data: dict[str, Any]) -> None:
        await self._typing(session, data, "typing:start")

    async def _typing_stop(self, session: Session, data: dict[str, Any]) -> None:
        await self._typing(session, data, "typing:stop")

    async def _typing(self, session: Session, data: dict[str, Any], event: str) -> None:
        conversation_id = _require(data, "conversation_id")
        room = conversation_room(conversation_id)
        if room not in session.rooms:
            raise ForbiddenError("Join the conversation first", code="NOT_IN_ROOM")
        await self._fabric.broadcast(
            room,
            event,
            {"conversation_id": conversation_id, "user_id": session.principal_id},
            exclude_session=session.session_id,
        )

    async def _ping(self, session: Session, data: dict[str, Any]) -> None:
        await self._fabric.send(session.session_id, "pong", {})
