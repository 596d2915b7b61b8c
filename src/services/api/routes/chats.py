# src/services/api/routes/chats.py
"""
Беседы и сообщения (REST). События рассылаются в те же комнаты,
что и при отправке через WebSocket.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from src.core.chat.models import ConversationCreateDTO, MessageCreateDTO
from src.core.chat.service import ChatService
from src.core.users.models import User
from src.services.api.auth import get_current_user
from src.services.api.dependencies import get_chat_service
from src.services.api.params import pagination_params
from src.services.api.responses import ok, paged
from src.shared.models.common import PaginationParams

router = APIRouter(prefix="/chats", tags=["Chats"])


@router.post("/conversations", status_code=status.HTTP_201_CREATED)
async def create_conversation(
    request: ConversationCreateDTO,
    user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return ok(await service.create_conversation(user, request))


@router.get("/conversations")
async def list_conversations(
    user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return ok(await service.list_conversations_for(user))


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return ok(await service.get_conversation(user, conversation_id))


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return paged(await service.list_messages(user, conversation_id, pagination))


@router.post("/messages", status_code=status.HTTP_201_CREATED)
async def send_message(
    request: MessageCreateDTO,
    user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return ok(await service.send_message(user, request))


@router.post("/messages/{message_id}/read")
async def mark_message_read(
    message_id: str,
    user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return ok(await service.mark_read(user, message_id))


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    user: User = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    return ok(await service.soft_delete(user, message_id))
