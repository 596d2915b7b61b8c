# src/core/chat/service.py
"""
Сервис чата.

REST и real-time пути используют одни и те же методы, поэтому
события в комнату conversation:<id> рассылаются отсюда.
"""

from __future__ import annotations

from typing import Any, Optional

from src.common.clock import Clock
from src.common.constants import ConversationType, TypeMsg
from src.common.errors import ForbiddenError, NotFoundError, ValidationError
from src.common.logger import log_debug, log_info
from src.core.broadcast import Broadcaster, NullBroadcaster, conversation_room
from src.core.chat.models import (
    Conversation,
    ConversationContext,
    ConversationCreateDTO,
    Message,
    MessageCreateDTO,
    Participant,
    build_preview,
)
from src.core.repositories.interfaces import Repositories
from src.core.users.models import User
from src.shared.models.common import Page, PaginationParams

# События комнаты беседы
EVENT_MESSAGE_CREATED = "chat:message_created"
EVENT_MESSAGE_READ = "chat:message_read"
EVENT_MESSAGE_DELETED = "chat:message_deleted"


def message_payload(message: Message) -> dict[str, Any]:
    return message.model_dump(mode="json")


class ChatService:
    """Беседы и сообщения."""

    def __init__(self, repos: Repositories, clock: Clock, broadcaster: Broadcaster | None = None) -> None:
        self._repos = repos
        self._clock = clock
        self._broadcaster: Broadcaster = broadcaster or NullBroadcaster()

    def set_broadcaster(self, broadcaster: Broadcaster) -> None:
        """Подключает фабрику сессий после её создания."""
        self._broadcaster = broadcaster

    # =========================================================================
    # БЕСЕДЫ
    # =========================================================================

    async def create_conversation(self, creator: User, dto: ConversationCreateDTO) -> Conversation:
        """
        Создаёт беседу.

        Участники: объединение переданных id и создателя, минимум двое.
        Роль каждого участника фиксируется на момент входа.
        """
        participant_ids = list(dict.fromkeys([creator.id, *dto.participant_ids]))
        if len(participant_ids) < 2:
            raise ValidationError("A conversation needs at least two participants", code="NOT_ENOUGH_PARTICIPANTS")

        now = self._clock.now()
        participants: list[Participant] = []
        for user_id in participant_ids:
            user = creator if user_id == creator.id else await self._repos.users.get(user_id)
            if user is None:
                raise NotFoundError(f"User {user_id} not found", code="USER_NOT_FOUND")
            participants.append(Participant(
                user_id=user.id,
                role_at_time=user.roles[0] if user.roles else None,
                joined_at=now,
            ))

        conv_type = dto.type or (ConversationType.DIRECT if len(participants) == 2 else ConversationType.GROUP)
        conversation = await self._repos.conversations.insert(Conversation(
            title=dto.title,
            type=conv_type,
            participants=participants,
            context=ConversationContext(type=dto.context_type, id=dto.context_id),
            created_by=creator.id,
            created_at=now,
            updated_at=now,
        ))
        await log_info(
            f"Беседа {conversation.id} создана ({creator.id}), участников: {len(participants)}",
            type_msg=TypeMsg.INFO,
        )
        return conversation

    async def list_conversations_for(self, user: User) -> list[Conversation]:
        return await self._repos.conversations.list_for_user(user.id)

    async def get_conversation(self, user: User, conversation_id: str) -> Conversation:
        """Беседа, если пользователь её участник."""
        conversation = await self._repos.conversations.get(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found", code="CONVERSATION_NOT_FOUND")
        if not conversation.has_participant(user.id):
            raise ForbiddenError("Not a participant of this conversation", code="NOT_A_PARTICIPANT")
        return conversation

    async def can_join(self, user_id: str, conversation_id: str) -> bool:
        conversation = await self._repos.conversations.get(conversation_id)
        return conversation is not None and conversation.has_participant(user_id)

    # =========================================================================
    # СООБЩЕНИЯ
    # =========================================================================

    async def list_messages(
        self,
        user: User,
        conversation_id: str,
        pagination: PaginationParams,
    ) -> Page[Message]:
        """Страница сообщений: страницы от новых к старым, внутри страницы по возрастанию времени."""
        await self.get_conversation(user, conversation_id)
        items, total = await self._repos.messages.list_for_conversation(
            conversation_id,
            pagination.offset,
            pagination.limit,
        )
        return Page[Message](
            items=list(reversed(items)),
            total=total,
            page=pagination.page,
            page_size=pagination.page_size,
        )

    async def send_message(
        self,
        user: User,
        dto: MessageCreateDTO,
        exclude_session: Optional[str] = None,
    ) -> Message:
        conversation = await self.get_conversation(user, dto.conversation_id)

        content = (dto.content or "").strip()
        if not content and not dto.attachments:
            raise ValidationError("Message must have text or attachments", code="EMPTY_MESSAGE")

        now = self._clock.now()
        message = await self._repos.messages.insert(Message(
            conversation_id=conversation.id,
            sender_id=user.id,
            content=content,
            attachments=dto.attachments,
            read_by=[user.id],
            created_at=now,
            updated_at=now,
        ))

        await self._repos.conversations.update(conversation.id, {
            "last_message_at": now,
            "last_message_preview": build_preview(content, dto.attachments),
        })
        await log_debug(f"Сообщение {message.id} в беседе {conversation.id} от {user.id}")

        await self._broadcaster.broadcast(
            conversation_room(conversation.id),
            EVENT_MESSAGE_CREATED,
            message_payload(message),
            exclude_session=exclude_session,
        )
        return message

    async def _load_message_for(self, user: User, message_id: str) -> Message:
        message = await self._repos.messages.get(message_id)
        if message is None:
            raise NotFoundError("Message not found", code="MESSAGE_NOT_FOUND")
        await self.get_conversation(user, message.conversation_id)
        return message

    async def mark_read(self, user: User, message_id: str) -> Message:
        """Идемпотентно добавляет пользователя в read_by."""
        message = await self._load_message_for(user, message_id)
        if user.id in message.read_by:
            return message

        updated = await self._repos.messages.add_reader(message.id, user.id)
        if updated is None:
            raise NotFoundError("Message not found", code="MESSAGE_NOT_FOUND")

        await self._broadcaster.broadcast(
            conversation_room(message.conversation_id),
            EVENT_MESSAGE_READ,
            {"message_id": message.id, "conversation_id": message.conversation_id, "user_id": user.id},
        )
        return updated

    async def soft_delete(self, user: User, message_id: str) -> Message:
        """
        Мягкое удаление: только отправитель. Текст очищается, вложения остаются.
        Повторное удаление ничего не меняет.
        """
        message = await self._load_message_for(user, message_id)
        if message.sender_id != user.id:
            raise ForbiddenError("Only the sender can delete a message", code="NOT_MESSAGE_SENDER")
        if message.is_deleted:
            return message

        updated = await self._repos.messages.update(message.id, {
            "is_deleted": True,
            "content": "",
            "deleted_at": self._clock.now(),
        })
        if updated is None:
            raise NotFoundError("Message not found", code="MESSAGE_NOT_FOUND")

        await self._broadcaster.broadcast(
            conversation_room(message.conversation_id),
            EVENT_MESSAGE_DELETED,
            {"message_id": message.id, "conversation_id": message.conversation_id},
        )
        return updated
