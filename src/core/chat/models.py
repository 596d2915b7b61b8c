# src/core/chat/models.py
"""
Модели чата: беседы и сообщения.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from src.common.constants import AttachmentType, ConversationContextType, ConversationType, UserRole
from src.shared.models.common import Document

PREVIEW_MAX_LENGTH = 200


class Participant(BaseModel):
    """Участник беседы со снимком роли на момент входа."""
    user_id: str
    role_at_time: Optional[UserRole] = None
    joined_at: datetime


class ConversationContext(BaseModel):
    type: ConversationContextType = ConversationContextType.GENERAL
    id: Optional[str] = None


class Conversation(Document):
    """Беседа."""

    title: str = ""
    type: ConversationType = ConversationType.DIRECT
    participants: list[Participant]
    context: ConversationContext = Field(default_factory=ConversationContext)
    created_by: str
    last_message_at: Optional[datetime] = None
    last_message_preview: str = ""
    is_archived: bool = False

    @field_validator("participants")
    @classmethod
    def at_least_two(cls, v: list[Participant]) -> list[Participant]:
        if len({p.user_id for p in v}) < 2:
            raise ValueError("a conversation must have at least two participants")
        return v

    @property
    def participant_ids(self) -> set[str]:
        return {p.user_id for p in self.participants}

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participant_ids


class Attachment(BaseModel):
    type: AttachmentType = AttachmentType.IMAGE
    url: str = Field(..., min_length=1)
    filename: str = ""


class Message(Document):
    """Сообщение в беседе."""

    conversation_id: str
    sender_id: str
    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    read_by: list[str] = Field(default_factory=list)
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None


class ConversationCreateDTO(BaseModel):
    participant_ids: list[str] = Field(..., min_length=1)
    title: str = ""
    type: Optional[ConversationType] = None
    context_type: ConversationContextType = ConversationContextType.GENERAL
    context_id: Optional[str] = None


class MessageCreateDTO(BaseModel):
    conversation_id: str
    content: str = ""
    attachments: list[Attachment] = Field(default_factory=list)


def build_preview(content: str, attachments: list[Attachment]) -> str:
    """Превью: первые 200 символов текста, иначе [Image]/[File]."""
    if content:
        return content[:PREVIEW_MAX_LENGTH]
    if attachments:
        return "[Image]" if attachments[0].type == AttachmentType.IMAGE else "[File]"
    return ""
