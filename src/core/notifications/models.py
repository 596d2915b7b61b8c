# src/core/notifications/models.py
"""
Модели уведомлений.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from src.common.constants import (
    AudienceScope,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    UserRole,
)
from src.shared.models.common import Document


class Audience(BaseModel):
    """Кому адресовано уведомление."""
    scope: AudienceScope = AudienceScope.ALL
    user_id: Optional[str] = None
    roles: list[UserRole] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_scope(self) -> "Audience":
        if self.scope == AudienceScope.USER and not self.user_id:
            raise ValueError("audience.user_id is required when scope is 'user'")
        if self.scope == AudienceScope.ROLES and not self.roles:
            raise ValueError("audience.roles must be non-empty when scope is 'roles'")
        return self


class Acknowledgement(BaseModel):
    """Квитанция пользователя (уникальна по user_id)."""
    user_id: str
    read_at: Optional[datetime] = None
    acted_at: Optional[datetime] = None
    action: Optional[str] = None


class Notification(Document):
    """Уведомление."""

    title: str = Field(..., min_length=1, max_length=160)
    message: str = Field(..., min_length=1, max_length=4000)
    type: NotificationType = NotificationType.INFO
    priority: NotificationPriority = NotificationPriority.NORMAL
    audience: Audience = Field(default_factory=Audience)
    channels: list[NotificationChannel] = Field(default_factory=lambda: [NotificationChannel.IN_APP], min_length=1)

    send_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    status: NotificationStatus = NotificationStatus.DRAFT
    is_active: bool = True

    action_text: Optional[str] = None
    action_url: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    acknowledgements: list[Acknowledgement] = Field(default_factory=list)
    created_by: Optional[str] = None

    def ack_for(self, user_id: str) -> Acknowledgement | None:
        for ack in self.acknowledgements:
            if ack.user_id == user_id:
                return ack
        return None


class NotificationCreateDTO(BaseModel):
    title: str = Field(..., min_length=1, max_length=160)
    message: str = Field(..., min_length=1, max_length=4000)
    type: NotificationType = NotificationType.INFO
    priority: NotificationPriority = NotificationPriority.NORMAL
    audience: Audience = Field(default_factory=Audience)
    channels: list[NotificationChannel] = Field(default_factory=lambda: [NotificationChannel.IN_APP], min_length=1)
    send_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    status: NotificationStatus = NotificationStatus.DRAFT
    action_text: Optional[str] = None
    action_url: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)


class NotificationUpdateDTO(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=160)
    message: Optional[str] = Field(None, min_length=1, max_length=4000)
    type: Optional[NotificationType] = None
    priority: Optional[NotificationPriority] = None
    audience: Optional[Audience] = None
    channels: Optional[list[NotificationChannel]] = None
    send_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    status: Optional[NotificationStatus] = None
    action_text: Optional[str] = None
    action_url: Optional[str] = None
    data: Optional[dict[str, Any]] = None


class NotificationFilter(BaseModel):
    status: Optional[NotificationStatus] = None
    type: Optional[NotificationType] = None
    audience_scope: Optional[AudienceScope] = None
    created_by: Optional[str] = None
