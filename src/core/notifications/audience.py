# src/core/notifications/audience.py
"""
Видимость уведомления для пользователя.

Чистые функции: результат зависит только от полей уведомления,
id и ролей пользователя и текущего времени.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable

from src.common.constants import AudienceScope, NotificationStatus
from src.core.notifications.models import Audience, Notification


def _role_value(role: object) -> str:
    return str(getattr(role, "value", role))


def audience_matches(audience: Audience, user_id: str, roles: Iterable[str]) -> bool:
    if audience.scope == AudienceScope.ALL:
        return True
    if audience.scope == AudienceScope.USER:
        return audience.user_id == user_id
    wanted = {_role_value(r) for r in audience.roles}
    return any(_role_value(role) in wanted for role in roles)


def is_delivered(notification: Notification, now: datetime) -> bool:
    """sent, либо scheduled с наступившим send_at."""
    if notification.status == NotificationStatus.SENT:
        return True
    return (
        notification.status == NotificationStatus.SCHEDULED
        and notification.send_at is not None
        and notification.send_at <= now
    )


def visible_to(
    notification: Notification,
    user_id: str,
    roles: Iterable[str],
    now: datetime,
    include_future: bool = False,
) -> bool:
    """
    Видно ли уведомление пользователю.

    include_future дополнительно показывает scheduled уведомления,
    чей send_at ещё не наступил.
    """
    if not notification.is_active:
        return False
    if notification.expires_at is not None and notification.expires_at <= now:
        return False
    if not is_delivered(notification, now):
        if not (include_future and notification.status == NotificationStatus.SCHEDULED):
            return False
    return audience_matches(notification.audience, user_id, roles)
