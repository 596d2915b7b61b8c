# src/core/notifications/__init__.py
"""
Домен уведомлений.
Адресные уведомления, расписание отправки и отметки пользователей.
"""

from src.core.notifications.models import Acknowledgement, Audience, Notification

__all__ = [
    "Acknowledgement",
    "Audience",
    "Notification",
]
