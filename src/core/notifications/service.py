# src/core/notifications/service.py
"""
Сервис уведомлений.

Уведомления видны пользователям в приложении (in-app). Каналы email/sms/push
только записываются, доставку по ним выполняют внешние модули.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

from src.common.clock import Clock, ensure_utc
from src.common.constants import NotificationStatus, TypeMsg
from src.common.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from src.common.logger import log_info
from src.core.notifications.audience import visible_to
from src.core.notifications.models import (
    Acknowledgement,
    Notification,
    NotificationCreateDTO,
    NotificationFilter,
    NotificationUpdateDTO,
)
from src.core.repositories.interfaces import Repositories
from src.core.users.models import User, ensure_staff
from src.infra.event_bus import EventBus, EventTypes, emit
from src.shared.models.common import Page, PaginationParams

ACK_UPDATE_ATTEMPTS = 3
DEFAULT_ACTION = "clicked"

# Статусы, из которых уведомление больше не редактируется
LOCKED_STATUSES = frozenset({NotificationStatus.SENT.value, NotificationStatus.CANCELLED.value})


class NotificationService:
    """
    Сервис уведомлений.

    Создание и управление - сотрудники, чтение и квитанции - любой
    пользователь, которому уведомление видно.
    """

    def __init__(self, repos: Repositories, clock: Clock, event_bus: EventBus | None = None) -> None:
        self._repos = repos
        self._clock = clock
        self._event_bus = event_bus

    # =========================================================================
    # УПРАВЛЕНИЕ (сотрудники)
    # =========================================================================

    async def create(self, actor: User, dto: NotificationCreateDTO) -> Notification:
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        if dto.status == NotificationStatus.CANCELLED:
            raise ValidationError("Cannot create a cancelled notification", code="INVALID_NOTIFICATION_STATUS")
        if dto.status == NotificationStatus.SCHEDULED and dto.send_at is None:
            raise ValidationError("send_at is required for scheduled notifications", code="SEND_AT_REQUIRED")

        now = self._clock.now()
        data = dto.model_dump()
        if dto.send_at:
            data["send_at"] = ensure_utc(dto.send_at)
        if dto.expires_at:
            data["expires_at"] = ensure_utc(dto.expires_at)
        if dto.status == NotificationStatus.SENT:
            data["sent_at"] = now

        notification = await self._repos.notifications.insert(Notification(
            **data,
            created_by=actor.id,
            created_at=now,
            updated_at=now,
        ))
        await log_info(
            f"Уведомление {notification.id} создано ({notification.status}) сотрудником {actor.id}",
            type_msg=TypeMsg.INFO,
        )
        if notification.status == NotificationStatus.SENT:
            await self._emit_sent(notification)
        return notification

    async def list(
        self,
        actor: User,
        flt: NotificationFilter,
        pagination: PaginationParams,
    ) -> Page[Notification]:
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        return Page[Notification].slice(await self._repos.notifications.list(flt), pagination)

    async def list_created_by(self, actor: User, user_id: str, pagination: PaginationParams) -> Page[Notification]:
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        items = await self._repos.notifications.list(NotificationFilter(created_by=user_id))
        return Page[Notification].slice(items, pagination)

    async def list_for_user(self, actor: User, user_id: str, pagination: PaginationParams) -> Page[Notification]:
        """Что видит указанный пользователь (для поддержки)."""
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        user = await self._repos.users.get(user_id)
        if user is None:
            raise NotFoundError("User not found", code="USER_NOT_FOUND")
        return Page[Notification].slice(await self._visible(user), pagination)

    async def update(self, actor: User, notification_id: str, dto: NotificationUpdateDTO) -> Notification:
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        notification = await self._load(notification_id)
        if notification.status in LOCKED_STATUSES:
            raise InvalidStateError(
                f"Notification in status {notification.status} cannot be edited",
                code="NOTIFICATION_NOT_EDITABLE",
            )

        changes: dict[str, Any] = dto.model_dump(exclude_unset=True)
        if changes.get("status") in LOCKED_STATUSES:
            raise ValidationError(
                "Use send or cancel to move a notification to sent/cancelled",
                code="INVALID_NOTIFICATION_STATUS",
            )
        for key in ("send_at", "expires_at"):
            if changes.get(key):
                changes[key] = ensure_utc(changes[key])

        status = changes.get("status", notification.status)
        send_at = changes.get("send_at", notification.send_at)
        if status == NotificationStatus.SCHEDULED and send_at is None:
            raise ValidationError("send_at is required for scheduled notifications", code="SEND_AT_REQUIRED")

        return await self._write(notification, changes)

    async def schedule(self, actor: User, notification_id: str, send_at: datetime) -> Notification:
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        notification = await self._load(notification_id)
        if notification.status in LOCKED_STATUSES:
            raise InvalidStateError(
                f"Notification in status {notification.status} cannot be scheduled",
                code="NOTIFICATION_NOT_SCHEDULABLE",
            )
        updated = await self._write(notification, {
            "status": NotificationStatus.SCHEDULED.value,
            "send_at": ensure_utc(send_at),
        })
        await log_info(f"Уведомление {updated.id} запланировано на {updated.send_at}", type_msg=TypeMsg.INFO)
        return updated

    async def send_now(self, actor: User, notification_id: str) -> Notification:
        """Немедленная отправка. Уже отправленное возвращается без изменений."""
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        notification = await self._load(notification_id)
        if notification.status == NotificationStatus.CANCELLED:
            raise InvalidStateError("Cancelled notification cannot be sent", code="NOTIFICATION_CANCELLED")
        if notification.status == NotificationStatus.SENT:
            return notification

        updated = await self._write(notification, {
            "status": NotificationStatus.SENT.value,
            "sent_at": self._clock.now(),
        })
        await self._emit_sent(updated)
        return updated

    async def cancel(self, actor: User, notification_id: str) -> Notification:
        """Отмена. Повторная отмена ничего не меняет."""
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        notification = await self._load(notification_id)
        if notification.status == NotificationStatus.SENT:
            raise InvalidStateError("Sent notification cannot be cancelled", code="NOTIFICATION_ALREADY_SENT")
        if notification.status == NotificationStatus.CANCELLED:
            return notification
        updated = await self._write(notification, {"status": NotificationStatus.CANCELLED.value})
        await log_info(f"Уведомление {updated.id} отменено ({actor.id})", type_msg=TypeMsg.INFO)
        return updated

    async def disable(self, actor: User, notification_id: str) -> Notification:
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        notification = await self._load(notification_id)
        if not notification.is_active:
            return notification
        return await self._write(notification, {"is_active": False})

    async def list_acknowledgements(self, actor: User, notification_id: str) -> list[Acknowledgement]:
        ensure_staff(actor, code="NOTIFICATION_FORBIDDEN")
        return (await self._load(notification_id)).acknowledgements

    # =========================================================================
    # ЧТЕНИЕ (пользователи)
    # =========================================================================

    async def list_mine(
        self,
        actor: User,
        pagination: PaginationParams,
        only_unread: bool = False,
        include_future: bool = False,
    ) -> Page[Notification]:
        items = await self._visible(actor, include_future)
        if only_unread:
            items = [n for n in items if not self._is_read_by(n, actor.id)]
        return Page[Notification].slice(items, pagination)

    async def get(self, actor: User, notification_id: str) -> Notification:
        notification = await self._load(notification_id)
        if actor.is_staff:
            return notification
        if not visible_to(notification, actor.id, actor.roles, self._clock.now()):
            raise NotFoundError("Notification not found", code="NOTIFICATION_NOT_FOUND")
        return notification

    async def mark_read(self, actor: User, notification_id: str) -> Acknowledgement:
        """Квитанция о прочтении. read_at выставляется только один раз."""
        await self.get(actor, notification_id)
        now = self._clock.now()

        def touch(ack: Acknowledgement) -> Acknowledgement:
            if ack.read_at is None:
                ack.read_at = now
            return ack

        return await self._upsert_ack(notification_id, actor.id, touch)

    async def mark_action(self, actor: User, notification_id: str, action: Optional[str] = None) -> Acknowledgement:
        """Квитанция о действии; заодно отмечает прочтение."""
        await self.get(actor, notification_id)
        now = self._clock.now()

        def touch(ack: Acknowledgement) -> Acknowledgement:
            ack.acted_at = now
            ack.action = action or DEFAULT_ACTION
            if ack.read_at is None:
                ack.read_at = now
            return ack

        return await self._upsert_ack(notification_id, actor.id, touch)

    async def bulk_mark_read(self, actor: User, notification_ids: list[str]) -> int:
        """
        Отмечает прочитанными несколько уведомлений.

        Невидимые или несуществующие id пропускаются.

        Returns:
            Количество отмеченных уведомлений
        """
        marked = 0
        for notification_id in dict.fromkeys(notification_ids):
            try:
                await self.mark_read(actor, notification_id)
            except NotFoundError:
                continue
            marked += 1
        return marked

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _load(self, notification_id: str) -> Notification:
        notification = await self._repos.notifications.get(notification_id)
        if notification is None:
            raise NotFoundError("Notification not found", code="NOTIFICATION_NOT_FOUND")
        return notification

    async def _visible(self, user: User, include_future: bool = False) -> list[Notification]:
        now = self._clock.now()
        items = [
            n for n in await self._repos.notifications.list_candidates()
            if visible_to(n, user.id, user.roles, now, include_future)
        ]
        items.sort(key=lambda n: n.sent_at or n.send_at or n.created_at, reverse=True)
        return items

    @staticmethod
    def _is_read_by(notification: Notification, user_id: str) -> bool:
        ack = notification.ack_for(user_id)
        return ack is not None and ack.read_at is not None

    async def _write(self, notification: Notification, changes: dict[str, Any]) -> Notification:
        updated = await self._repos.notifications.compare_and_set(
            notification.id,
            {"version": notification.version},
            changes,
        )
        if updated is None:
            raise ConflictError(
                "Notification changed concurrently, reload and retry",
                code="NOTIFICATION_CONCURRENT_UPDATE",
            )
        return updated

    async def _upsert_ack(
        self,
        notification_id: str,
        user_id: str,
        touch: Callable[[Acknowledgement], Acknowledgement],
    ) -> Acknowledgement:
        """Квитанции уникальны по user_id: обновляем существующую или добавляем новую."""
        for _ in range(ACK_UPDATE_ATTEMPTS):
            notification = await self._load(notification_id)
            acks = [a.model_copy() for a in notification.acknowledgements]
            current = next((a for a in acks if a.user_id == user_id), None)
            if current is None:
                current = Acknowledgement(user_id=user_id)
                acks.append(current)
            touch(current)

            updated = await self._repos.notifications.compare_and_set(
                notification.id,
                {"version": notification.version},
                {"acknowledgements": [a.model_dump() for a in acks]},
            )
            if updated is not None:
                return updated.ack_for(user_id)  # type: ignore[return-value]

        raise ConflictError("Acknowledgement update lost to concurrent writers", code="NOTIFICATION_CONCURRENT_UPDATE")

    async def _emit_sent(self, notification: Notification) -> None:
        await log_info(f"Уведомление {notification.id} отправлено", type_msg=TypeMsg.INFO)
        await emit(self._event_bus, EventTypes.NOTIFICATION_SENT, {
            "notification_id": notification.id,
            "audience": notification.audience.model_dump(),
            "channels": list(notification.channels),
        })
