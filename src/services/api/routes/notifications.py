# src/services/api/routes/notifications.py
"""
Уведомления: управление (сотрудники) и лента пользователя.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field

from src.core.notifications.models import NotificationCreateDTO, NotificationFilter, NotificationUpdateDTO
from src.core.notifications.service import NotificationService
from src.core.users.models import User
from src.services.api.auth import get_current_user
from src.services.api.dependencies import get_notification_service
from src.services.api.params import pagination_params
from src.services.api.responses import ok, paged
from src.shared.models.common import PaginationParams

router = APIRouter(prefix="/notifications", tags=["Notifications"])


class ScheduleRequest(BaseModel):
    send_at: datetime


class ActionRequest(BaseModel):
    action: Optional[str] = None


class BulkReadRequest(BaseModel):
    notification_ids: list[str] = Field(..., min_length=1)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_notification(
    request: NotificationCreateDTO,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return ok(await service.create(user, request))


@router.get("")
async def list_notifications(
    flt: NotificationFilter = Depends(),
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return paged(await service.list(user, flt, pagination))


@router.get("/mine")
async def list_my_notifications(
    only_unread: bool = Query(False),
    include_future: bool = Query(False),
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return paged(await service.list_mine(user, pagination, only_unread, include_future))


@router.post("/bulk/read")
async def bulk_mark_read(
    request: BulkReadRequest,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    updated = await service.bulk_mark_read(user, request.notification_ids)
    return ok({"updated": updated})


@router.get("/for-user/{user_id}")
async def list_for_user(
    user_id: str,
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return paged(await service.list_for_user(user, user_id, pagination))


@router.get("/created-by/{user_id}")
async def list_created_by(
    user_id: str,
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return paged(await service.list_created_by(user, user_id, pagination))


@router.get("/{notification_id}")
async def get_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return ok(await service.get(user, notification_id))


@router.patch("/{notification_id}")
async def update_notification(
    notification_id: str,
    request: NotificationUpdateDTO,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return ok(await service.update(user, notification_id, request))


@router.post("/{notification_id}/schedule")
async def schedule_notification(
    notification_id: str,
    request: ScheduleRequest,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return ok(await service.schedule(user, notification_id, request.send_at))


@router.post("/{notification_id}/send")
async def send_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return ok(await service.send_now(user, notification_id))


@router.post("/{notification_id}/cancel")
async def cancel_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return ok(await service.cancel(user, notification_id))


@router.post("/{notification_id}/disable")
async def disable_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return ok(await service.disable(user, notification_id))


@router.post("/{notification_id}/ack/read")
async def ack_read(
    notification_id: str,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return ok(await service.mark_read(user, notification_id))


@router.post("/{notification_id}/ack/action")
async def ack_action(
    notification_id: str,
    request: ActionRequest | None = None,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    action = request.action if request else None
    return ok(await service.mark_action(user, notification_id, action))


@router.get("/{notification_id}/acks")
async def list_acknowledgements(
    notification_id: str,
    user: User = Depends(get_current_user),
    service: NotificationService = Depends(get_notification_service),
):
    return ok(await service.list_acknowledgements(user, notification_id))
