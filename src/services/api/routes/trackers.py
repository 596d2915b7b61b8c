# src/services/api/routes/trackers.py
"""
GPS-трекеры: администрирование и эндпоинты самого устройства.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from src.core.tracking.models import TrackerCreateDTO, TrackerFilter, TrackerUpdateDTO
from src.core.tracking.service import TrackingService
from src.core.users.models import User
from src.services.api.auth import get_current_tracker, get_current_user
from src.services.api.dependencies import get_tracking_service
from src.services.api.params import pagination_params
from src.services.api.responses import ok, paged
from src.shared.models.common import PaginationParams

router = APIRouter(prefix="/vehicle-trackers", tags=["Vehicle trackers"])


class AttachRequest(BaseModel):
    vehicle_id: str = Field(..., min_length=1)


class DetachRequest(BaseModel):
    reason: Optional[str] = None


class DeviceLoginRequest(BaseModel):
    device_id: str


def _client(request: Request) -> tuple[str, str]:
    ip = request.client.host if request.client else ""
    return ip, request.headers.get("user-agent", "")


# === УСТРОЙСТВО ===

@router.post("/device/login")
async def device_login(
    payload: DeviceLoginRequest,
    request: Request,
    service: TrackingService = Depends(get_tracking_service),
):
    ip, user_agent = _client(request)
    result = await service.device_login(payload.device_id, ip, user_agent)
    return ok(result)


@router.post("/device/attach")
async def device_attach(
    payload: AttachRequest,
    request: Request,
    claims: dict[str, str] = Depends(get_current_tracker),
    service: TrackingService = Depends(get_tracking_service),
):
    ip, user_agent = _client(request)
    return ok(await service.attach_vehicle(claims["tracker_id"], payload.vehicle_id, ip, user_agent))


@router.post("/device/detach")
async def device_detach(
    request: Request,
    payload: DetachRequest | None = None,
    claims: dict[str, str] = Depends(get_current_tracker),
    service: TrackingService = Depends(get_tracking_service),
):
    ip, user_agent = _client(request)
    reason = payload.reason if payload else None
    return ok(await service.detach_vehicle(claims["tracker_id"], reason, ip, user_agent))


@router.get("/vehicle/{vehicle_id}/location")
async def vehicle_location(
    vehicle_id: str,
    user: User = Depends(get_current_user),
    service: TrackingService = Depends(get_tracking_service),
):
    return ok(await service.last_location(vehicle_id))


# === АДМИНИСТРИРОВАНИЕ ===

@router.post("", status_code=status.HTTP_201_CREATED)
async def create_tracker(
    payload: TrackerCreateDTO,
    user: User = Depends(get_current_user),
    service: TrackingService = Depends(get_tracking_service),
):
    return ok(await service.create_tracker(user, payload))


@router.get("")
async def list_trackers(
    flt: TrackerFilter = Depends(),
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: TrackingService = Depends(get_tracking_service),
):
    return paged(await service.list_trackers(user, flt, pagination))


@router.get("/{tracker_id}")
async def get_tracker(
    tracker_id: str,
    user: User = Depends(get_current_user),
    service: TrackingService = Depends(get_tracking_service),
):
    return ok(await service.get_tracker(user, tracker_id))


@router.patch("/{tracker_id}")
async def update_tracker(
    tracker_id: str,
    payload: TrackerUpdateDTO,
    user: User = Depends(get_current_user),
    service: TrackingService = Depends(get_tracking_service),
):
    return ok(await service.update_tracker(user, tracker_id, payload))


@router.delete("/{tracker_id}")
async def delete_tracker(
    tracker_id: str,
    user: User = Depends(get_current_user),
    service: TrackingService = Depends(get_tracking_service),
):
    await service.delete_tracker(user, tracker_id)
    return ok({"id": tracker_id})


@router.patch("/{tracker_id}/attach")
async def attach_tracker(
    tracker_id: str,
    payload: AttachRequest,
    user: User = Depends(get_current_user),
    service: TrackingService = Depends(get_tracking_service),
):
    return ok(await service.attach(user, tracker_id, payload.vehicle_id))


@router.patch("/{tracker_id}/detach")
async def detach_tracker(
    tracker_id: str,
    payload: DetachRequest | None = None,
    user: User = Depends(get_current_user),
    service: TrackingService = Depends(get_tracking_service),
):
    reason = payload.reason if payload else None
    return ok(await service.detach(user, tracker_id, reason))
