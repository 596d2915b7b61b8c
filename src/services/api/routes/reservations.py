# src/services/api/routes/reservations.py
"""
Бронирования автомобилей.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from src.common.constants import ReservationStatus
from src.core.bookings.models import ReservationCreateDTO, ReservationFilter, ReservationUpdateDTO
from src.core.bookings.reservations import ReservationService
from src.core.users.models import User
from src.services.api.auth import get_current_user
from src.services.api.dependencies import get_reservation_service
from src.services.api.params import pagination_params
from src.services.api.responses import ok, paged
from src.shared.models.common import PaginationParams

router = APIRouter(prefix="/reservations", tags=["Reservations"])


class StatusRequest(BaseModel):
    status: ReservationStatus


class AvailabilityRequest(BaseModel):
    vehicle_id: str
    start: datetime
    end: datetime
    exclude_id: Optional[str] = None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_reservation(
    request: ReservationCreateDTO,
    user: User = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    return ok(await service.create(user, request))


@router.get("")
async def list_reservations(
    flt: ReservationFilter = Depends(),
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    return paged(await service.list(user, flt, pagination))


@router.post("/availability")
async def check_availability(
    request: AvailabilityRequest,
    user: User = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    return ok(await service.check_availability(request.vehicle_id, request.start, request.end, request.exclude_id))


@router.get("/{reservation_id}")
async def get_reservation(
    reservation_id: str,
    user: User = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    return ok(await service.get(user, reservation_id))


@router.patch("/{reservation_id}")
async def update_reservation(
    reservation_id: str,
    request: ReservationUpdateDTO,
    user: User = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    return ok(await service.update(user, reservation_id, request))


@router.patch("/{reservation_id}/status")
async def update_reservation_status(
    reservation_id: str,
    request: StatusRequest,
    user: User = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    return ok(await service.update_status(user, reservation_id, request.status))


@router.delete("/{reservation_id}")
async def delete_reservation(
    reservation_id: str,
    user: User = Depends(get_current_user),
    service: ReservationService = Depends(get_reservation_service),
):
    await service.delete(user, reservation_id)
    return ok({"id": reservation_id})
