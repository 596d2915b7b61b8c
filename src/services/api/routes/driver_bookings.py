# src/services/api/routes/driver_bookings.py
"""
Заказы водителей: клиент (/me), водитель (/driver), сотрудники (/admin).
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel

from src.core.bookings.driver_bookings import DriverBookingService
from src.core.bookings.models import DriverBookingCreateDTO, DriverBookingFilter
from src.core.users.models import User
from src.services.api.auth import get_current_user
from src.services.api.dependencies import get_driver_booking_service
from src.services.api.params import pagination_params
from src.services.api.responses import ok, paged
from src.shared.models.common import PaginationParams

router = APIRouter(prefix="/driver-bookings", tags=["Driver bookings"])


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RespondRequest(BaseModel):
    action: str


class ConfirmPaymentRequest(BaseModel):
    payment_id: str


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_driver_booking(
    request: DriverBookingCreateDTO,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return ok(await service.create(user, request))


# === КЛИЕНТ ===

@router.get("/me")
async def list_my_bookings(
    flt: DriverBookingFilter = Depends(),
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return paged(await service.list_for_customer(user, flt, pagination))


@router.get("/me/{booking_id}")
async def get_my_booking(
    booking_id: str,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return ok(await service.get_for_customer(user, booking_id))


@router.patch("/me/{booking_id}/cancel")
async def cancel_my_booking(
    booking_id: str,
    request: CancelRequest | None = None,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    reason = request.reason if request else None
    return ok(await service.cancel_by_customer(user, booking_id, reason))


@router.patch("/me/{booking_id}/confirm-payment")
async def confirm_payment(
    booking_id: str,
    request: ConfirmPaymentRequest,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return ok(await service.confirm_payment(user, booking_id, request.payment_id))


# === ВОДИТЕЛЬ ===

@router.get("/driver")
async def list_driver_bookings(
    flt: DriverBookingFilter = Depends(),
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return paged(await service.list_for_driver(user, flt, pagination))


@router.get("/driver/{booking_id}")
async def get_driver_booking(
    booking_id: str,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return ok(await service.get_for_driver(user, booking_id))


@router.patch("/driver/{booking_id}/respond")
async def respond_to_booking(
    booking_id: str,
    request: RespondRequest,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return ok(await service.respond(user, booking_id, request.action))


@router.patch("/driver/{booking_id}/cancel")
async def cancel_as_driver(
    booking_id: str,
    request: CancelRequest | None = None,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    reason = request.reason if request else None
    return ok(await service.cancel_by_driver(user, booking_id, reason))


@router.patch("/driver/{booking_id}/complete")
async def complete_as_driver(
    booking_id: str,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return ok(await service.complete(user, booking_id))


# === СОТРУДНИКИ ===

@router.get("/admin")
async def list_all_bookings(
    flt: DriverBookingFilter = Depends(),
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return paged(await service.list_admin(user, flt, pagination))


@router.get("/admin/{booking_id}")
async def get_any_booking(
    booking_id: str,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return ok(await service.get_admin(user, booking_id))


@router.patch("/admin/{booking_id}/complete")
async def complete_as_admin(
    booking_id: str,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    return ok(await service.complete_admin(user, booking_id))


@router.delete("/admin/{booking_id}")
async def delete_booking(
    booking_id: str,
    user: User = Depends(get_current_user),
    service: DriverBookingService = Depends(get_driver_booking_service),
):
    await service.delete_admin(user, booking_id)
    return ok({"id": booking_id})
