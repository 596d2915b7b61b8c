# src/core/bookings/models.py
"""
Модели бронирований автомобилей и заказов водителей.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from src.common.constants import (
    DRIVER_BOOKING_BLOCKING_STATUSES,
    RESERVATION_BLOCKING_STATUSES,
    CreatedChannel,
    Currency,
    DriverBookingStatus,
    PaymentSummaryStatus,
    ReservationStatus,
    ResourceKind,
)
from src.shared.models.common import Document


# =============================================================================
# ОБЩИЕ ЧАСТИ
# =============================================================================

class Location(BaseModel):
    """Свободная локация (адрес водителя, точка подачи)."""
    label: Optional[str] = None
    address: Optional[str] = None
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)


class Endpoint(BaseModel):
    """Филиал и время выдачи/возврата автомобиля."""
    branch_id: str = Field(..., description="ID филиала")
    at: datetime = Field(..., description="Время")


def intervals_overlap(
    start: datetime,
    end: datetime,
    other_start: datetime,
    other_end: datetime,
) -> bool:
    """Пересечение полуоткрытых интервалов [start, end) и [other_start, other_end)."""
    return start < other_end and end > other_start


@dataclass(frozen=True)
class BookingRef:
    """Ссылка на бронь, занимающую интервал ресурса."""
    kind: ResourceKind
    booking_id: str
    code: str
    status: str
    start_at: datetime
    end_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "kind": str(getattr(self.kind, "value", self.kind)),
            "booking_id": self.booking_id,
            "code": self.code,
            "status": str(getattr(self.status, "value", self.status)),
            "start_at": self.start_at.isoformat(),
            "end_at": self.end_at.isoformat(),
        }


# =============================================================================
# БРОНИРОВАНИЕ АВТОМОБИЛЯ
# =============================================================================

class PricingLine(BaseModel):
    label: str
    quantity: int = Field(1, ge=1)
    unit_amount: Decimal
    total: Decimal


class FeeLine(BaseModel):
    code: str
    amount: Decimal


class TaxLine(BaseModel):
    code: str
    rate: Decimal = Field(..., ge=0, le=1)
    amount: Decimal


class DiscountLine(BaseModel):
    promo_code_id: Optional[str] = None
    amount: Decimal


class ReservationPricing(BaseModel):
    """Снимок цены бронирования (неизменяемый после создания)."""
    currency: Currency
    breakdown: list[PricingLine] = Field(default_factory=list)
    fees: list[FeeLine] = Field(default_factory=list)
    taxes: list[TaxLine] = Field(default_factory=list)
    discounts: list[DiscountLine] = Field(default_factory=list)
    grand_total: Decimal = Field(..., ge=0)
    computed_at: datetime


class PaymentSummary(BaseModel):
    """Сводка по оплатам брони."""
    status: PaymentSummaryStatus = PaymentSummaryStatus.UNPAID
    paid_total: Decimal = Decimal("0.00")
    outstanding: Decimal = Decimal("0.00")
    last_payment_at: Optional[datetime] = None


class Reservation(Document):
    """Бронирование автомобиля."""

    code: str = Field(..., description="Уникальный человекочитаемый код")
    user_id: str = Field(..., description="Клиент")
    created_by: str = Field(..., description="Кто создал (клиент или сотрудник)")
    created_channel: CreatedChannel = Field(CreatedChannel.WEB, description="Канал создания")

    vehicle_id: Optional[str] = Field(None, description="Назначенная единица автопарка")
    vehicle_model_id: str = Field(..., description="Модель автомобиля")

    pickup: Endpoint
    dropoff: Endpoint

    status: ReservationStatus = Field(ReservationStatus.PENDING, description="Статус")
    pricing: ReservationPricing
    payment_summary: PaymentSummary = Field(default_factory=PaymentSummary)
    notes: str = ""

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_window(self) -> "Reservation":
        if self.pickup.at >= self.dropoff.at:
            raise ValueError("dropoff time must be after pickup time")
        return self

    @property
    def is_blocking(self) -> bool:
        """Занимает ли бронь интервал автомобиля."""
        return self.vehicle_id is not None and self.status in RESERVATION_BLOCKING_STATUSES

    def as_ref(self) -> BookingRef:
        return BookingRef(
            kind=ResourceKind.VEHICLE,
            booking_id=self.id,
            code=self.code,
            status=self.status,
            start_at=self.pickup.at,
            end_at=self.dropoff.at,
        )


# =============================================================================
# ЗАКАЗ ВОДИТЕЛЯ
# =============================================================================

class DriverPricing(BaseModel):
    """Снимок цены заказа водителя."""
    currency: Currency
    hourly_rate_snapshot: Decimal = Field(..., ge=0)
    hours_requested: Decimal = Field(..., gt=0)
    estimated_total: Decimal = Field(..., ge=0)


class DriverBooking(Document):
    """Заказ времени водителя."""

    code: str = Field(..., description="Код DRV-YYYYMMDD-NNNNNN")
    customer_id: str = Field(..., description="Клиент")
    created_by: str = Field(..., description="Кто создал")
    created_channel: CreatedChannel = Field(CreatedChannel.MOBILE, description="Канал создания")

    driver_profile_id: str
    driver_user_id: str

    start_at: datetime
    end_at: Optional[datetime] = None

    pickup_location: Location
    dropoff_location: Location
    notes: str = ""

    pricing: DriverPricing
    status: DriverBookingStatus = DriverBookingStatus.REQUESTED

    requested_at: datetime
    driver_responded_at: Optional[datetime] = None
    payment_deadline_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    expired_at: Optional[datetime] = None

    payment_id: Optional[str] = None
    payment_status_snapshot: str = "unpaid"
    last_status_update_by: Optional[str] = None
    cancel_reason: Optional[str] = None

    @model_validator(mode="after")
    def check_window(self) -> "DriverBooking":
        if self.end_at is not None and self.start_at >= self.end_at:
            raise ValueError("end_at must be after start_at")
        return self

    @property
    def effective_end_at(self) -> datetime:
        """end_at либо start_at + hours_requested."""
        if self.end_at is not None:
            return self.end_at
        return self.start_at + timedelta(hours=float(self.pricing.hours_requested))

    @property
    def is_blocking(self) -> bool:
        return self.status in DRIVER_BOOKING_BLOCKING_STATUSES

    def as_ref(self) -> BookingRef:
        return BookingRef(
            kind=ResourceKind.DRIVER,
            booking_id=self.id,
            code=self.code,
            status=self.status,
            start_at=self.start_at,
            end_at=self.effective_end_at,
        )


# =============================================================================
# DTO
# =============================================================================

class ReservationCreateDTO(BaseModel):
    """Запрос на создание бронирования."""
    code: Optional[str] = None
    user_id: Optional[str] = Field(None, description="Клиент (для сотрудников)")
    created_channel: CreatedChannel = CreatedChannel.WEB
    vehicle_id: Optional[str] = None
    vehicle_model_id: str
    pickup: Endpoint
    dropoff: Endpoint
    currency: Currency = Currency.USD
    breakdown: list[PricingLine] = Field(default_factory=list)
    fees: list[FeeLine] = Field(default_factory=list)
    taxes: list[TaxLine] = Field(default_factory=list)
    discounts: list[DiscountLine] = Field(default_factory=list)
    grand_total: Optional[Decimal] = None
    notes: str = ""


class ReservationUpdateDTO(BaseModel):
    """Частичное обновление бронирования сотрудником."""
    notes: Optional[str] = None
    vehicle_id: Optional[str] = None
    pickup: Optional[Endpoint] = None
    dropoff: Optional[Endpoint] = None
    breakdown: Optional[list[PricingLine]] = None
    fees: Optional[list[FeeLine]] = None
    taxes: Optional[list[TaxLine]] = None
    discounts: Optional[list[DiscountLine]] = None
    grand_total: Optional[Decimal] = None


class ReservationFilter(BaseModel):
    code: Optional[str] = None
    user_id: Optional[str] = None
    created_by: Optional[str] = None
    status: Optional[ReservationStatus] = None
    vehicle_id: Optional[str] = None
    vehicle_model_id: Optional[str] = None
    pickup_from: Optional[datetime] = None
    pickup_to: Optional[datetime] = None
    dropoff_from: Optional[datetime] = None
    dropoff_to: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v else v


class DriverBookingCreateDTO(BaseModel):
    """Запрос на заказ водителя."""
    driver_profile_id: str
    customer_id: Optional[str] = Field(None, description="Клиент (для сотрудников)")
    start_at: datetime
    end_at: Optional[datetime] = None
    hours_requested: Optional[Decimal] = None
    pickup_location: Location
    dropoff_location: Location
    notes: str = ""
    created_channel: CreatedChannel = CreatedChannel.MOBILE


class DriverBookingFilter(BaseModel):
    status: Optional[DriverBookingStatus] = None
    start_from: Optional[datetime] = None
    start_to: Optional[datetime] = None
    customer_id: Optional[str] = None
    driver_user_id: Optional[str] = None
