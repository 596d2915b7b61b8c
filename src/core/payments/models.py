# src/core/payments/models.py
"""
Модели платежей.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from src.common.constants import (
    TERMINAL_PAYMENT_STATUSES,
    Currency,
    PaymentMethod,
    PaymentProvider,
    PaymentStatus,
)
from src.shared.models.common import Document


class Refund(BaseModel):
    """Запись о возврате (только добавление)."""
    amount: Decimal = Field(..., gt=0)
    provider_ref: Optional[str] = None
    at: datetime


class PromoSnapshot(BaseModel):
    """Промокод, применённый к платежу."""
    promo_code_id: str
    code: str
    discount: Decimal = Field(..., ge=0)


class Payment(Document):
    """Попытка оплаты, привязанная ровно к одной брони."""

    user_id: str = Field(..., description="Плательщик")
    reservation_id: Optional[str] = Field(None, description="Бронирование автомобиля")
    driver_booking_id: Optional[str] = Field(None, description="Заказ водителя")

    provider: PaymentProvider = PaymentProvider.PAYNOW
    method: PaymentMethod
    amount: Decimal = Field(..., ge=0, description="Сумма к оплате (после скидки)")
    currency: Currency
    status: PaymentStatus = PaymentStatus.PENDING

    merchant_reference: str = Field(..., description="Референс, отправленный шлюзу")
    provider_ref: Optional[str] = Field(None, description="Референс шлюза")
    poll_url: Optional[str] = None
    provider_status: Optional[str] = Field(None, description="Последний текст статуса от шлюза")

    promo: Optional[PromoSnapshot] = None
    captured_at: Optional[datetime] = None
    refunds: list[Refund] = Field(default_factory=list)
    promo_usage_counted: bool = False

    @model_validator(mode="after")
    def exactly_one_target(self) -> "Payment":
        if (self.reservation_id is None) == (self.driver_booking_id is None):
            raise ValueError("payment must reference exactly one of reservation_id or driver_booking_id")
        return self

    @property
    def target_kind(self) -> str:
        return "reservation" if self.reservation_id else "driver_booking"

    @property
    def target_id(self) -> str:
        return self.reservation_id or self.driver_booking_id  # type: ignore[return-value]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PAYMENT_STATUSES

    @property
    def discount(self) -> Decimal:
        return self.promo.discount if self.promo else Decimal("0.00")

    @property
    def refunded_total(self) -> Decimal:
        return sum((r.amount for r in self.refunds), Decimal("0.00"))

    @property
    def refundable(self) -> Decimal:
        return self.amount - self.refunded_total


class PaymentInitiateDTO(BaseModel):
    """Запрос на создание платежа."""
    reservation_id: Optional[str] = None
    driver_booking_id: Optional[str] = None
    amount: Decimal = Field(..., gt=0)
    currency: Currency = Currency.USD
    method: PaymentMethod = PaymentMethod.CARD
    promo_code: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    mobile_method: str = "ecocash"
    description: Optional[str] = None
    cancel_previous: bool = Field(False, description="Отменить текущий активный платёж по этой брони")


class PaymentFilter(BaseModel):
    user_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    reservation_id: Optional[str] = None
    driver_booking_id: Optional[str] = None


class InitiateOutcome(BaseModel):
    """Результат создания платежа."""
    payment: Payment
    redirect_url: Optional[str] = None
    instructions: Optional[str] = None
    poll_url: Optional[str] = None
    promo_warning: Optional[str] = None
