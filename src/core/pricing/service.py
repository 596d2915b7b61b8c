# src/core/pricing/service.py
"""
Построение снимков цены для бронирований.
Снимок фиксируется в момент создания брони и дальше не пересчитывается.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from src.common.constants import Currency
from src.common.errors import ValidationError
from src.core.bookings.models import (
    DiscountLine,
    DriverPricing,
    FeeLine,
    PricingLine,
    ReservationPricing,
    TaxLine,
)
from src.shared.models.common import money

ZERO = Decimal("0.00")


class PricingSnapshotBuilder:
    """Калькулятор снимков цены."""

    def build_reservation_pricing(
        self,
        currency: Currency | str,
        computed_at: datetime,
        breakdown: Optional[list[PricingLine]] = None,
        fees: Optional[list[FeeLine]] = None,
        taxes: Optional[list[TaxLine]] = None,
        discounts: Optional[list[DiscountLine]] = None,
        grand_total: Optional[Decimal] = None,
    ) -> ReservationPricing:
        """
        Собирает снимок цены бронирования.

        Итог = сумма строк + сборы + налоги - скидки (не меньше нуля).
        Если grand_total передан явно, он имеет приоритет.

        Args:
            currency: Валюта
            computed_at: Момент фиксации
            breakdown: Строки тарифа (базовая цена, доп. опции)
            fees: Сборы
            taxes: Налоги
            discounts: Скидки
            grand_total: Явный итог

        Returns:
            Снимок цены
        """
        breakdown = [self._normalize_line(line) for line in breakdown or []]
        fees = [FeeLine(code=f.code, amount=money(f.amount)) for f in fees or []]
        taxes = [TaxLine(code=t.code, rate=t.rate, amount=money(t.amount)) for t in taxes or []]
        discounts = [DiscountLine(promo_code_id=d.promo_code_id, amount=money(d.amount)) for d in discounts or []]

        if grand_total is None:
            if not breakdown and not fees and not taxes:
                raise ValidationError("Pricing requires breakdown lines or an explicit grand_total", code="PRICING_REQUIRED")
            subtotal = sum((line.total for line in breakdown), ZERO)
            subtotal += sum((f.amount for f in fees), ZERO)
            subtotal += sum((t.amount for t in taxes), ZERO)
            subtotal -= sum((d.amount for d in discounts), ZERO)
            grand_total = max(ZERO, subtotal)

        grand_total = money(grand_total)
        if grand_total < ZERO:
            raise ValidationError("grand_total must be >= 0", code="INVALID_GRAND_TOTAL")

        return ReservationPricing(
            currency=currency,
            breakdown=breakdown,
            fees=fees,
            taxes=taxes,
            discounts=discounts,
            grand_total=grand_total,
            computed_at=computed_at,
        )

    @staticmethod
    def _normalize_line(line: PricingLine) -> PricingLine:
        unit = money(line.unit_amount)
        expected = money(unit * line.quantity)
        total = money(line.total)
        if total != expected:
            raise ValidationError(
                f"Pricing line '{line.label}' total {total} != {line.quantity} x {unit}",
                code="INVALID_PRICING_LINE",
            )
        return PricingLine(label=line.label, quantity=line.quantity, unit_amount=unit, total=total)

    def build_driver_pricing(
        self,
        hourly_rate: Decimal,
        hours_requested: Decimal,
        currency: Currency | str,
    ) -> DriverPricing:
        """estimated_total = hourly_rate * hours_requested."""
        if hours_requested <= 0:
            raise ValidationError("hours_requested must be > 0", code="INVALID_HOURS_REQUESTED")
        rate = money(hourly_rate)
        return DriverPricing(
            currency=currency,
            hourly_rate_snapshot=rate,
            hours_requested=Decimal(hours_requested),
            estimated_total=money(rate * Decimal(hours_requested)),
        )
