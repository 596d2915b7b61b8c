# src/core/promos/evaluator.py
"""
Чистое вычисление скидки по промокоду.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from src.common.constants import PromoRejectReason, PromoType
from src.core.promos.models import PromoCode, PromoEvaluation
from src.shared.models.common import money

ZERO = Decimal("0.00")
HUNDRED = Decimal("100")


def evaluate_promo(
    promo: PromoCode | None,
    amount: Decimal,
    currency: str,
    now: datetime,
) -> PromoEvaluation:
    """
    Проверяет промокод и считает скидку для суммы.

    Порядок проверок: существование/активность, начало действия,
    окончание действия, лимит использований, валюта (для fixed).
    Скидка никогда не превышает сумму.

    Args:
        promo: Найденный промокод (None если код не найден)
        amount: Базовая сумма
        currency: Валюта платежа
        now: Текущее время

    Returns:
        PromoEvaluation со скидкой или причиной отказа
    """
    if promo is None or not promo.active:
        return PromoEvaluation(discount=ZERO, reason=PromoRejectReason.INVALID_CODE)

    if promo.valid_from and now < promo.valid_from:
        return PromoEvaluation(discount=ZERO, promo=promo, reason=PromoRejectReason.NOT_STARTED)

    if promo.valid_to and now > promo.valid_to:
        return PromoEvaluation(discount=ZERO, promo=promo, reason=PromoRejectReason.EXPIRED)

    if promo.is_exhausted:
        return PromoEvaluation(discount=ZERO, promo=promo, reason=PromoRejectReason.USAGE_LIMIT_REACHED)

    if promo.type == PromoType.PERCENT:
        pct = max(ZERO, min(HUNDRED, Decimal(promo.value)))
        discount = pct / HUNDRED * amount
    else:
        if not promo.currency or promo.currency != currency:
            return PromoEvaluation(discount=ZERO, promo=promo, reason=PromoRejectReason.CURRENCY_MISMATCH)
        discount = Decimal(promo.value)

    discount = money(min(discount, amount))
    return PromoEvaluation(discount=discount, promo=promo)


def payable_amount(base: Decimal, discount: Decimal) -> Decimal:
    """max(0, base - discount)."""
    return money(max(ZERO, base - discount))
