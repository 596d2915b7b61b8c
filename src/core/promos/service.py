# src/core/promos/service.py
"""
Сервис промокодов: проверка правил и поиск действующих кодов.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from src.common.clock import Clock
from src.common.constants import PromoType, TypeMsg
from src.common.errors import ValidationError
from src.common.logger import log_info
from src.core.promos.evaluator import evaluate_promo
from src.core.promos.models import PromoCode, normalize_code
from src.core.repositories.interfaces import PromoCodeRepository


def validate_promo_rule(promo: PromoCode) -> None:
    """
    Проверяет правило скидки.

    percent: value в (0, 100]; fixed: value > 0 и задана валюта;
    valid_from строго раньше valid_to.

    Raises:
        ValidationError: INVALID_PROMO_RULE
    """
    value = Decimal(promo.value)
    if promo.type == PromoType.PERCENT:
        if value <= 0 or value > 100:
            raise ValidationError("Percent promo value must be in (0, 100]", code="INVALID_PROMO_RULE")
    else:
        if value <= 0:
            raise ValidationError("Fixed promo value must be greater than 0", code="INVALID_PROMO_RULE")
        if not promo.currency:
            raise ValidationError("Fixed promo requires a currency", code="INVALID_PROMO_RULE")
    if promo.valid_to is not None and promo.valid_from >= promo.valid_to:
        raise ValidationError("valid_from must be before valid_to", code="INVALID_PROMO_RULE")


class PromoService:
    """Поиск и регистрация промокодов."""

    def __init__(self, promos: PromoCodeRepository, clock: Clock) -> None:
        self._promos = promos
        self._clock = clock

    async def create(self, promo: PromoCode) -> PromoCode:
        validate_promo_rule(promo)
        created = await self._promos.insert(promo)
        await log_info(f"Промокод {created.code} зарегистрирован", type_msg=TypeMsg.INFO)
        return created

    async def get_valid_by_code(self, code: str, amount: Decimal, currency: str) -> Optional[PromoCode]:
        """Промокод, если он применим к сумме сейчас, иначе None."""
        promo = await self._promos.get_by_code(normalize_code(code))
        evaluation = evaluate_promo(promo, amount, currency, self._clock.now())
        return evaluation.promo if evaluation.applied else None

    async def list_active(self, now: Optional[datetime] = None) -> list[PromoCode]:
        return await self._promos.list_active(now or self._clock.now())
