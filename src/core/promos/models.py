# src/core/promos/models.py
"""
Модели промокодов.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from src.common.constants import Currency, PromoRejectReason, PromoType
from src.shared.models.common import Document


def normalize_code(code: str | None) -> str:
    """Trim + upper-case."""
    return (code or "").strip().upper()


class PromoConstraints(BaseModel):
    allowed_classes: list[str] = Field(default_factory=list)
    min_days: int = 0
    branch_ids: list[str] = Field(default_factory=list)


class PromoCode(Document):
    """Правило скидки."""

    code: str = Field(..., description="Код (регистр не важен)")
    type: PromoType
    value: Decimal = Field(..., description="Процент (0,100] или фиксированная сумма")
    currency: Optional[Currency] = Field(None, description="Обязательна для fixed")
    active: bool = True
    valid_from: datetime
    valid_to: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    used_count: int = Field(0, ge=0)
    constraints: PromoConstraints = Field(default_factory=PromoConstraints)
    notes: str = ""

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return normalize_code(v)

    @property
    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and self.used_count >= self.usage_limit


@dataclass(frozen=True)
class PromoEvaluation:
    """Результат проверки промокода для суммы."""
    discount: Decimal
    promo: Optional[PromoCode] = None
    reason: Optional[PromoRejectReason] = None

    @property
    def applied(self) -> bool:
        return self.promo is not None and self.reason is None
