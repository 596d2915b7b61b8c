# src/core/promos/__init__.py
"""
Промокоды: модели и расчёт скидки.
"""

from src.core.promos.evaluator import evaluate_promo
from src.core.promos.models import PromoCode, PromoEvaluation

__all__ = ["PromoCode", "PromoEvaluation", "evaluate_promo"]
