# src/core/payments/__init__.py
"""
Домен платежей.
Платежи через шлюз Paynow, статусы, промокоды и возвраты.
"""

from src.core.payments.models import InitiateOutcome, Payment, PaymentFilter, PaymentInitiateDTO
from src.core.payments.status import is_terminal, map_gateway_status, next_status

__all__ = [
    "InitiateOutcome",
    "Payment",
    "PaymentFilter",
    "PaymentInitiateDTO",
    "is_terminal",
    "map_gateway_status",
    "next_status",
]
