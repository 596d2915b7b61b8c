# src/core/payments/status.py
"""
Сопоставление текстовых статусов шлюза с каноническими статусами платежа.
"""

from __future__ import annotations

from typing import Optional

from src.common.constants import TERMINAL_PAYMENT_STATUSES, PaymentStatus

# Порядок важен: первая совпавшая подстрока побеждает
_STATUS_RULES: tuple[tuple[tuple[str, ...], PaymentStatus], ...] = (
    (("paid",), PaymentStatus.PAID),
    (("awaiting delivery",), PaymentStatus.AWAITING_DELIVERY),
    (("awaiting confirmation",), PaymentStatus.AWAITING_CONFIRMATION),
    (("sent", "created"), PaymentStatus.SENT),
    (("cancel",), PaymentStatus.CANCELLED),
    (("fail",), PaymentStatus.FAILED),
)


# Прогресс нетерминальных статусов; любой терминальный стоит выше всех
_PROGRESS_RANK: dict[str, int] = {
    PaymentStatus.UNPAID.value: 0,
    PaymentStatus.PENDING.value: 1,
    PaymentStatus.SENT.value: 2,
    PaymentStatus.AWAITING_CONFIRMATION.value: 3,
    PaymentStatus.AWAITING_DELIVERY.value: 4,
}
_TERMINAL_RANK = 5


def _rank(status: str) -> int:
    if status in TERMINAL_PAYMENT_STATUSES:
        return _TERMINAL_RANK
    return _PROGRESS_RANK.get(status, 0)


def map_gateway_status(text: Optional[str]) -> PaymentStatus:
    """
    Текст статуса шлюза → PaymentStatus.

    Поиск подстроки без учёта регистра; неизвестный текст даёт pending.
    """
    lowered = (text or "").strip().lower()
    for needles, status in _STATUS_RULES:
        if any(needle in lowered for needle in needles):
            return status
    return PaymentStatus.PENDING


def is_terminal(status: str | PaymentStatus) -> bool:
    return str(getattr(status, "value", status)) in TERMINAL_PAYMENT_STATUSES


def next_status(current: str | PaymentStatus, incoming: str | PaymentStatus) -> Optional[PaymentStatus]:
    """
    Статус, в который следует перевести платёж, или None если менять нечего.

    Статус только продвигается вперёд: более ранняя стадия от шлюза
    (например "Created" после "Awaiting Delivery") игнорируется.
    Терминальный статус не покидается никогда.
    """
    current_value = str(getattr(current, "value", current))
    incoming_status = PaymentStatus(str(getattr(incoming, "value", incoming)))
    if current_value in TERMINAL_PAYMENT_STATUSES:
        return None
    if _rank(incoming_status.value) <= _rank(current_value):
        return None
    return incoming_status
