# src/worker/reconciliation.py
"""
Сверка незавершённых платежей со шлюзом.

Webhook может не дойти, поэтому платежи в нетерминальных статусах
периодически опрашиваются по poll_url.
"""

from __future__ import annotations

from src.core.payments.service import PaymentService
from src.worker.base import BaseWorker


class PaymentReconciliationWorker(BaseWorker):
    def __init__(self, payments: PaymentService, interval: float = 120.0, batch_size: int = 50) -> None:
        super().__init__(interval)
        self._payments = payments
        self._batch_size = batch_size

    @property
    def name(self) -> str:
        return "payment_reconciliation"

    async def run_once(self) -> int:
        return await self._payments.reconcile(limit=self._batch_size)
