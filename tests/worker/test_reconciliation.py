# tests/worker/test_reconciliation.py
"""
Тесты воркера сверки платежей.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

import pytest

from src.common.errors import GatewayError
from src.core.payments.models import PaymentInitiateDTO
from src.core.users.models import User
from src.services.api.dependencies import ServiceContainer
from src.worker.reconciliation import PaymentReconciliationWorker

START = datetime(2030, 3, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
async def payment(container: ServiceContainer, customer: User, make_reservation: Callable[..., Any]) -> Any:
    reservation = make_reservation(START)
    container.repos.reservations.preload(reservation)
    outcome = await container.payments.initiate(
        customer,
        PaymentInitiateDTO(reservation_id=reservation.id, amount=Decimal("100.00")),
    )
    return outcome.payment


class TestPaymentReconciliationWorker:
    """Опрос незавершённых платежей."""

    @pytest.mark.asyncio
    async def test_paid_status_applied(self, container: ServiceContainer, gateway: Any, payment: Any) -> None:
        worker = PaymentReconciliationWorker(container.payments, interval=1, batch_size=10)
        gateway.poll_status = "Paid"

        assert await worker.run_once() == 1

        stored = await container.repos.payments.get(payment.id)
        assert stored.status == "paid"
        assert gateway.polled == [payment.poll_url]
        # Оплаченный платёж больше не опрашивается
        assert await worker.run_once() == 0
        assert len(gateway.polled) == 1

    @pytest.mark.asyncio
    async def test_unchanged_status_not_counted(self, container: ServiceContainer, gateway: Any, payment: Any) -> None:
        worker = PaymentReconciliationWorker(container.payments)
        gateway.poll_status = "Created"

        assert await worker.run_once() == 1
        assert (await container.repos.payments.get(payment.id)).status == "sent"
        assert await worker.run_once() == 0
        assert len(gateway.polled) == 2

    @pytest.mark.asyncio
    async def test_gateway_failure_skipped(self, container: ServiceContainer, gateway: Any, payment: Any) -> None:
        worker = PaymentReconciliationWorker(container.payments)
        gateway.poll_error = GatewayError("timeout", code="GATEWAY_TIMEOUT")

        assert await worker.tick() == 0

        stored = await container.repos.payments.get(payment.id)
        assert stored.status == payment.status
