# tests/core/test_webhook.py
"""
Тесты обработчика result URL шлюза.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

import pytest

from src.common.errors import GatewayError
from src.core.payments.models import PaymentInitiateDTO
from src.core.payments.webhook import PaynowWebhookHandler
from src.core.repositories.interfaces import Repositories
from src.core.users.models import User
from tests.conftest import FakeGateway

START = datetime(2030, 3, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
async def payment(container: Any, repos: Repositories, customer: User, vehicle: Any, make_reservation: Any) -> Any:
    reservation = make_reservation(START)
    repos.reservations.preload(reservation)
    outcome = await container.payments.initiate(
        customer, PaymentInitiateDTO(reservation_id=reservation.id, amount=Decimal("100.00")),
    )
    return outcome.payment


@pytest.fixture
def handler(container: Any) -> PaynowWebhookHandler:
    return container.webhook


class TestWebhook:
    """Тесты PaynowWebhookHandler.handle."""

    @pytest.mark.asyncio
    async def test_polled_status_wins(
        self, handler: PaynowWebhookHandler, payment: Any, gateway: FakeGateway, repos: Repositories,
    ) -> None:
        gateway.poll_status = "Paid"

        result = await handler.handle({"Reference": payment.merchant_reference, "Status": "Sent", "Hash": "X"})

        assert result == {"success": True, "updated": True, "status": "paid"}
        assert gateway.polled == [payment.poll_url]
        stored = await repos.reservations.get(payment.reservation_id)
        assert stored.status == "confirmed"

    @pytest.mark.asyncio
    async def test_falls_back_to_body_status(
        self, handler: PaynowWebhookHandler, payment: Any, gateway: FakeGateway,
    ) -> None:
        gateway.poll_error = GatewayError("timeout", code="GATEWAY_TIMEOUT")

        result = await handler.handle({"reference": payment.merchant_reference, "status": "Cancelled"})

        assert result["updated"] is True
        assert result["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_bad_hash_ignored(
        self, handler: PaynowWebhookHandler, payment: Any, gateway: FakeGateway, repos: Repositories,
    ) -> None:
        gateway.hash_valid = False
        gateway.poll_status = "Paid"

        result = await handler.handle({"reference": payment.merchant_reference, "status": "Paid", "hash": "bad"})

        assert result == {"success": True, "updated": False, "message": "Hash mismatch"}
        stored = await repos.payments.get(payment.id)
        assert stored.status == "pending"

    @pytest.mark.asyncio
    async def test_unknown_reference(self, handler: PaynowWebhookHandler, payment: Any) -> None:
        result = await handler.handle({"reference": "PAY-UNKNOWN", "status": "Paid"})

        assert result["success"] is True
        assert result["updated"] is False
        assert result["message"] == "Payment not found"

    @pytest.mark.asyncio
    async def test_missing_reference(self, handler: PaynowWebhookHandler) -> None:
        result = await handler.handle({"status": "Paid"})

        assert result == {"success": True, "updated": False, "message": "No reference"}

    @pytest.mark.asyncio
    async def test_repeated_notification_is_noop(
        self, handler: PaynowWebhookHandler, payment: Any, gateway: FakeGateway,
    ) -> None:
        gateway.poll_status = "Paid"
        await handler.handle({"reference": payment.merchant_reference})

        result = await handler.handle({"reference": payment.merchant_reference})

        assert result == {"success": True, "updated": False, "status": "paid"}

    @pytest.mark.asyncio
    async def test_unexpected_error_still_acknowledged(
        self, handler: PaynowWebhookHandler, payment: Any, gateway: FakeGateway,
    ) -> None:
        gateway.poll_error = RuntimeError("boom")

        result = await handler.handle({"reference": payment.merchant_reference, "status": "Paid"})

        assert result == {"success": True, "updated": False, "message": "Webhook accepted"}
