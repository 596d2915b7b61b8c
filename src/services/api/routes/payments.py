# src/services/api/routes/payments.py
"""
Платежи и webhook шлюза Paynow.
"""

from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import parse_qsl

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field

from src.common.logger import log_warning
from src.core.payments.models import InitiateOutcome, PaymentFilter, PaymentInitiateDTO
from src.core.payments.service import PaymentService
from src.core.payments.webhook import PaynowWebhookHandler
from src.core.users.models import User
from src.services.api.auth import get_current_user
from src.services.api.dependencies import get_payment_service, get_webhook_handler
from src.services.api.params import pagination_params
from src.services.api.responses import ok, paged
from src.shared.models.common import PaginationParams

router = APIRouter(prefix="/payments", tags=["Payments"])


class PromoRequest(BaseModel):
    code: str = Field(..., min_length=1)


class RefundRequest(BaseModel):
    amount: Decimal
    provider_ref: Optional[str] = None


def _initiated(outcome: InitiateOutcome) -> dict[str, Any]:
    return ok(
        outcome.payment,
        redirect_url=outcome.redirect_url,
        instructions=outcome.instructions,
        poll_url=outcome.poll_url,
        promo_warning=outcome.promo_warning,
    )


@router.post("/initiate", status_code=status.HTTP_201_CREATED)
async def initiate_payment(
    request: PaymentInitiateDTO,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return _initiated(await service.initiate(user, request))


@router.post("/mobile", status_code=status.HTTP_201_CREATED)
async def initiate_mobile_payment(
    request: PaymentInitiateDTO,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return _initiated(await service.initiate_mobile(user, request))


@router.post("/webhook/paynow")
async def paynow_webhook(
    request: Request,
    handler: PaynowWebhookHandler = Depends(get_webhook_handler),
):
    """Result URL шлюза. Публичный, всегда отвечает success."""
    body = await request.body()
    content_type = request.headers.get("content-type", "")
    fields: dict[str, Any] = {}
    try:
        if "application/json" in content_type:
            parsed = json.loads(body or b"{}")
            if isinstance(parsed, dict):
                fields = parsed
        else:
            fields = dict(parse_qsl(body.decode("utf-8"), keep_blank_values=True))
    except (ValueError, UnicodeDecodeError) as e:
        await log_warning(f"Не удалось разобрать тело webhook шлюза: {e}")
    return await handler.handle(fields)


@router.get("")
async def list_payments(
    flt: PaymentFilter = Depends(),
    pagination: PaginationParams = Depends(pagination_params),
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return paged(await service.list(user, flt, pagination))


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return ok(await service.get(user, payment_id))


@router.get("/{payment_id}/status")
async def get_payment_status(
    payment_id: str,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return ok(await service.status(user, payment_id))


@router.post("/{payment_id}/poll")
async def poll_payment(
    payment_id: str,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return ok(await service.poll(user, payment_id))


@router.post("/{payment_id}/apply-promo")
async def apply_promo(
    payment_id: str,
    request: PromoRequest,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    payment, warning = await service.apply_promo(user, payment_id, request.code)
    return ok(payment, promo_warning=warning)


@router.delete("/{payment_id}/promo")
async def remove_promo(
    payment_id: str,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return ok(await service.remove_promo(user, payment_id))


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: str,
    request: RefundRequest,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return ok(await service.refund(user, payment_id, request.amount, request.provider_ref))


@router.post("/{payment_id}/cancel")
async def cancel_payment(
    payment_id: str,
    user: User = Depends(get_current_user),
    service: PaymentService = Depends(get_payment_service),
):
    return ok(await service.cancel(user, payment_id))
