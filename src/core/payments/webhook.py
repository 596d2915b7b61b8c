# src/core/payments/webhook.py
"""
Приём уведомлений шлюза о смене статуса (result URL).

Шлюзу всегда отвечаем успехом, иначе он повторяет доставку.
Расхождения только логируются, дальнейшую сверку делает опрос.
"""

from __future__ import annotations

from typing import Any, Optional

from src.common.errors import DomainError
from src.common.logger import log_error, log_warning
from src.core.payments.service import PaymentService
from src.core.payments.status import map_gateway_status
from src.core.repositories.interfaces import Repositories
from src.infra.paynow import PaymentGateway

REFERENCE_FIELDS = ("reference", "merchant_reference", "provider_ref", "paynowreference")


def _lower_keys(fields: dict[str, Any]) -> dict[str, str]:
    return {str(k).lower(): "" if v is None else str(v) for k, v in fields.items()}


class PaynowWebhookHandler:
    """Обработчик result URL."""

    def __init__(self, repos: Repositories, payments: PaymentService, gateway: PaymentGateway) -> None:
        self._repos = repos
        self._payments = payments
        self._gateway = gateway

    async def handle(self, fields: dict[str, Any]) -> dict[str, Any]:
        """
        Применяет уведомление к платежу.

        Args:
            fields: Поля формы или JSON тела

        Returns:
            {success: True, updated, status?, message?}
        """
        try:
            return await self._handle(fields)
        except DomainError as e:
            await log_warning(f"Webhook шлюза не обработан: {e.code} {e.message}")
            return {"success": True, "updated": False, "message": e.message}
        except Exception as e:
            await log_error(f"Ошибка обработки webhook шлюза: {e}", exc_info=True)
            return {"success": True, "updated": False, "message": "Webhook accepted"}

    async def _handle(self, fields: dict[str, Any]) -> dict[str, Any]:
        normalized = _lower_keys(fields)

        if "hash" in normalized and not self._gateway.verify_hash(dict(fields)):
            await log_warning(f"Webhook шлюза с неверной подписью: {normalized.get('reference')}")
            return {"success": True, "updated": False, "message": "Hash mismatch"}

        reference = self._reference(normalized)
        if not reference:
            await log_warning("Webhook шлюза без референса платежа")
            return {"success": True, "updated": False, "message": "No reference"}

        payment = await self._repos.payments.get_by_reference(reference)
        if payment is None:
            await log_warning(f"Webhook шлюза для неизвестного платежа {reference}")
            return {"success": True, "updated": False, "message": "Payment not found"}

        status_text = normalized.get("status")
        if payment.poll_url:
            try:
                status_text = (await self._gateway.poll(payment.poll_url)).status
            except DomainError as e:
                await log_warning(
                    f"Опрос шлюза для платежа {payment.id} не удался ({e.message}), используем статус из webhook"
                )

        if not status_text:
            return {"success": True, "updated": False, "message": "No actionable status in webhook"}

        updated = await self._payments.apply_gateway_status(payment, status_text)
        if updated.status != payment.status:
            return {"success": True, "updated": True, "status": updated.status}

        if updated.status != map_gateway_status(status_text).value:
            await log_warning(
                f"Webhook для платежа {payment.id}: статус шлюза '{status_text}' не совпадает с {updated.status}"
            )
        return {"success": True, "updated": False, "status": updated.status}

    @staticmethod
    def _reference(fields: dict[str, str]) -> Optional[str]:
        for key in REFERENCE_FIELDS:
            if fields.get(key):
                return fields[key]
        return None

