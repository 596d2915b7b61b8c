# src/infra/paynow.py
"""
Клиент платёжного шлюза Paynow.

Работа с HTTP интерфейсом Paynow напрямую: urlencoded формы, подписанные
SHA-512 от значений полей и ключа интеграции.
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol
from urllib.parse import parse_qsl, urlencode

import httpx

from src.common.constants import TypeMsg
from src.common.errors import GatewayError
from src.common.logger import log_info, log_warning

MOBILE_METHODS = frozenset({"ecocash", "onemoney", "innbucks", "telecash"})


@dataclass(frozen=True)
class PaynowConfig:
    integration_id: str
    integration_key: str
    result_url: str
    return_url: str
    base_url: str = "https://www.paynow.co.zw/interface"
    auth_email: str = ""
    request_timeout: float = 10.0
    initiate_timeout: float = 30.0


@dataclass(frozen=True)
class InitiateResult:
    """Ответ шлюза на успешное создание транзакции."""
    reference: str
    poll_url: str
    redirect_url: str | None = None
    instructions: str | None = None


@dataclass(frozen=True)
class PollResult:
    """Состояние транзакции по данным шлюза."""
    status: str
    reference: str | None = None
    paynow_reference: str | None = None
    amount: Decimal | None = None
    raw: dict[str, str] | None = None


class PaymentGateway(Protocol):
    """Операции шлюза, нужные сервису платежей."""

    async def initiate(
        self,
        reference: str,
        amount: Decimal,
        description: str,
        email: str | None = None,
    ) -> InitiateResult:
        ...

    async def initiate_mobile(
        self,
        reference: str,
        amount: Decimal,
        description: str,
        email: str,
        phone: str,
        method: str = "ecocash",
    ) -> InitiateResult:
        ...

    async def poll(self, poll_url: str) -> PollResult:
        ...

    def verify_hash(self, fields: dict[str, str]) -> bool:
        ...

    async def close(self) -> None:
        ...


def compute_hash(values: list[str], integration_key: str) -> str:
    """SHA-512 (hex в верхнем регистре) от склеенных значений и ключа интеграции."""
    digest = hashlib.sha512()
    digest.update(("".join(values) + integration_key).encode("utf-8"))
    return digest.hexdigest().upper()


def _format_amount(amount: Decimal) -> str:
    return f"{amount.quantize(Decimal('0.01'))}"


class PaynowClient:
    """Асинхронный клиент Paynow поверх httpx."""

    def __init__(self, cfg: PaynowConfig, http: httpx.AsyncClient | None = None) -> None:
        self.cfg = cfg
        self._http = http or httpx.AsyncClient(timeout=cfg.request_timeout)
        self._owns_http = http is None

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ------------------------------------------------------------------
    # ПОДПИСЬ
    # ------------------------------------------------------------------

    def _sign(self, fields: dict[str, str]) -> dict[str, str]:
        signed = dict(fields)
        signed["hash"] = compute_hash(list(fields.values()), self.cfg.integration_key)
        return signed

    def verify_hash(self, fields: dict[str, str]) -> bool:
        """Проверка hash входящего сообщения (ответ шлюза или result callback)."""
        received = None
        values: list[str] = []
        for key, value in fields.items():
            if key.lower() == "hash":
                received = value
                continue
            values.append(value)
        if not received:
            return False
        return compute_hash(values, self.cfg.integration_key) == received.upper()

    # ------------------------------------------------------------------
    # ТРАНСПОРТ
    # ------------------------------------------------------------------

    async def _post(self, url: str, fields: dict[str, str]) -> dict[str, str]:
        try:
            response = await self._http.post(
                url,
                content=urlencode(fields),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=self.cfg.request_timeout,
            )
        except httpx.TimeoutException as e:
            raise GatewayError("Payment gateway timed out", code="GATEWAY_TIMEOUT") from e
        except httpx.HTTPError as e:
            raise GatewayError("Payment gateway unreachable", code="GATEWAY_UNREACHABLE") from e

        if response.status_code >= 400:
            raise GatewayError(
                f"Payment gateway responded with HTTP {response.status_code}",
                details={"status_code": response.status_code},
            )

        parsed = dict(parse_qsl(response.text, keep_blank_values=True))
        if not parsed:
            raise GatewayError("Empty response from payment gateway")
        return parsed

    def _check_response(self, parsed: dict[str, str]) -> dict[str, str]:
        status = parsed.get("status", "")
        if status.lower() == "error":
            raise GatewayError(parsed.get("error") or "Payment gateway returned an error")
        if not self.verify_hash(parsed):
            raise GatewayError("Payment gateway response failed hash verification", code="GATEWAY_BAD_HASH")
        return parsed

    # ------------------------------------------------------------------
    # ОПЕРАЦИИ
    # ------------------------------------------------------------------

    def _base_fields(self, reference: str, amount: Decimal, description: str, email: str | None) -> dict[str, str]:
        return {
            "id": self.cfg.integration_id,
            "reference": reference,
            "amount": _format_amount(amount),
            "additionalinfo": description,
            "returnurl": self.cfg.return_url,
            "resulturl": self.cfg.result_url,
            "authemail": email or self.cfg.auth_email,
        }

    async def initiate(
        self,
        reference: str,
        amount: Decimal,
        description: str,
        email: str | None = None,
    ) -> InitiateResult:
        """Транзакция с редиректом на страницу оплаты."""
        fields = self._base_fields(reference, amount, description, email)
        fields["status"] = "Message"

        await log_info(f"Paynow: создание {reference} на сумму {_format_amount(amount)}", type_msg=TypeMsg.DEBUG)
        parsed = await self._with_deadline(self._post(f"{self.cfg.base_url}/initiatetransaction", self._sign(fields)))
        self._check_response(parsed)

        return InitiateResult(
            reference=reference,
            poll_url=parsed.get("pollurl", ""),
            redirect_url=parsed.get("browserurl"),
        )

    async def initiate_mobile(
        self,
        reference: str,
        amount: Decimal,
        description: str,
        email: str,
        phone: str,
        method: str = "ecocash",
    ) -> InitiateResult:
        """Транзакция мобильной оплаты (express checkout)."""
        if method.lower() not in MOBILE_METHODS:
            raise GatewayError(f"Unsupported mobile method: {method}", code="UNSUPPORTED_MOBILE_METHOD")

        fields = self._base_fields(reference, amount, description, email)
        fields["phone"] = phone
        fields["method"] = method.lower()
        fields["status"] = "Message"

        await log_info(f"Paynow: мобильная оплата {reference} через {method}", type_msg=TypeMsg.DEBUG)
        parsed = await self._with_deadline(self._post(f"{self.cfg.base_url}/remotetransaction", self._sign(fields)))
        self._check_response(parsed)

        return InitiateResult(
            reference=reference,
            poll_url=parsed.get("pollurl", ""),
            instructions=parsed.get("instructions"),
        )

    async def poll(self, poll_url: str) -> PollResult:
        """Текущий статус транзакции по poll URL."""
        parsed = await self._post(poll_url, {})
        if not self.verify_hash(parsed):
            await log_warning(f"Paynow: неверный hash в ответе опроса {poll_url}")
            raise GatewayError("Poll response failed hash verification", code="GATEWAY_BAD_HASH")

        amount = parsed.get("amount")
        return PollResult(
            status=parsed.get("status", ""),
            reference=parsed.get("reference"),
            paynow_reference=parsed.get("paynowreference"),
            amount=Decimal(amount) if amount else None,
            raw=parsed,
        )

    async def _with_deadline(self, coro: Any) -> Any:
        try:
            return await asyncio.wait_for(coro, timeout=self.cfg.initiate_timeout)
        except asyncio.TimeoutError as e:
            raise GatewayError("Payment initiation timed out", code="GATEWAY_TIMEOUT") from e


def build_paynow_client(settings: Any) -> PaynowClient:
    """Клиент по секции настроек paynow."""
    section = settings.paynow
    return PaynowClient(
        PaynowConfig(
            integration_id=section.PAYNOW_ID,
            integration_key=section.PAYNOW_KEY,
            result_url=section.PAYNOW_RESULT_URL,
            return_url=section.PAYNOW_RETURN_URL,
            base_url=section.PAYNOW_BASE_URL,
            auth_email=section.PAYNOW_AUTH_EMAIL,
            request_timeout=section.REQUEST_TIMEOUT,
            initiate_timeout=section.INITIATE_TIMEOUT,
        )
    )
