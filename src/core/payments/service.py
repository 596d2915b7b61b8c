# src/core/payments/service.py
"""
Оркестратор платежей.

Создаёт попытку оплаты для одной брони, общается со шлюзом,
сводит статусы, применяет промокоды и записывает возвраты.
Статус платежа движется только вперёд: терминальный статус не покидается.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from src.common.clock import Clock, IdGenerator
from src.common.constants import (
    PaymentMethod,
    PaymentStatus,
    TypeMsg,
)
from src.common.errors import (
    ConflictError,
    ForbiddenError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from src.common.logger import log_info, log_warning
from src.core.bookings.driver_bookings import DriverBookingService
from src.core.bookings.reservations import ReservationService
from src.core.payments.models import (
    InitiateOutcome,
    Payment,
    PaymentFilter,
    PaymentInitiateDTO,
    PromoSnapshot,
    Refund,
)
from src.core.payments.status import map_gateway_status, next_status
from src.core.promos.evaluator import evaluate_promo, payable_amount
from src.core.promos.models import PromoEvaluation, normalize_code
from src.core.repositories.interfaces import Repositories
from src.core.users.models import User, ensure_staff
from src.infra.event_bus import EventBus, EventTypes, emit
from src.infra.paynow import InitiateResult, PaymentGateway
from src.shared.models.common import Page, PaginationParams, money

STATUS_UPDATE_ATTEMPTS = 3

# Статусы, в которых разрешено менять промокод
PROMO_EDITABLE_STATUSES = frozenset({PaymentStatus.PENDING.value, PaymentStatus.UNPAID.value})


class PaymentService:
    """Сервис платежей."""

    def __init__(
        self,
        repos: Repositories,
        gateway: PaymentGateway,
        reservations: ReservationService,
        driver_bookings: DriverBookingService,
        clock: Clock,
        ids: IdGenerator,
        event_bus: EventBus | None = None,
    ) -> None:
        self._repos = repos
        self._gateway = gateway
        self._reservations = reservations
        self._driver_bookings = driver_bookings
        self._clock = clock
        self._ids = ids
        self._event_bus = event_bus

    # =========================================================================
    # СОЗДАНИЕ
    # =========================================================================

    async def initiate(self, actor: User, dto: PaymentInitiateDTO) -> InitiateOutcome:
        """
        Создание платежа.

        Метод wallet уходит в мобильную оплату, остальные в оплату с редиректом.

        Raises:
            ValidationError: Цель не задана или задано обе; нет телефона для wallet
            NotFoundError: Цель не найдена
            ConflictError: PAYMENT_ALREADY_ACTIVE
            GatewayError: Шлюз недоступен (платёж не создаётся)
        """
        if dto.method == PaymentMethod.WALLET:
            return await self.initiate_mobile(actor, dto)
        return await self._initiate(actor, dto, mobile=False)

    async def initiate_mobile(self, actor: User, dto: PaymentInitiateDTO) -> InitiateOutcome:
        """Мобильная оплата (ecocash и т.п.), телефон обязателен."""
        if not dto.phone:
            raise ValidationError("Phone is required for mobile payment", code="PHONE_REQUIRED")
        dto = dto.model_copy(update={"method": PaymentMethod.WALLET})
        return await self._initiate(actor, dto, mobile=True)

    async def _initiate(self, actor: User, dto: PaymentInitiateDTO, mobile: bool) -> InitiateOutcome:
        reservation_id, driver_booking_id, description = await self._resolve_target(actor, dto)

        active = await self._repos.payments.find_active_for_target(reservation_id, driver_booking_id)
        if active is not None and not dto.cancel_previous:
            raise ConflictError(
                "An active payment already exists for this booking",
                code="PAYMENT_ALREADY_ACTIVE",
                details={"payment_id": active.id},
            )

        now = self._clock.now()
        currency = str(getattr(dto.currency, "value", dto.currency))
        amount = money(dto.amount)
        evaluation = await self._evaluate(dto.promo_code, amount, currency)
        final_amount = payable_amount(amount, evaluation.discount)
        promo_warning = self._promo_warning(dto.promo_code, evaluation)

        payment_id = self._ids.new_id()
        reference = f"PAY-{payment_id[:12].upper()}"
        email = dto.email or actor.email

        if mobile:
            if not email:
                raise ValidationError("Email is required for mobile payment", code="EMAIL_REQUIRED")
            result: InitiateResult = await self._gateway.initiate_mobile(
                reference, final_amount, description, email, dto.phone or "", dto.mobile_method,
            )
        else:
            result = await self._gateway.initiate(reference, final_amount, description, email)

        # Прежний платёж отменяется только после ответа шлюза по новому
        if active is not None:
            try:
                await self._cancel_active(active, actor.id)
            except ConflictError:
                await log_warning(
                    f"Транзакция шлюза {reference} создана, но прежний платёж {active.id} изменился параллельно"
                )
                raise

        payment = Payment(
            id=payment_id,
            user_id=actor.id,
            reservation_id=reservation_id,
            driver_booking_id=driver_booking_id,
            method=dto.method,
            amount=final_amount,
            currency=currency,
            status=PaymentStatus.PENDING,
            merchant_reference=reference,
            provider_ref=result.reference,
            poll_url=result.poll_url or None,
            promo=self._snapshot(evaluation),
            created_at=now,
            updated_at=now,
        )

        try:
            payment = await self._repos.payments.insert_exclusive(payment)
        except ConflictError:
            await log_warning(
                f"Транзакция шлюза {reference} создана, но платёж не сохранён: у брони уже есть активный платёж"
            )
            raise

        await log_info(
            f"Платёж {payment.id} создан ({payment.method}, {payment.amount} {payment.currency}) "
            f"для {payment.target_kind} {payment.target_id}",
            type_msg=TypeMsg.INFO,
        )
        await emit(self._event_bus, EventTypes.PAYMENT_INITIATED, self._event_payload(payment))

        return InitiateOutcome(
            payment=payment,
            redirect_url=result.redirect_url,
            instructions=result.instructions,
            poll_url=payment.poll_url,
            promo_warning=promo_warning,
        )

    async def _resolve_target(
        self,
        actor: User,
        dto: PaymentInitiateDTO,
    ) -> tuple[Optional[str], Optional[str], str]:
        """Проверяет цель платежа и права на неё."""
        if bool(dto.reservation_id) == bool(dto.driver_booking_id):
            raise ValidationError(
                "Provide exactly one of reservation_id or driver_booking_id",
                code="INVALID_PAYMENT_TARGET",
            )

        if dto.reservation_id:
            reservation = await self._repos.reservations.get(dto.reservation_id)
            if reservation is None:
                raise NotFoundError("Reservation not found", code="RESERVATION_NOT_FOUND")
            if reservation.user_id != actor.id and not actor.is_staff:
                raise ForbiddenError("Not your reservation", code="PAYMENT_FORBIDDEN")
            return reservation.id, None, dto.description or f"Reservation {reservation.code}"

        booking = await self._repos.driver_bookings.get(dto.driver_booking_id or "")
        if booking is None:
            raise NotFoundError("Driver booking not found", code="DRIVER_BOOKING_NOT_FOUND")
        if booking.customer_id != actor.id and not actor.is_staff:
            raise ForbiddenError("Not your driver booking", code="PAYMENT_FORBIDDEN")
        return None, booking.id, dto.description or f"Driver booking {booking.code}"

    async def _cancel_active(self, payment: Payment, actor_id: str) -> None:
        updated = await self._repos.payments.compare_and_set(
            payment.id,
            {"status": payment.status},
            {"status": PaymentStatus.CANCELLED.value},
        )
        if updated is None:
            raise ConflictError(
                "Previous payment changed concurrently, reload and retry",
                code="PAYMENT_CONCURRENT_UPDATE",
            )
        await self._after_status_change(payment.status, updated, actor_id)

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def _load(self, payment_id: str) -> Payment:
        payment = await self._repos.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND")
        return payment

    async def get(self, actor: User, payment_id: str) -> Payment:
        payment = await self._load(payment_id)
        if payment.user_id != actor.id and not actor.is_staff:
            raise ForbiddenError("Not your payment", code="PAYMENT_FORBIDDEN")
        return payment

    async def list(self, actor: User, flt: PaymentFilter, pagination: PaginationParams) -> Page[Payment]:
        """Свои платежи; сотрудники фильтруют по любому пользователю."""
        if not actor.is_staff:
            flt = flt.model_copy(update={"user_id": actor.id})
        return Page[Payment].slice(await self._repos.payments.list(flt), pagination)

    async def status(self, actor: User, payment_id: str) -> dict[str, Any]:
        """Локальное состояние без обращения к шлюзу."""
        payment = await self.get(actor, payment_id)
        return {
            "payment_id": payment.id,
            "status": payment.status,
            "provider_status": payment.provider_status,
            "amount": payment.amount,
            "currency": payment.currency,
            "captured_at": payment.captured_at,
            "refunded_total": payment.refunded_total,
        }

    # =========================================================================
    # СВЕРКА СТАТУСА
    # =========================================================================

    async def poll(self, actor: User, payment_id: str) -> Payment:
        """
        Запрос статуса у шлюза и применение результата.

        При недоступности шлюза статус платежа не меняется.
        """
        payment = await self.get(actor, payment_id)
        if not payment.poll_url:
            raise ValidationError("No poll URL available for this payment", code="POLL_URL_MISSING")
        result = await self._gateway.poll(payment.poll_url)
        return await self.apply_gateway_status(payment, result.status)

    async def apply_gateway_status(self, payment: Payment, status_text: Optional[str]) -> Payment:
        """
        Применяет текстовый статус шлюза к платежу.

        Повторное применение того же статуса ничего не меняет.
        """
        incoming = map_gateway_status(status_text)

        for _ in range(STATUS_UPDATE_ATTEMPTS):
            target = next_status(payment.status, incoming)
            if target is None:
                if payment.is_terminal and incoming.value != payment.status:
                    await log_warning(
                        f"Платёж {payment.id} в терминальном статусе {payment.status}, "
                        f"статус шлюза '{status_text}' проигнорирован"
                    )
                return payment

            changes: dict[str, Any] = {"status": target.value, "provider_status": status_text}
            if target == PaymentStatus.PAID:
                changes["captured_at"] = self._clock.now()

            updated = await self._repos.payments.compare_and_set(
                payment.id,
                {"status": payment.status},
                changes,
            )
            if updated is not None:
                await self._after_status_change(payment.status, updated, "gateway")
                return updated

            reloaded = await self._repos.payments.get(payment.id)
            if reloaded is None:
                raise NotFoundError("Payment not found", code="PAYMENT_NOT_FOUND")
            payment = reloaded

        raise ConflictError("Payment status changed concurrently", code="PAYMENT_CONCURRENT_UPDATE")

    async def reconcile(self, limit: int = 50) -> int:
        """
        Опрос шлюза по нетерминальным платежам с poll_url.

        Returns:
            Количество платежей, чей статус изменился
        """
        changed = 0
        for payment in await self._repos.payments.list_pollable(limit):
            try:
                result = await self._gateway.poll(payment.poll_url or "")
                updated = await self.apply_gateway_status(payment, result.status)
            except (GatewayError, ConflictError) as e:
                await log_warning(f"Сверка платежа {payment.id} не удалась: {e.message}")
                continue
            if updated.status != payment.status:
                changed += 1
        return changed

    async def _after_status_change(self, old_status: str, payment: Payment, actor_id: str) -> None:
        await log_info(
            f"Платёж {payment.id}: {old_status} → {payment.status} ({actor_id})",
            type_msg=TypeMsg.INFO,
        )
        await emit(self._event_bus, EventTypes.PAYMENT_STATUS_CHANGED, {
            **self._event_payload(payment),
            "old_status": old_status,
        })
        if payment.status == PaymentStatus.PAID:
            await self._on_paid(payment)

    async def _on_paid(self, payment: Payment) -> None:
        """Учёт промокода и уведомление координатора бронирований."""
        if payment.promo is not None and not payment.promo_usage_counted:
            if not await self._repos.promos.increment_usage(payment.promo.promo_code_id):
                await log_warning(
                    f"PROMO_USAGE_EXCEEDED: промокод {payment.promo.code} исчерпан, "
                    f"платёж {payment.id} всё равно принят"
                )
            await self._repos.payments.update(payment.id, {"promo_usage_counted": True})

        await emit(self._event_bus, EventTypes.PAYMENT_PAID, self._event_payload(payment))

        if payment.reservation_id:
            await self._reservations.on_payment_paid(payment)
        else:
            await self._driver_bookings.on_payment_paid(payment)

    # =========================================================================
    # ПРОМОКОДЫ
    # =========================================================================

    async def apply_promo(self, actor: User, payment_id: str, code: str) -> tuple[Payment, Optional[str]]:
        """
        Применяет промокод к ожидающему платежу.

        База пересчитывается как amount + прежняя скидка. Невалидный промокод
        снимает прежний и возвращает причину в promo_warning.
        """
        payment = await self.get(actor, payment_id)
        self._ensure_promo_editable(payment)

        base = money(payment.amount + payment.discount)
        evaluation = await self._evaluate(code, base, payment.currency)
        warning = self._promo_warning(code, evaluation)

        updated = await self._write_promo(
            payment,
            payable_amount(base, evaluation.discount),
            self._snapshot(evaluation),
        )
        await log_info(
            f"Промокод {normalize_code(code)} к платежу {payment.id}: "
            f"{'применён' if warning is None else warning}, сумма {updated.amount}",
            type_msg=TypeMsg.INFO,
        )
        return updated, warning

    async def remove_promo(self, actor: User, payment_id: str) -> Payment:
        payment = await self.get(actor, payment_id)
        self._ensure_promo_editable(payment)
        return await self._write_promo(payment, money(payment.amount + payment.discount), None)

    async def _write_promo(self, payment: Payment, amount: Decimal, promo: Optional[PromoSnapshot]) -> Payment:
        updated = await self._repos.payments.compare_and_set(
            payment.id,
            {"version": payment.version},
            {"amount": amount, "promo": promo.model_dump() if promo else None},
        )
        if updated is None:
            raise ConflictError("Payment changed concurrently, reload and retry", code="PAYMENT_CONCURRENT_UPDATE")
        return updated

    @staticmethod
    def _ensure_promo_editable(payment: Payment) -> None:
        if payment.status not in PROMO_EDITABLE_STATUSES:
            raise InvalidStateError(
                f"Promo can only be changed on pending payments (status {payment.status})",
                code="PAYMENT_NOT_PENDING",
            )

    async def _evaluate(self, code: Optional[str], amount: Decimal, currency: str) -> PromoEvaluation:
        if not code:
            return PromoEvaluation(discount=Decimal("0.00"))
        promo = await self._repos.promos.get_by_code(normalize_code(code))
        return evaluate_promo(promo, amount, currency, self._clock.now())

    @staticmethod
    def _promo_warning(code: Optional[str], evaluation: PromoEvaluation) -> Optional[str]:
        if not code or evaluation.reason is None:
            return None
        return str(getattr(evaluation.reason, "value", evaluation.reason))

    @staticmethod
    def _snapshot(evaluation: PromoEvaluation) -> Optional[PromoSnapshot]:
        if not evaluation.applied or evaluation.promo is None:
            return None
        return PromoSnapshot(
            promo_code_id=evaluation.promo.id,
            code=evaluation.promo.code,
            discount=evaluation.discount,
        )

    # =========================================================================
    # ОТМЕНА И ВОЗВРАТ
    # =========================================================================

    async def cancel(self, actor: User, payment_id: str) -> Payment:
        """
        Локальная отмена. У шлюза транзакция не отменяется.
        """
        payment = await self.get(actor, payment_id)
        if payment.is_terminal:
            raise InvalidStateError(
                f"Payment cannot be cancelled in status {payment.status}",
                code="PAYMENT_NOT_CANCELLABLE",
            )
        updated = await self._repos.payments.compare_and_set(
            payment.id,
            {"status": payment.status},
            {"status": PaymentStatus.CANCELLED.value},
        )
        if updated is None:
            raise ConflictError("Payment status changed concurrently", code="PAYMENT_CONCURRENT_UPDATE")
        await self._after_status_change(payment.status, updated, actor.id)
        return updated

    async def refund(
        self,
        actor: User,
        payment_id: str,
        amount: Decimal,
        provider_ref: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        Записывает возврат (только сотрудники).

        Сумма возвратов не превышает списанную сумму; при полном возврате
        платёж переходит в refunded.
        """
        ensure_staff(actor, code="PAYMENT_FORBIDDEN")
        payment = await self._load(payment_id)
        if payment.status != PaymentStatus.PAID:
            raise InvalidStateError("Only paid payments can be refunded", code="PAYMENT_NOT_REFUNDABLE")

        amount = money(amount)
        if amount <= 0:
            raise ValidationError("Refund amount must be greater than zero", code="INVALID_REFUND_AMOUNT")
        if amount > payment.refundable:
            raise ValidationError(
                "Refund amount exceeds the refundable balance",
                code="REFUND_EXCEEDS_CAPTURED",
                details={"refundable": str(payment.refundable)},
            )

        refunds = [r.model_dump() for r in payment.refunds]
        refunds.append(Refund(amount=amount, provider_ref=provider_ref, at=self._clock.now()).model_dump())
        total_refunded = money(payment.refunded_total + amount)

        changes: dict[str, Any] = {"refunds": refunds}
        if total_refunded >= payment.amount:
            changes["status"] = PaymentStatus.REFUNDED.value

        updated = await self._repos.payments.compare_and_set(
            payment.id,
            {"version": payment.version},
            changes,
        )
        if updated is None:
            raise ConflictError("Payment changed concurrently, reload and retry", code="PAYMENT_CONCURRENT_UPDATE")

        await log_info(
            f"Возврат {amount} {payment.currency} по платежу {payment.id} ({actor.id}), всего {total_refunded}",
            type_msg=TypeMsg.INFO,
        )
        await emit(self._event_bus, EventTypes.PAYMENT_REFUNDED, {
            **self._event_payload(updated),
            "refunded": str(amount),
            "total_refunded": str(total_refunded),
        })

        await self._reservations.on_payment_refunded(updated, amount)
        await self._driver_bookings.on_payment_refunded(updated)

        return {"payment": updated, "refunded": amount, "total_refunded": total_refunded}

    @staticmethod
    def _event_payload(payment: Payment) -> dict[str, Any]:
        return {
            "payment_id": payment.id,
            "user_id": payment.user_id,
            "reservation_id": payment.reservation_id,
            "driver_booking_id": payment.driver_booking_id,
            "status": payment.status,
            "amount": str(payment.amount),
            "currency": payment.currency,
        }
