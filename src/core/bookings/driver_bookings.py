# src/core/bookings/driver_bookings.py
"""
Сервис заказов водителей.

Жизненный цикл:
requested → accepted_by_driver → confirmed → completed,
с ветками declined_by_driver, cancelled_by_customer, cancelled_by_driver и expired.
Каждый переход выполняется compare-and-set по ожидаемому статусу.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from src.common.clock import Clock, IdGenerator, ensure_utc
from src.common.constants import (
    DriverBookingStatus,
    DriverProfileStatus,
    PaymentStatus,
    TypeMsg,
    UserRole,
)
from src.common.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from src.common.logger import log_info, log_warning
from src.core.bookings.codes import DRIVER_BOOKING_CODE_PREFIX, insert_with_generated_code
from src.core.bookings.models import DriverBooking, DriverBookingCreateDTO, DriverBookingFilter
from src.core.bookings.state_machine import DriverBookingStateMachine
from src.core.payments.models import Payment
from src.core.pricing.service import PricingSnapshotBuilder
from src.core.repositories.interfaces import Repositories
from src.core.users.models import User, ensure_role
from src.infra.event_bus import EventBus, EventTypes, emit
from src.shared.models.common import Page, PaginationParams

SYSTEM_ACTOR = "system"

# Событие шины для каждого целевого статуса
_STATUS_EVENTS: dict[str, str] = {
    DriverBookingStatus.ACCEPTED_BY_DRIVER.value: EventTypes.DRIVER_BOOKING_ACCEPTED,
    DriverBookingStatus.DECLINED_BY_DRIVER.value: EventTypes.DRIVER_BOOKING_DECLINED,
    DriverBookingStatus.CONFIRMED.value: EventTypes.DRIVER_BOOKING_CONFIRMED,
    DriverBookingStatus.CANCELLED_BY_CUSTOMER.value: EventTypes.DRIVER_BOOKING_CANCELLED,
    DriverBookingStatus.CANCELLED_BY_DRIVER.value: EventTypes.DRIVER_BOOKING_CANCELLED,
    DriverBookingStatus.EXPIRED.value: EventTypes.DRIVER_BOOKING_EXPIRED,
    DriverBookingStatus.COMPLETED.value: EventTypes.DRIVER_BOOKING_COMPLETED,
}


class DriverBookingService:
    """Координатор заказов водителей."""

    def __init__(
        self,
        repos: Repositories,
        pricing: PricingSnapshotBuilder,
        clock: Clock,
        ids: IdGenerator,
        event_bus: EventBus | None = None,
        payment_window_minutes: int = 30,
        request_ttl_minutes: int = 1440,
        code_attempts: int = 5,
    ) -> None:
        """
        Args:
            repos: Репозитории
            pricing: Построитель снимков цены
            clock: Часы
            ids: Генератор кодов
            event_bus: Шина событий (None - события не публикуются)
            payment_window_minutes: Окно оплаты после принятия водителем
            request_ttl_minutes: Сколько заказ может ждать ответа водителя
            code_attempts: Попыток генерации уникального кода
        """
        self._repos = repos
        self._pricing = pricing
        self._clock = clock
        self._ids = ids
        self._event_bus = event_bus
        self._payment_window = timedelta(minutes=payment_window_minutes)
        self._request_ttl = timedelta(minutes=request_ttl_minutes)
        self._code_attempts = code_attempts

    # =========================================================================
    # СОЗДАНИЕ
    # =========================================================================

    async def create(self, actor: User, dto: DriverBookingCreateDTO) -> DriverBooking:
        """
        Создаёт заказ водителя в статусе requested.

        Raises:
            NotFoundError: DRIVER_PROFILE_NOT_FOUND
            ValidationError: DRIVER_NOT_APPROVED, DRIVER_NOT_AVAILABLE, INVALID_START_AT,
                INVALID_HOURS_REQUESTED, INVALID_END_AT
            ConflictError: DRIVER_TIME_CONFLICT
        """
        ensure_role(
            actor, UserRole.CUSTOMER, UserRole.AGENT, UserRole.MANAGER, UserRole.ADMIN,
            code="DRIVER_BOOKING_FORBIDDEN",
        )
        customer_id = dto.customer_id if dto.customer_id and actor.is_staff else actor.id

        profile = await self._repos.driver_profiles.get(dto.driver_profile_id)
        if profile is None:
            raise NotFoundError("Driver profile not found", code="DRIVER_PROFILE_NOT_FOUND")
        if profile.status != DriverProfileStatus.APPROVED:
            raise ValidationError("Driver profile is not approved", code="DRIVER_NOT_APPROVED")
        if not profile.is_available:
            raise ValidationError("Driver is currently not available", code="DRIVER_NOT_AVAILABLE")
        if profile.user_id == customer_id:
            raise ValidationError("Drivers cannot book themselves", code="DRIVER_SELF_BOOKING")

        now = self._clock.now()
        start_at = ensure_utc(dto.start_at)
        if start_at < now:
            raise ValidationError("start_at must not be in the past", code="INVALID_START_AT")

        end_at = ensure_utc(dto.end_at) if dto.end_at else None
        if end_at is not None and end_at <= start_at:
            raise ValidationError("end_at must be after start_at", code="INVALID_END_AT")

        hours = dto.hours_requested
        if hours is None and end_at is not None:
            hours = Decimal((end_at - start_at).total_seconds()) / Decimal(3600)
        if hours is None or hours <= 0:
            raise ValidationError("hours_requested must be greater than 0", code="INVALID_HOURS_REQUESTED")

        pricing = self._pricing.build_driver_pricing(profile.hourly_rate, hours, profile.currency)

        def build(code: str) -> DriverBooking:
            return DriverBooking(
                code=code,
                customer_id=customer_id,
                created_by=actor.id,
                created_channel=dto.created_channel,
                driver_profile_id=profile.id,
                driver_user_id=profile.user_id,
                start_at=start_at,
                end_at=end_at,
                pickup_location=dto.pickup_location,
                dropoff_location=dto.dropoff_location,
                notes=dto.notes,
                pricing=pricing,
                requested_at=now,
                last_status_update_by=actor.id,
                created_at=now,
                updated_at=now,
            )

        booking = await insert_with_generated_code(
            lambda code: self._repos.driver_bookings.insert_exclusive(build(code)),
            self._ids,
            DRIVER_BOOKING_CODE_PREFIX,
            now,
            self._code_attempts,
        )

        await log_info(
            f"Заказ водителя {booking.code} создан: клиент {customer_id}, водитель {booking.driver_user_id}, "
            f"{booking.start_at.isoformat()} - {booking.effective_end_at.isoformat()}",
            type_msg=TypeMsg.INFO,
        )
        await emit(self._event_bus, EventTypes.DRIVER_BOOKING_REQUESTED, self._event_payload(booking))
        return booking

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def _load(self, booking_id: str) -> DriverBooking:
        booking = await self._repos.driver_bookings.get(booking_id)
        if booking is None:
            raise NotFoundError("Driver booking not found", code="DRIVER_BOOKING_NOT_FOUND")
        return await self._expire_if_due(booking)

    async def _load_for_customer(self, actor: User, booking_id: str) -> DriverBooking:
        booking = await self._load(booking_id)
        if booking.customer_id != actor.id:
            raise NotFoundError("Driver booking not found", code="DRIVER_BOOKING_NOT_FOUND")
        return booking

    async def _load_for_driver(self, actor: User, booking_id: str) -> DriverBooking:
        booking = await self._load(booking_id)
        if booking.driver_user_id != actor.id:
            raise NotFoundError("Driver booking not found", code="DRIVER_BOOKING_NOT_FOUND")
        return booking

    async def get_for_customer(self, actor: User, booking_id: str) -> DriverBooking:
        return await self._load_for_customer(actor, booking_id)

    async def get_for_driver(self, actor: User, booking_id: str) -> DriverBooking:
        ensure_role(actor, UserRole.DRIVER, code="DRIVER_ONLY")
        return await self._load_for_driver(actor, booking_id)

    async def get_admin(self, actor: User, booking_id: str) -> DriverBooking:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN)
        return await self._load(booking_id)

    async def list_for_customer(
        self,
        actor: User,
        flt: DriverBookingFilter,
        pagination: PaginationParams,
    ) -> Page[DriverBooking]:
        flt = flt.model_copy(update={"customer_id": actor.id, "driver_user_id": None})
        return Page[DriverBooking].slice(await self._repos.driver_bookings.list(flt), pagination)

    async def list_for_driver(
        self,
        actor: User,
        flt: DriverBookingFilter,
        pagination: PaginationParams,
    ) -> Page[DriverBooking]:
        ensure_role(actor, UserRole.DRIVER, code="DRIVER_ONLY")
        flt = flt.model_copy(update={"driver_user_id": actor.id, "customer_id": None})
        return Page[DriverBooking].slice(await self._repos.driver_bookings.list(flt), pagination)

    async def list_admin(
        self,
        actor: User,
        flt: DriverBookingFilter,
        pagination: PaginationParams,
    ) -> Page[DriverBooking]:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN)
        return Page[DriverBooking].slice(await self._repos.driver_bookings.list(flt), pagination)

    # =========================================================================
    # ПЕРЕХОДЫ
    # =========================================================================

    async def respond(self, actor: User, booking_id: str, action: str) -> DriverBooking:
        """
        Ответ водителя: accept или decline.

        При принятии пересечения проверяются повторно в той же
        атомарной операции, что и смена статуса.
        """
        ensure_role(actor, UserRole.DRIVER, code="DRIVER_ONLY")
        action = (action or "").strip().lower()
        if action not in ("accept", "decline"):
            raise ValidationError("Invalid action. Must be 'accept' or 'decline'", code="INVALID_DRIVER_ACTION")

        booking = await self._load_for_driver(actor, booking_id)
        now = self._clock.now()

        if action == "accept":
            return await self._transition(
                booking,
                DriverBookingStatus.ACCEPTED_BY_DRIVER,
                actor.id,
                {
                    "driver_responded_at": now,
                    "payment_deadline_at": now + self._payment_window,
                },
                exclusive=True,
            )
        return await self._transition(
            booking,
            DriverBookingStatus.DECLINED_BY_DRIVER,
            actor.id,
            {"driver_responded_at": now},
        )

    async def confirm_payment(self, actor: User, booking_id: str, payment_id: str) -> DriverBooking:
        """
        Подтверждение оплаты клиентом.

        Платёж должен существовать, быть привязан к этому заказу и иметь статус paid.
        """
        booking = await self._load_for_customer(actor, booking_id)
        if not DriverBookingStateMachine.is_awaiting_payment(booking.status):
            raise InvalidStateError(
                f"Booking in status {booking.status} is not awaiting payment",
                code="INVALID_BOOKING_STATUS_FOR_PAYMENT",
            )

        payment = await self._repos.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("Payment record not found", code="PAYMENT_NOT_FOUND")
        if payment.driver_booking_id != booking.id:
            raise ValidationError("Payment is not bound to this booking", code="PAYMENT_TARGET_MISMATCH")
        if payment.status != PaymentStatus.PAID:
            raise InvalidStateError("Payment is not paid", code="PAYMENT_NOT_PAID")

        return await self._confirm(booking, payment, actor.id)

    async def cancel_by_customer(
        self,
        actor: User,
        booking_id: str,
        reason: Optional[str] = None,
    ) -> DriverBooking:
        booking = await self._load_for_customer(actor, booking_id)
        return await self._transition(
            booking,
            DriverBookingStatus.CANCELLED_BY_CUSTOMER,
            actor.id,
            {"cancelled_at": self._clock.now(), "cancel_reason": reason},
            error_code="INVALID_CANCEL_STATUS",
        )

    async def cancel_by_driver(
        self,
        actor: User,
        booking_id: str,
        reason: Optional[str] = None,
    ) -> DriverBooking:
        ensure_role(actor, UserRole.DRIVER, code="DRIVER_ONLY")
        booking = await self._load_for_driver(actor, booking_id)
        return await self._transition(
            booking,
            DriverBookingStatus.CANCELLED_BY_DRIVER,
            actor.id,
            {"cancelled_at": self._clock.now(), "cancel_reason": reason},
            error_code="INVALID_CANCEL_STATUS",
        )

    async def complete(self, actor: User, booking_id: str) -> DriverBooking:
        """Завершение водителем заказа."""
        ensure_role(actor, UserRole.DRIVER, code="DRIVER_ONLY")
        booking = await self._load_for_driver(actor, booking_id)
        return await self._complete(booking, actor.id)

    async def complete_admin(self, actor: User, booking_id: str) -> DriverBooking:
        """Завершение сотрудником."""
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN)
        booking = await self._load(booking_id)
        return await self._complete(booking, actor.id)

    async def delete_admin(self, actor: User, booking_id: str) -> None:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN)
        booking = await self._repos.driver_bookings.get(booking_id)
        if booking is None:
            raise NotFoundError("Driver booking not found", code="DRIVER_BOOKING_NOT_FOUND")
        await self._repos.driver_bookings.delete(booking_id)
        await log_info(f"Заказ водителя {booking.code} удалён ({actor.id})", type_msg=TypeMsg.INFO)

    # =========================================================================
    # ОПЛАТА И ИСТЕЧЕНИЕ
    # =========================================================================

    async def on_payment_paid(self, payment: Payment) -> Optional[DriverBooking]:
        """
        Платёж по заказу перешёл в paid.

        Заказ, ожидающий оплату, переводится в confirmed. Если окно оплаты
        уже истекло, заказ истекает, а расхождение логируется.
        """
        if not payment.driver_booking_id:
            return None

        booking = await self._repos.driver_bookings.get(payment.driver_booking_id)
        if booking is None:
            await log_warning(f"Оплачен платёж {payment.id} для несуществующего заказа {payment.driver_booking_id}")
            return None

        booking = await self._expire_if_due(booking)
        if not DriverBookingStateMachine.is_awaiting_payment(booking.status):
            await log_warning(
                f"Платёж {payment.id} оплачен, но заказ {booking.code} в статусе {booking.status}: "
                f"подтверждение не выполнено"
            )
            return booking

        try:
            return await self._confirm(booking, payment, SYSTEM_ACTOR)
        except (ConflictError, InvalidStateError) as e:
            await log_warning(f"Не удалось подтвердить заказ {booking.code} по платежу {payment.id}: {e.message}")
            return None

    async def on_payment_refunded(self, payment: Payment) -> None:
        if not payment.driver_booking_id:
            return
        booking = await self._repos.driver_bookings.get(payment.driver_booking_id)
        if booking is None or booking.payment_id != payment.id:
            return
        await self._repos.driver_bookings.update(booking.id, {"payment_status_snapshot": payment.status})

    async def expire_overdue(self, now: Optional[datetime] = None) -> int:
        """
        Переводит просроченные заказы в expired.

        Returns:
            Количество истёкших заказов
        """
        now = now or self._clock.now()
        candidates = await self._repos.driver_bookings.list_expirable(now, now - self._request_ttl)
        expired = 0
        for booking in candidates:
            if await self._try_expire(booking, now) is not None:
                expired += 1
        if expired:
            await log_info(f"Истекло заказов водителей: {expired}", type_msg=TypeMsg.INFO)
        return expired

    def is_overdue(self, booking: DriverBooking, now: datetime) -> bool:
        if DriverBookingStateMachine.is_awaiting_payment(booking.status):
            return booking.payment_deadline_at is not None and now > booking.payment_deadline_at
        if booking.status == DriverBookingStatus.REQUESTED:
            return now > booking.requested_at + self._request_ttl
        return False

    async def _expire_if_due(self, booking: DriverBooking) -> DriverBooking:
        """Ленивое истечение при обращении к заказу."""
        now = self._clock.now()
        if not self.is_overdue(booking, now):
            return booking
        expired = await self._try_expire(booking, now)
        if expired is not None:
            return expired
        return await self._repos.driver_bookings.get(booking.id) or booking

    async def _try_expire(self, booking: DriverBooking, now: datetime) -> Optional[DriverBooking]:
        if not self.is_overdue(booking, now):
            return None
        updated = await self._repos.driver_bookings.compare_and_set(
            booking.id,
            {"status": booking.status},
            {
                "status": DriverBookingStatus.EXPIRED.value,
                "expired_at": now,
                "last_status_update_by": SYSTEM_ACTOR,
            },
        )
        if updated is not None:
            await self._after_transition(booking.status, updated, SYSTEM_ACTOR)
        return updated

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _confirm(self, booking: DriverBooking, payment: Payment, actor_id: str) -> DriverBooking:
        return await self._transition(
            booking,
            DriverBookingStatus.CONFIRMED,
            actor_id,
            {
                "payment_id": payment.id,
                "payment_status_snapshot": PaymentStatus.PAID.value,
                "paid_at": self._clock.now(),
            },
            error_code="INVALID_BOOKING_STATUS_FOR_PAYMENT",
        )

    async def _complete(self, booking: DriverBooking, actor_id: str) -> DriverBooking:
        return await self._transition(
            booking,
            DriverBookingStatus.COMPLETED,
            actor_id,
            {"completed_at": self._clock.now()},
            error_code="INVALID_COMPLETE_STATUS",
        )

    async def _transition(
        self,
        booking: DriverBooking,
        new_status: DriverBookingStatus,
        actor_id: str,
        extra: Optional[dict[str, Any]] = None,
        error_code: str = "INVALID_BOOKING_STATUS",
        exclusive: bool = False,
    ) -> DriverBooking:
        """
        Переход статуса через compare-and-set по ожидаемому статусу.

        Raises:
            InvalidStateError: Переход недопустим из текущего статуса
            ConflictError: Статус изменился конкурентно (или пересечение при exclusive)
        """
        DriverBookingStateMachine.validate_transition(booking.status, new_status, code=error_code)

        changes = {"status": new_status.value, "last_status_update_by": actor_id, **(extra or {})}
        repo = self._repos.driver_bookings
        if exclusive:
            updated = await repo.compare_and_set_exclusive(booking.id, {"status": booking.status}, changes)
        else:
            updated = await repo.compare_and_set(booking.id, {"status": booking.status}, changes)

        if updated is None:
            raise ConflictError(
                "Driver booking status changed concurrently, reload and retry",
                code="BOOKING_STATUS_CHANGED",
            )

        await self._after_transition(booking.status, updated, actor_id)
        return updated

    async def _after_transition(self, old_status: str, booking: DriverBooking, actor_id: str) -> None:
        await log_info(
            f"Заказ водителя {booking.code}: {old_status} → {booking.status} ({actor_id})",
            type_msg=TypeMsg.INFO,
        )
        event_type = _STATUS_EVENTS.get(booking.status)
        if event_type:
            await emit(self._event_bus, event_type, {
                **self._event_payload(booking),
                "old_status": old_status,
                "changed_by": actor_id,
            })

    @staticmethod
    def _event_payload(booking: DriverBooking) -> dict[str, Any]:
        return {
            "booking_id": booking.id,
            "code": booking.code,
            "status": booking.status,
            "customer_id": booking.customer_id,
            "driver_user_id": booking.driver_user_id,
        }
