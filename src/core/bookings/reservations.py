# src/core/bookings/reservations.py
"""
Сервис бронирований автомобилей.
Создание, изменение, переходы статусов и реакция на оплату.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from src.common.clock import Clock, IdGenerator, ensure_utc
from src.common.constants import (
    PaymentSummaryStatus,
    ReservationStatus,
    ResourceKind,
    TypeMsg,
    UserRole,
)
from src.common.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from src.common.logger import log_info, log_warning
from src.core.bookings.availability import AvailabilityIndex
from src.core.bookings.codes import RESERVATION_CODE_PREFIX, insert_with_generated_code
from src.core.bookings.models import (
    PaymentSummary,
    Reservation,
    ReservationCreateDTO,
    ReservationFilter,
    ReservationUpdateDTO,
)
from src.core.bookings.state_machine import ReservationStateMachine
from src.core.payments.models import Payment
from src.core.pricing.service import PricingSnapshotBuilder
from src.core.repositories.interfaces import Repositories
from src.core.users.models import User, ensure_role, ensure_staff
from src.infra.event_bus import EventBus, EventTypes, emit
from src.shared.models.common import Page, PaginationParams, money

ZERO = Decimal("0.00")

# Повторы CAS при обновлении сводки оплаты
SUMMARY_UPDATE_ATTEMPTS = 3


class ReservationService:
    """Сервис бронирований автомобилей."""

    def __init__(
        self,
        repos: Repositories,
        availability: AvailabilityIndex,
        pricing: PricingSnapshotBuilder,
        clock: Clock,
        ids: IdGenerator,
        event_bus: EventBus | None = None,
        code_attempts: int = 5,
    ) -> None:
        self._repos = repos
        self._availability = availability
        self._pricing = pricing
        self._clock = clock
        self._ids = ids
        self._event_bus = event_bus
        self._code_attempts = code_attempts

    # =========================================================================
    # ЧТЕНИЕ
    # =========================================================================

    async def _load(self, reservation_id: str) -> Reservation:
        reservation = await self._repos.reservations.get(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found", code="RESERVATION_NOT_FOUND")
        return reservation

    async def get(self, actor: User, reservation_id: str) -> Reservation:
        """Бронь по ID (владелец или сотрудник)."""
        reservation = await self._load(reservation_id)
        if not actor.is_staff and reservation.user_id != actor.id:
            raise ForbiddenError("Not allowed to access this reservation", code="RESERVATION_FORBIDDEN")
        return reservation

    async def list(
        self,
        actor: User,
        flt: ReservationFilter,
        pagination: PaginationParams,
    ) -> Page[Reservation]:
        """Список броней, новые первыми. Клиент видит только свои."""
        if not actor.is_staff:
            flt = flt.model_copy(update={"user_id": actor.id})
        items = await self._repos.reservations.list(flt)
        return Page[Reservation].slice(items, pagination)

    async def check_availability(
        self,
        vehicle_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> dict[str, Any]:
        """Свободен ли автомобиль в [start, end)."""
        conflicts = await self._availability.overlaps(ResourceKind.VEHICLE, vehicle_id, start, end, exclude_id)
        return {
            "vehicle_id": vehicle_id,
            "available": not conflicts,
            "conflicts": [c.to_dict() for c in conflicts],
        }

    # =========================================================================
    # ЗАПИСЬ
    # =========================================================================

    async def create(self, actor: User, dto: ReservationCreateDTO) -> Reservation:
        """
        Создаёт бронирование в статусе pending.

        Клиент бронирует на себя, сотрудник может указать user_id клиента.
        Если назначен автомобиль, пересечение с блокирующими бронями
        проверяется атомарно при вставке.

        Args:
            actor: Текущий пользователь
            dto: Данные бронирования

        Returns:
            Созданная бронь

        Raises:
            ConflictError: VEHICLE_TIME_CONFLICT или RESERVATION_CODE_DUPLICATE
        """
        ensure_role(
            actor, UserRole.CUSTOMER, UserRole.AGENT, UserRole.MANAGER, UserRole.ADMIN,
            code="RESERVATION_FORBIDDEN",
        )

        customer_id = actor.id
        if dto.user_id and dto.user_id != actor.id:
            if not actor.is_staff:
                raise ForbiddenError("Only staff may book on behalf of a customer", code="RESERVATION_FORBIDDEN")
            if await self._repos.users.get(dto.user_id) is None:
                raise NotFoundError("Customer not found", code="USER_NOT_FOUND")
            customer_id = dto.user_id

        pickup = dto.pickup.model_copy(update={"at": ensure_utc(dto.pickup.at)})
        dropoff = dto.dropoff.model_copy(update={"at": ensure_utc(dto.dropoff.at)})
        if pickup.at >= dropoff.at:
            raise ValidationError("dropoff time must be after pickup time", code="INVALID_RESERVATION_WINDOW")

        if dto.vehicle_id:
            await self._require_vehicle(dto.vehicle_id)

        now = self._clock.now()
        pricing = self._pricing.build_reservation_pricing(
            currency=dto.currency,
            computed_at=now,
            breakdown=dto.breakdown,
            fees=dto.fees,
            taxes=dto.taxes,
            discounts=dto.discounts,
            grand_total=dto.grand_total,
        )

        def build(code: str) -> Reservation:
            return Reservation(
                code=code,
                user_id=customer_id,
                created_by=actor.id,
                created_channel=dto.created_channel,
                vehicle_id=dto.vehicle_id,
                vehicle_model_id=dto.vehicle_model_id,
                pickup=pickup,
                dropoff=dropoff,
                pricing=pricing,
                payment_summary=PaymentSummary(outstanding=pricing.grand_total),
                notes=dto.notes,
                created_at=now,
                updated_at=now,
            )

        if dto.code:
            try:
                reservation = await self._repos.reservations.insert_exclusive(build(dto.code))
            except ConflictError as e:
                if e.code == "DUPLICATE_KEY":
                    raise ConflictError(
                        f"Reservation code {dto.code} already exists",
                        code="RESERVATION_CODE_DUPLICATE",
                    ) from e
                raise
        else:
            reservation = await insert_with_generated_code(
                lambda code: self._repos.reservations.insert_exclusive(build(code)),
                self._ids,
                RESERVATION_CODE_PREFIX,
                now,
                self._code_attempts,
            )

        await log_info(
            f"Бронирование {reservation.code} создано (клиент {customer_id}, автомобиль {reservation.vehicle_id})",
            type_msg=TypeMsg.INFO,
        )
        await emit(self._event_bus, EventTypes.RESERVATION_CREATED, {
            "reservation_id": reservation.id,
            "code": reservation.code,
            "user_id": reservation.user_id,
            "vehicle_id": reservation.vehicle_id,
        })
        return reservation

    async def update(self, actor: User, reservation_id: str, dto: ReservationUpdateDTO) -> Reservation:
        """
        Частичное обновление сотрудником.

        При смене окна или автомобиля пересечение проверяется заново.
        Изменение цены пересобирает снимок и outstanding.
        """
        ensure_staff(actor, code="RESERVATION_FORBIDDEN")
        current = await self._load(reservation_id)
        if ReservationStateMachine.is_terminal(current.status):
            raise InvalidStateError(
                f"Reservation in status {current.status} cannot be modified",
                code="INVALID_RESERVATION_STATUS",
            )

        fields = dto.model_dump(exclude_unset=True)
        changes: dict[str, Any] = {}

        if "notes" in fields and dto.notes is not None:
            changes["notes"] = dto.notes
        if "vehicle_id" in fields:
            if dto.vehicle_id:
                await self._require_vehicle(dto.vehicle_id)
            changes["vehicle_id"] = dto.vehicle_id
        if dto.pickup is not None:
            changes["pickup"] = dto.pickup.model_copy(update={"at": ensure_utc(dto.pickup.at)})
        if dto.dropoff is not None:
            changes["dropoff"] = dto.dropoff.model_copy(update={"at": ensure_utc(dto.dropoff.at)})

        pickup_at = changes["pickup"].at if "pickup" in changes else current.pickup.at
        dropoff_at = changes["dropoff"].at if "dropoff" in changes else current.dropoff.at
        if pickup_at >= dropoff_at:
            raise ValidationError("dropoff time must be after pickup time", code="INVALID_RESERVATION_WINDOW")

        pricing_keys = {"breakdown", "fees", "taxes", "discounts", "grand_total"}
        if pricing_keys & fields.keys():
            old = current.pricing
            pricing = self._pricing.build_reservation_pricing(
                currency=old.currency,
                computed_at=self._clock.now(),
                breakdown=dto.breakdown if dto.breakdown is not None else old.breakdown,
                fees=dto.fees if dto.fees is not None else old.fees,
                taxes=dto.taxes if dto.taxes is not None else old.taxes,
                discounts=dto.discounts if dto.discounts is not None else old.discounts,
                grand_total=dto.grand_total,
            )
            summary = current.payment_summary
            changes["pricing"] = pricing
            changes["payment_summary"] = summary.model_copy(update={
                "outstanding": money(max(ZERO, pricing.grand_total - Decimal(summary.paid_total))),
            })

        if not changes:
            return current

        updated = await self._repos.reservations.compare_and_set_exclusive(
            reservation_id,
            {"version": current.version},
            changes,
        )
        if updated is None:
            raise ConflictError("Reservation was modified concurrently", code="RESERVATION_CONCURRENT_UPDATE")

        await log_info(f"Бронирование {updated.code} обновлено: {sorted(changes)}", type_msg=TypeMsg.INFO)
        return updated

    async def update_status(
        self,
        actor: User,
        reservation_id: str,
        new_status: ReservationStatus | str,
    ) -> Reservation:
        """Переход статуса (только сотрудники)."""
        ensure_staff(actor, code="RESERVATION_FORBIDDEN")
        current = await self._load(reservation_id)
        new_status = ReservationStatus(new_status)
        ReservationStateMachine.validate_transition(current.status, new_status)

        updated = await self._repos.reservations.compare_and_set(
            reservation_id,
            {"status": current.status},
            {"status": new_status.value},
        )
        if updated is None:
            raise ConflictError("Reservation status changed concurrently", code="RESERVATION_STATUS_CHANGED")

        await self._on_status_changed(current.status, updated, actor.id)
        return updated

    async def delete(self, actor: User, reservation_id: str) -> None:
        """Удаление (manager/admin)."""
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN, code="RESERVATION_FORBIDDEN")
        reservation = await self._load(reservation_id)
        await self._repos.reservations.delete(reservation_id)
        await log_info(f"Бронирование {reservation.code} удалено ({actor.id})", type_msg=TypeMsg.INFO)

    # =========================================================================
    # ОПЛАТА
    # =========================================================================

    async def on_payment_paid(self, payment: Payment) -> Optional[Reservation]:
        """
        Платёж по брони перешёл в paid.

        Обновляет сводку оплаты и переводит pending бронь в confirmed.
        Ошибки не пробрасываются: платёж уже принят шлюзом.
        """
        if not payment.reservation_id:
            return None

        for _ in range(SUMMARY_UPDATE_ATTEMPTS):
            reservation = await self._repos.reservations.get(payment.reservation_id)
            if reservation is None:
                await log_warning(f"Оплачен платёж {payment.id} для несуществующей брони {payment.reservation_id}")
                return None

            summary = reservation.payment_summary
            paid_total = money(Decimal(summary.paid_total) + payment.amount)
            outstanding = money(max(ZERO, reservation.pricing.grand_total - paid_total))
            changes: dict[str, Any] = {
                "payment_summary": PaymentSummary(
                    status=PaymentSummaryStatus.PAID if outstanding == ZERO else PaymentSummaryStatus.PARTIAL,
                    paid_total=paid_total,
                    outstanding=outstanding,
                    last_payment_at=payment.captured_at or self._clock.now(),
                ),
            }
            confirm = reservation.status == ReservationStatus.PENDING
            if confirm:
                changes["status"] = ReservationStatus.CONFIRMED.value

            updated = await self._repos.reservations.compare_and_set(
                reservation.id,
                {"version": reservation.version},
                changes,
            )
            if updated is None:
                continue

            if confirm:
                await self._on_status_changed(reservation.status, updated, "system")
            return updated

        await log_warning(f"Не удалось обновить сводку оплаты брони {payment.reservation_id}: конкурентные изменения")
        return None

    async def on_payment_refunded(self, payment: Payment, amount: Decimal) -> Optional[Reservation]:
        """Возврат по платежу уменьшает paid_total брони."""
        if not payment.reservation_id:
            return None

        for _ in range(SUMMARY_UPDATE_ATTEMPTS):
            reservation = await self._repos.reservations.get(payment.reservation_id)
            if reservation is None:
                return None
            summary = reservation.payment_summary
            paid_total = money(max(ZERO, Decimal(summary.paid_total) - amount))
            if paid_total == ZERO:
                status = PaymentSummaryStatus.REFUNDED
            elif paid_total < reservation.pricing.grand_total:
                status = PaymentSummaryStatus.PARTIAL
            else:
                status = PaymentSummaryStatus.PAID
            updated = await self._repos.reservations.compare_and_set(
                reservation.id,
                {"version": reservation.version},
                {"payment_summary": summary.model_copy(update={
                    "status": status.value,
                    "paid_total": paid_total,
                    "outstanding": money(max(ZERO, reservation.pricing.grand_total - paid_total)),
                })},
            )
            if updated is not None:
                return updated

        await log_warning(f"Не удалось отразить возврат в брони {payment.reservation_id}")
        return None

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _require_vehicle(self, vehicle_id: str) -> None:
        if await self._repos.vehicles.get(vehicle_id) is None:
            raise NotFoundError("Vehicle not found", code="VEHICLE_NOT_FOUND")

    async def _on_status_changed(self, old_status: str, reservation: Reservation, actor_id: str) -> None:
        await log_info(
            f"Бронирование {reservation.code}: {old_status} → {reservation.status} ({actor_id})",
            type_msg=TypeMsg.INFO,
        )
        await emit(self._event_bus, EventTypes.RESERVATION_STATUS_CHANGED, {
            "reservation_id": reservation.id,
            "code": reservation.code,
            "old_status": str(old_status),
            "new_status": str(reservation.status),
            "changed_by": actor_id,
        })
