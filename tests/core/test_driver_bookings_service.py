# tests/core/test_driver_bookings_service.py
"""
Тесты сервиса заказов водителей.
"""

from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest

from src.common.constants import DriverProfileStatus
from src.common.errors import ConflictError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from src.core.bookings.driver_bookings import DriverBookingService
from src.core.bookings.models import DriverBookingCreateDTO, DriverBookingFilter, Location
from src.core.payments.models import Payment
from src.core.pricing.service import PricingSnapshotBuilder
from src.infra.event_bus import EventTypes
from src.services.api.dependencies import ServiceContainer
from src.shared.models.common import PaginationParams

START = datetime(2030, 3, 1, 10, 0, tzinfo=timezone.utc)


def create_dto(start: datetime = START, hours: int | None = 2, **overrides: Any) -> DriverBookingCreateDTO:
    data: dict[str, Any] = {
        "driver_profile_id": "profile-1",
        "start_at": start,
        "end_at": start + timedelta(hours=hours) if hours else None,
        "pickup_location": Location(address="Samora Machel Ave 1"),
        "dropoff_location": Location(address="Robert Gabriel Mugabe Airport"),
    }
    data.update(overrides)
    return DriverBookingCreateDTO(**data)


def paid_payment(booking_id: str, status: str = "paid", amount: str = "40.00") -> Payment:
    return Payment(
        user_id="customer-1",
        driver_booking_id=booking_id,
        amount=Decimal(amount),
        currency="USD",
        method="card",
        status=status,
        merchant_reference=f"PAY-{booking_id[:8]}-{status}",
    )


@pytest.fixture
def service(
    container: ServiceContainer, customer, other_customer, manager, driver_user, driver_profile,
) -> DriverBookingService:
    return container.driver_bookings


class TestCreate:
    """Создание заказа."""

    @pytest.mark.asyncio
    async def test_requested_with_pricing(self, service: DriverBookingService, customer) -> None:
        booking = await service.create(customer, create_dto())

        assert booking.status == "requested"
        assert booking.driver_user_id == "driver-1"
        assert booking.pricing.hours_requested == Decimal("2")
        assert booking.pricing.estimated_total == Decimal("40.00")
        assert booking.payment_status_snapshot == "unpaid"
        assert re.fullmatch(r"DRV-20300101-\d{6}", booking.code)

    @pytest.mark.asyncio
    async def test_hours_without_end(self, service: DriverBookingService, customer) -> None:
        booking = await service.create(customer, create_dto(hours=None, hours_requested=Decimal("3")))

        assert booking.end_at is None
        assert booking.effective_end_at == START + timedelta(hours=3)
        assert booking.pricing.estimated_total == Decimal("60.00")

    @pytest.mark.asyncio
    async def test_overlap_conflict(self, service: DriverBookingService, customer, other_customer) -> None:
        first = await service.create(customer, create_dto())

        with pytest.raises(ConflictError) as exc_info:
            await service.create(other_customer, create_dto(START + timedelta(hours=1)))

        assert exc_info.value.code == "DRIVER_TIME_CONFLICT"
        assert exc_info.value.details["conflicts"][0]["booking_id"] == first.id

    @pytest.mark.asyncio
    async def test_adjacent_allowed(self, service: DriverBookingService, customer, other_customer) -> None:
        await service.create(customer, create_dto())

        second = await service.create(other_customer, create_dto(START + timedelta(hours=2)))

        assert second.status == "requested"

    @pytest.mark.asyncio
    async def test_start_in_past(self, service: DriverBookingService, customer) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.create(customer, create_dto(datetime(2029, 12, 31, tzinfo=timezone.utc)))

        assert exc_info.value.code == "INVALID_START_AT"

    @pytest.mark.asyncio
    async def test_missing_duration(self, service: DriverBookingService, customer) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.create(customer, create_dto(hours=None))

        assert exc_info.value.code == "INVALID_HOURS_REQUESTED"

    @pytest.mark.asyncio
    async def test_end_before_start(self, service: DriverBookingService, customer) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await service.create(customer, create_dto(end_at=START - timedelta(hours=1)))

        assert exc_info.value.code == "INVALID_END_AT"

    @pytest.mark.asyncio
    async def test_unknown_profile(self, service: DriverBookingService, customer) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await service.create(customer, create_dto(driver_profile_id="missing"))

        assert exc_info.value.code == "DRIVER_PROFILE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_not_approved(self, service: DriverBookingService, repos, customer, driver_profile) -> None:
        await repos.driver_profiles.update(driver_profile.id, {"status": DriverProfileStatus.REJECTED.value})

        with pytest.raises(ValidationError) as exc_info:
            await service.create(customer, create_dto())

        assert exc_info.value.code == "DRIVER_NOT_APPROVED"

    @pytest.mark.asyncio
    async def test_unavailable(self, service: DriverBookingService, repos, customer, driver_profile) -> None:
        await repos.driver_profiles.update(driver_profile.id, {"is_available": False})

        with pytest.raises(ValidationError) as exc_info:
            await service.create(customer, create_dto())

        assert exc_info.value.code == "DRIVER_NOT_AVAILABLE"

    @pytest.mark.asyncio
    async def test_staff_books_for_customer(self, service: DriverBookingService, manager, customer) -> None:
        booking = await service.create(manager, create_dto(customer_id=customer.id))

        assert booking.customer_id == customer.id
        assert booking.created_by == manager.id

    @pytest.mark.asyncio
    async def test_driver_cannot_request(self, service: DriverBookingService, driver_user) -> None:
        with pytest.raises(ForbiddenError) as exc_info:
            await service.create(driver_user, create_dto())

        assert exc_info.value.code == "DRIVER_BOOKING_FORBIDDEN"


class TestRespond:
    """Ответ водителя."""

    @pytest.mark.asyncio
    async def test_accept_sets_deadline(self, service: DriverBookingService, customer, driver_user, clock) -> None:
        booking = await service.create(customer, create_dto())

        accepted = await service.respond(driver_user, booking.id, "accept")

        assert accepted.status == "accepted_by_driver"
        assert accepted.driver_responded_at == clock.now()
        assert accepted.payment_deadline_at == clock.now() + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_decline(self, service: DriverBookingService, customer, driver_user) -> None:
        booking = await service.create(customer, create_dto())

        declined = await service.respond(driver_user, booking.id, " Decline ")

        assert declined.status == "declined_by_driver"

    @pytest.mark.asyncio
    async def test_invalid_action(self, service: DriverBookingService, customer, driver_user) -> None:
        booking = await service.create(customer, create_dto())

        with pytest.raises(ValidationError) as exc_info:
            await service.respond(driver_user, booking.id, "maybe")

        assert exc_info.value.code == "INVALID_DRIVER_ACTION"

    @pytest.mark.asyncio
    async def test_only_driver(self, service: DriverBookingService, customer) -> None:
        booking = await service.create(customer, create_dto())

        with pytest.raises(ForbiddenError) as exc_info:
            await service.respond(customer, booking.id, "accept")

        assert exc_info.value.code == "DRIVER_ONLY"

    @pytest.mark.asyncio
    async def test_twice_rejected(self, service: DriverBookingService, customer, driver_user) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "decline")

        with pytest.raises(InvalidStateError) as exc_info:
            await service.respond(driver_user, booking.id, "accept")

        assert exc_info.value.code == "INVALID_BOOKING_STATUS"


class TestPayment:
    """Подтверждение оплаты."""

    @pytest.mark.asyncio
    async def test_confirm_with_paid_payment(
        self, service: DriverBookingService, repos, customer, driver_user,
    ) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")
        payment = await repos.payments.insert(paid_payment(booking.id))

        confirmed = await service.confirm_payment(customer, booking.id, payment.id)

        assert confirmed.status == "confirmed"
        assert confirmed.payment_id == payment.id
        assert confirmed.payment_status_snapshot == "paid"
        assert confirmed.paid_at is not None

    @pytest.mark.asyncio
    async def test_confirm_requires_accept(self, service: DriverBookingService, repos, customer) -> None:
        booking = await service.create(customer, create_dto())
        payment = await repos.payments.insert(paid_payment(booking.id))

        with pytest.raises(InvalidStateError) as exc_info:
            await service.confirm_payment(customer, booking.id, payment.id)

        assert exc_info.value.code == "INVALID_BOOKING_STATUS_FOR_PAYMENT"

    @pytest.mark.asyncio
    async def test_unpaid_payment(self, service: DriverBookingService, repos, customer, driver_user) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")
        payment = await repos.payments.insert(paid_payment(booking.id, status="sent"))

        with pytest.raises(InvalidStateError) as exc_info:
            await service.confirm_payment(customer, booking.id, payment.id)

        assert exc_info.value.code == "PAYMENT_NOT_PAID"

    @pytest.mark.asyncio
    async def test_foreign_payment(self, service: DriverBookingService, repos, customer, driver_user) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")
        payment = await repos.payments.insert(paid_payment("another-booking"))

        with pytest.raises(ValidationError) as exc_info:
            await service.confirm_payment(customer, booking.id, payment.id)

        assert exc_info.value.code == "PAYMENT_TARGET_MISMATCH"

    @pytest.mark.asyncio
    async def test_missing_payment(self, service: DriverBookingService, customer, driver_user) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")

        with pytest.raises(NotFoundError) as exc_info:
            await service.confirm_payment(customer, booking.id, "nope")

        assert exc_info.value.code == "PAYMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_on_payment_paid_confirms(self, service: DriverBookingService, customer, driver_user) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")

        confirmed = await service.on_payment_paid(paid_payment(booking.id))

        assert confirmed.status == "confirmed"

    @pytest.mark.asyncio
    async def test_late_payment_expires(self, service: DriverBookingService, customer, driver_user, clock) -> None:
        """Оплата после дедлайна не подтверждает заказ."""
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")
        clock.advance(minutes=31)

        result = await service.on_payment_paid(paid_payment(booking.id))

        assert result.status == "expired"


class TestCancelAndComplete:
    """Отмена и завершение."""

    @pytest.mark.asyncio
    async def test_customer_cancel_with_reason(self, service: DriverBookingService, customer) -> None:
        booking = await service.create(customer, create_dto())

        cancelled = await service.cancel_by_customer(customer, booking.id, "plans changed")

        assert cancelled.status == "cancelled_by_customer"
        assert cancelled.cancel_reason == "plans changed"
        assert cancelled.cancelled_at is not None

    @pytest.mark.asyncio
    async def test_cancel_frees_driver(self, service: DriverBookingService, customer, other_customer) -> None:
        booking = await service.create(customer, create_dto())
        await service.cancel_by_customer(customer, booking.id)

        again = await service.create(other_customer, create_dto())

        assert again.status == "requested"

    @pytest.mark.asyncio
    async def test_driver_cancel(self, service: DriverBookingService, customer, driver_user) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")

        cancelled = await service.cancel_by_driver(driver_user, booking.id, "car trouble")

        assert cancelled.status == "cancelled_by_driver"

    @pytest.mark.asyncio
    async def test_cancel_after_confirm_rejected(
        self, service: DriverBookingService, customer, driver_user,
    ) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")
        await service.on_payment_paid(paid_payment(booking.id))

        with pytest.raises(InvalidStateError) as exc_info:
            await service.cancel_by_customer(customer, booking.id)

        assert exc_info.value.code == "INVALID_CANCEL_STATUS"

    @pytest.mark.asyncio
    async def test_complete_requires_confirmed(self, service: DriverBookingService, customer, driver_user) -> None:
        booking = await service.create(customer, create_dto())

        with pytest.raises(InvalidStateError) as exc_info:
            await service.complete(driver_user, booking.id)

        assert exc_info.value.code == "INVALID_COMPLETE_STATUS"

    @pytest.mark.asyncio
    async def test_admin_complete(self, service: DriverBookingService, customer, driver_user, manager) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")
        await service.on_payment_paid(paid_payment(booking.id))

        completed = await service.complete_admin(manager, booking.id)

        assert completed.status == "completed"
        assert completed.completed_at is not None


class TestVisibility:
    """Кто видит заказ."""

    @pytest.mark.asyncio
    async def test_other_customer_gets_not_found(
        self, service: DriverBookingService, customer, other_customer,
    ) -> None:
        booking = await service.create(customer, create_dto())

        with pytest.raises(NotFoundError):
            await service.get_for_customer(other_customer, booking.id)

    @pytest.mark.asyncio
    async def test_lists(self, service: DriverBookingService, customer, other_customer, driver_user, manager) -> None:
        await service.create(customer, create_dto())
        await service.create(other_customer, create_dto(START + timedelta(days=1)))

        mine = await service.list_for_customer(customer, DriverBookingFilter(), PaginationParams())
        driver = await service.list_for_driver(driver_user, DriverBookingFilter(), PaginationParams())
        admin = await service.list_admin(manager, DriverBookingFilter(status="requested"), PaginationParams())

        assert mine.total == 1
        assert driver.total == 2
        assert admin.total == 2

    @pytest.mark.asyncio
    async def test_admin_requires_role(self, service: DriverBookingService, customer) -> None:
        booking = await service.create(customer, create_dto())

        with pytest.raises(ForbiddenError):
            await service.get_admin(customer, booking.id)

    @pytest.mark.asyncio
    async def test_delete_admin(self, service: DriverBookingService, customer, manager) -> None:
        booking = await service.create(customer, create_dto())

        await service.delete_admin(manager, booking.id)

        with pytest.raises(NotFoundError):
            await service.get_admin(manager, booking.id)


class TestExpiry:
    """Истечение заказов."""

    @pytest.mark.asyncio
    async def test_lazy_expiry_on_read(self, service: DriverBookingService, customer, driver_user, clock) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")
        clock.advance(minutes=31)

        seen = await service.get_for_customer(customer, booking.id)

        assert seen.status == "expired"
        assert seen.expired_at == clock.now()

    @pytest.mark.asyncio
    async def test_sweep(self, service: DriverBookingService, customer, other_customer, driver_user, clock) -> None:
        accepted = await service.create(customer, create_dto())
        await service.respond(driver_user, accepted.id, "accept")
        await service.create(other_customer, create_dto(START + timedelta(days=1)))

        clock.advance(minutes=45)
        assert await service.expire_overdue() == 1

        clock.advance(hours=24)
        assert await service.expire_overdue() == 1
        assert await service.expire_overdue() == 0

    @pytest.mark.asyncio
    async def test_expired_frees_driver(
        self, service: DriverBookingService, customer, other_customer, driver_user, clock,
    ) -> None:
        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")
        clock.advance(minutes=31)
        await service.expire_overdue()

        again = await service.create(other_customer, create_dto())

        assert again.status == "requested"

    @pytest.mark.asyncio
    async def test_deadline_boundary_not_expired(
        self, service: DriverBookingService, customer, driver_user, clock,
    ) -> None:
        booking = await service.create(customer, create_dto())
        accepted = await service.respond(driver_user, booking.id, "accept")

        assert not service.is_overdue(accepted, accepted.payment_deadline_at)
        assert service.is_overdue(accepted, accepted.payment_deadline_at + timedelta(seconds=1))


class TestEvents:
    @pytest.mark.asyncio
    async def test_publishes_lifecycle(self, repos, clock, ids, mock_event_bus, customer, driver_user, driver_profile) -> None:
        service = DriverBookingService(repos, PricingSnapshotBuilder(), clock, ids, event_bus=mock_event_bus)

        booking = await service.create(customer, create_dto())
        await service.respond(driver_user, booking.id, "accept")

        types = [call.args[0].event_type for call in mock_event_bus.publish.call_args_list]
        assert types == [EventTypes.DRIVER_BOOKING_REQUESTED, EventTypes.DRIVER_BOOKING_ACCEPTED]
