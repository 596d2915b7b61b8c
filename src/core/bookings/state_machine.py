# src/core/bookings/state_machine.py
"""
State machines для бронирований автомобилей и заказов водителей.
"""

from __future__ import annotations

from src.common.constants import DriverBookingStatus, ReservationStatus
from src.common.errors import InvalidStateError


class ReservationStateMachine:
    """
    Переходы бронирования автомобиля (выполняет сотрудник).

    Допустимые переходы:
    - pending → confirmed, cancelled, no_show
    - confirmed → checked_out, cancelled, no_show
    - checked_out → returned, cancelled
    """

    VALID_TRANSITIONS: dict[ReservationStatus, list[ReservationStatus]] = {
        ReservationStatus.PENDING: [
            ReservationStatus.CONFIRMED,
            ReservationStatus.CANCELLED,
            ReservationStatus.NO_SHOW,
        ],
        ReservationStatus.CONFIRMED: [
            ReservationStatus.CHECKED_OUT,
            ReservationStatus.CANCELLED,
            ReservationStatus.NO_SHOW,
        ],
        ReservationStatus.CHECKED_OUT: [ReservationStatus.RETURNED, ReservationStatus.CANCELLED],
        ReservationStatus.RETURNED: [],
        ReservationStatus.CANCELLED: [],
        ReservationStatus.NO_SHOW: [],
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Проверяет, допустим ли переход."""
        try:
            allowed = cls.VALID_TRANSITIONS.get(ReservationStatus(from_status), [])
            return ReservationStatus(to_status) in allowed
        except ValueError:
            return False

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateError(
                f"Invalid reservation transition: {from_status} -> {to_status}",
                code="INVALID_RESERVATION_STATUS",
                details={"from": str(from_status), "to": str(to_status)},
            )

    @classmethod
    def is_terminal(cls, status: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(ReservationStatus(status), [])


class DriverBookingStateMachine:
    """
    Переходы заказа водителя.

    awaiting_payment ведёт себя так же, как accepted_by_driver.
    Сторона, выполняющая переход, проверяется в сервисе.
    """

    VALID_TRANSITIONS: dict[DriverBookingStatus, list[DriverBookingStatus]] = {
        DriverBookingStatus.REQUESTED: [
            DriverBookingStatus.ACCEPTED_BY_DRIVER,
            DriverBookingStatus.DECLINED_BY_DRIVER,
            DriverBookingStatus.EXPIRED,
            DriverBookingStatus.CANCELLED_BY_CUSTOMER,
            DriverBookingStatus.CANCELLED_BY_DRIVER,
        ],
        DriverBookingStatus.ACCEPTED_BY_DRIVER: [
            DriverBookingStatus.CONFIRMED,
            DriverBookingStatus.EXPIRED,
            DriverBookingStatus.CANCELLED_BY_CUSTOMER,
            DriverBookingStatus.CANCELLED_BY_DRIVER,
        ],
        DriverBookingStatus.AWAITING_PAYMENT: [
            DriverBookingStatus.CONFIRMED,
            DriverBookingStatus.EXPIRED,
            DriverBookingStatus.CANCELLED_BY_CUSTOMER,
            DriverBookingStatus.CANCELLED_BY_DRIVER,
        ],
        DriverBookingStatus.CONFIRMED: [DriverBookingStatus.COMPLETED],
        DriverBookingStatus.DECLINED_BY_DRIVER: [],
        DriverBookingStatus.CANCELLED_BY_CUSTOMER: [],
        DriverBookingStatus.CANCELLED_BY_DRIVER: [],
        DriverBookingStatus.EXPIRED: [],
        DriverBookingStatus.COMPLETED: [],
    }

    # Статусы, в которых заказ ждёт оплату
    AWAITING_PAYMENT_STATUSES: frozenset[str] = frozenset({
        DriverBookingStatus.ACCEPTED_BY_DRIVER.value,
        DriverBookingStatus.AWAITING_PAYMENT.value,
    })

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        try:
            allowed = cls.VALID_TRANSITIONS.get(DriverBookingStatus(from_status), [])
            return DriverBookingStatus(to_status) in allowed
        except ValueError:
            return False

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str, code: str = "INVALID_BOOKING_STATUS") -> None:
        """Проверяет переход и выбрасывает InvalidStateError с заданным кодом."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateError(
                f"Invalid driver booking transition: {from_status} -> {to_status}",
                code=code,
                details={"from": str(from_status), "to": str(to_status)},
            )

    @classmethod
    def is_awaiting_payment(cls, status: str) -> bool:
        return status in cls.AWAITING_PAYMENT_STATUSES
