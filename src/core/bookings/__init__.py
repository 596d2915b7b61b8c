# src/core/bookings/__init__.py
"""
Домен бронирований.
Бронирования автомобилей, заказы водителей и правила пересечения интервалов.
"""

from src.core.bookings.models import (
    DriverBooking,
    DriverBookingCreateDTO,
    DriverBookingFilter,
    Reservation,
    ReservationCreateDTO,
    ReservationFilter,
    ReservationUpdateDTO,
)
from src.core.bookings.state_machine import DriverBookingStateMachine, ReservationStateMachine

__all__ = [
    "DriverBooking",
    "DriverBookingCreateDTO",
    "DriverBookingFilter",
    "Reservation",
    "ReservationCreateDTO",
    "ReservationFilter",
    "ReservationUpdateDTO",
    "DriverBookingStateMachine",
    "ReservationStateMachine",
]
