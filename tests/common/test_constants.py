# tests/common/test_constants.py
"""
Тесты для модуля констант.
"""

from __future__ import annotations

from src.common.constants import (
    ACTIVE_PAYMENT_STATUSES,
    DRIVER_BOOKING_BLOCKING_STATUSES,
    RESERVATION_BLOCKING_STATUSES,
    STAFF_ROLES,
    TERMINAL_PAYMENT_STATUSES,
    DriverBookingStatus,
    PaymentStatus,
    ReservationStatus,
    TypeMsg,
    UserRole,
)


class TestTypeMsg:
    """Тесты для enum TypeMsg."""

    def test_type_msg_values(self) -> None:
        """Проверяет значения типов сообщений."""
        assert TypeMsg.DEBUG.value == "debug"
        assert TypeMsg.INFO.value == "info"
        assert TypeMsg.WARNING.value == "warning"
        assert TypeMsg.ERROR.value == "error"
        assert TypeMsg.CRITICAL.value == "critical"

    def test_type_msg_is_str_enum(self) -> None:
        """Проверяет, что TypeMsg является строковым enum."""
        assert isinstance(TypeMsg.DEBUG, str)
        assert TypeMsg.INFO == "info"


class TestUserRole:
    """Тесты ролей пользователей."""

    def test_user_role_values(self) -> None:
        assert UserRole.CUSTOMER.value == "customer"
        assert UserRole.AGENT.value == "agent"
        assert UserRole.DRIVER.value == "driver"

    def test_staff_roles(self) -> None:
        """Персонал: агент, менеджер, администратор."""
        assert STAFF_ROLES == {"agent", "manager", "admin"}
        assert UserRole.CUSTOMER not in STAFF_ROLES
        assert UserRole.DRIVER not in STAFF_ROLES


class TestBlockingStatuses:
    """Статусы, занимающие ресурс."""

    def test_reservation_blocking(self) -> None:
        assert RESERVATION_BLOCKING_STATUSES == {"pending", "confirmed", "checked_out"}
        assert ReservationStatus.RETURNED not in RESERVATION_BLOCKING_STATUSES
        assert ReservationStatus.CANCELLED not in RESERVATION_BLOCKING_STATUSES

    def test_driver_booking_blocking(self) -> None:
        assert DriverBookingStatus.REQUESTED in DRIVER_BOOKING_BLOCKING_STATUSES
        assert DriverBookingStatus.AWAITING_PAYMENT in DRIVER_BOOKING_BLOCKING_STATUSES
        assert DriverBookingStatus.EXPIRED not in DRIVER_BOOKING_BLOCKING_STATUSES
        assert DriverBookingStatus.COMPLETED not in DRIVER_BOOKING_BLOCKING_STATUSES


class TestPaymentStatus:
    """Тесты статусов платежа."""

    def test_terminal_and_active_disjoint(self) -> None:
        assert not (TERMINAL_PAYMENT_STATUSES & ACTIVE_PAYMENT_STATUSES)

    def test_unpaid_is_neither(self) -> None:
        """unpaid - только снимок в заказе, не статус активного платежа."""
        assert PaymentStatus.UNPAID not in TERMINAL_PAYMENT_STATUSES
        assert PaymentStatus.UNPAID not in ACTIVE_PAYMENT_STATUSES

    def test_terminal_members(self) -> None:
        assert TERMINAL_PAYMENT_STATUSES == {"paid", "cancelled", "failed", "refunded", "void"}
