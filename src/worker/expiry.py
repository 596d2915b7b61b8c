# src/worker/expiry.py
"""
Истечение заказов водителей.

Заказ без ответа водителя дольше DRIVER_REQUEST_TTL_MINUTES и заказ,
не оплаченный до payment_deadline_at, переводятся в expired.
Те же правила применяются лениво при чтении заказа, воркер лишь
освобождает интервалы водителей, к которым никто не обращается.
"""

from __future__ import annotations

from src.core.bookings.driver_bookings import DriverBookingService
from src.worker.base import BaseWorker


class BookingExpiryWorker(BaseWorker):
    """Периодический перевод просроченных заказов в expired."""

    def __init__(self, driver_bookings: DriverBookingService, interval: float = 60.0) -> None:
        super().__init__(interval)
        self._driver_bookings = driver_bookings

    @property
    def name(self) -> str:
        return "booking_expiry"

    async def run_once(self) -> int:
        return await self._driver_bookings.expire_overdue()
