# src/core/bookings/availability.py
"""
Индекс занятости ресурсов (автомобиль, водитель) по времени.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from src.common.clock import ensure_utc
from src.common.constants import ResourceKind
from src.common.errors import DomainError, TransientError, ValidationError
from src.common.logger import log_error
from src.core.bookings.models import BookingRef
from src.core.repositories.interfaces import DriverBookingRepository, ReservationRepository


class AvailabilityIndex:
    """
    Отвечает на вопрос: пересекается ли [start, end) с блокирующей бронью ресурса.

    Интервалы полуоткрытые, касание границ пересечением не считается.
    При ошибке хранилища поднимается TransientError: свободным ресурс
    в этом случае не считается.
    """

    def __init__(
        self,
        reservations: ReservationRepository,
        driver_bookings: DriverBookingRepository,
    ) -> None:
        """
        Args:
            reservations: Репозиторий бронирований автомобилей
            driver_bookings: Репозиторий заказов водителей
        """
        self._reservations = reservations
        self._driver_bookings = driver_bookings

    async def overlaps(
        self,
        kind: ResourceKind | str,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> list[BookingRef]:
        """
        Блокирующие брони ресурса, пересекающие [start, end).

        Args:
            kind: Тип ресурса
            resource_id: ID автомобиля или пользователя-водителя
            start: Начало интервала
            end: Конец интервала
            exclude_id: Бронь, которую нужно исключить (при изменении)

        Returns:
            Ссылки на конфликтующие брони, по возрастанию начала
        """
        start, end = ensure_utc(start), ensure_utc(end)
        if start >= end:
            raise ValidationError("Interval end must be after start", code="INVALID_INTERVAL")

        try:
            kind = ResourceKind(kind)
        except ValueError:
            raise ValidationError(f"Unknown resource kind: {kind}", code="INVALID_RESOURCE_KIND")

        try:
            if kind == ResourceKind.VEHICLE:
                found = await self._reservations.find_blocking(resource_id, start, end, exclude_id)
            else:
                found = await self._driver_bookings.find_blocking(resource_id, start, end, exclude_id)
        except DomainError:
            raise
        except Exception as e:
            await log_error(f"Ошибка индекса занятости ({kind.value}:{resource_id}): {e}", exc_info=True)
            raise TransientError("Availability index unavailable") from e

        return [item.as_ref() for item in found]

    async def is_free(
        self,
        kind: ResourceKind | str,
        resource_id: str,
        start: datetime,
        end: datetime,
        exclude_id: Optional[str] = None,
    ) -> bool:
        return not await self.overlaps(kind, resource_id, start, end, exclude_id)
