# tests/core/test_availability.py
"""
Тесты индекса занятости и генерации кодов броней.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.common.clock import IdGenerator
from src.common.errors import ConflictError, TransientError, ValidationError
from src.core.bookings.availability import AvailabilityIndex
from src.core.bookings.codes import insert_with_generated_code
from src.core.repositories.interfaces import Repositories

START = datetime(2030, 3, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def index(repos: Repositories) -> AvailabilityIndex:
    return AvailabilityIndex(repos.reservations, repos.driver_bookings)


class TestVehicleOverlaps:
    """Занятость автомобиля."""

    @pytest.mark.asyncio
    async def test_free_when_empty(self, index: AvailabilityIndex) -> None:
        assert await index.is_free("vehicle", "vehicle-1", START, START + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_overlap_returns_refs(self, index: AvailabilityIndex, repos: Repositories, make_reservation) -> None:
        existing = make_reservation(START, hours=48)
        repos.reservations.preload(existing)

        refs = await index.overlaps("vehicle", "vehicle-1", START + timedelta(hours=24), START + timedelta(hours=72))

        assert [r.booking_id for r in refs] == [existing.id]
        assert refs[0].code == existing.code

    @pytest.mark.asyncio
    async def test_touching_boundaries_free(
        self, index: AvailabilityIndex, repos: Repositories, make_reservation,
    ) -> None:
        repos.reservations.preload(make_reservation(START, hours=24))

        assert await index.is_free("vehicle", "vehicle-1", START + timedelta(hours=24), START + timedelta(hours=30))
        assert await index.is_free("vehicle", "vehicle-1", START - timedelta(hours=5), START)

    @pytest.mark.asyncio
    async def test_cancelled_and_unassigned_ignored(
        self, index: AvailabilityIndex, repos: Repositories, make_reservation,
    ) -> None:
        repos.reservations.preload(
            make_reservation(START, status="cancelled"),
            make_reservation(START, vehicle_id=None),
        )

        assert await index.is_free("vehicle", "vehicle-1", START, START + timedelta(hours=1))

    @pytest.mark.asyncio
    async def test_exclude_id(self, index: AvailabilityIndex, repos: Repositories, make_reservation) -> None:
        existing = make_reservation(START)
        repos.reservations.preload(existing)

        assert await index.is_free("vehicle", "vehicle-1", START, START + timedelta(hours=2), exclude_id=existing.id)

    @pytest.mark.asyncio
    async def test_refs_sorted_by_start(self, index: AvailabilityIndex, repos: Repositories, make_reservation) -> None:
        later = make_reservation(START + timedelta(days=2), hours=24)
        earlier = make_reservation(START, hours=24)
        repos.reservations.preload(later, earlier)

        refs = await index.overlaps("vehicle", "vehicle-1", START, START + timedelta(days=5))

        assert [r.booking_id for r in refs] == [earlier.id, later.id]


class TestDriverOverlaps:
    """Занятость водителя."""

    @pytest.mark.asyncio
    async def test_open_ended_booking_uses_hours(
        self, index: AvailabilityIndex, repos: Repositories, make_driver_booking,
    ) -> None:
        repos.driver_bookings.preload(make_driver_booking(START, hours=3, with_end=False))

        assert not await index.is_free("driver", "driver-1", START + timedelta(hours=2), START + timedelta(hours=4))
        assert await index.is_free("driver", "driver-1", START + timedelta(hours=3), START + timedelta(hours=4))

    @pytest.mark.asyncio
    async def test_declined_not_blocking(
        self, index: AvailabilityIndex, repos: Repositories, make_driver_booking,
    ) -> None:
        repos.driver_bookings.preload(make_driver_booking(START, status="declined_by_driver"))

        assert await index.is_free("driver", "driver-1", START, START + timedelta(hours=1))


class TestValidation:
    """Ошибки входных данных и хранилища."""

    @pytest.mark.asyncio
    async def test_empty_interval(self, index: AvailabilityIndex) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await index.overlaps("vehicle", "vehicle-1", START, START)

        assert exc_info.value.code == "INVALID_INTERVAL"

    @pytest.mark.asyncio
    async def test_unknown_kind(self, index: AvailabilityIndex) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await index.overlaps("boat", "x", START, START + timedelta(hours=1))

        assert exc_info.value.code == "INVALID_RESOURCE_KIND"

    @pytest.mark.asyncio
    async def test_storage_failure_is_transient(self) -> None:
        """Ресурс не считается свободным, если хранилище недоступно."""
        reservations = MagicMock()
        reservations.find_blocking = AsyncMock(side_effect=OSError("connection reset"))
        index = AvailabilityIndex(reservations, MagicMock())

        with pytest.raises(TransientError):
            await index.is_free("vehicle", "vehicle-1", START, START + timedelta(hours=1))


class TestGeneratedCodes:
    """Вставка с генерируемым кодом."""

    @pytest.mark.asyncio
    async def test_retries_on_duplicate(self) -> None:
        attempts: list[str] = []

        async def insert(code: str) -> str:
            attempts.append(code)
            if len(attempts) < 3:
                raise ConflictError("dup", code="DUPLICATE_KEY")
            return code

        result = await insert_with_generated_code(insert, IdGenerator(seed=5), "RSV", START)

        assert len(attempts) == 3
        assert result == attempts[-1]
        assert len(set(attempts)) == 3

    @pytest.mark.asyncio
    async def test_other_conflict_propagates(self) -> None:
        async def insert(code: str) -> str:
            raise ConflictError("busy", code="VEHICLE_TIME_CONFLICT")

        with pytest.raises(ConflictError) as exc_info:
            await insert_with_generated_code(insert, IdGenerator(seed=5), "RSV", START)

        assert exc_info.value.code == "VEHICLE_TIME_CONFLICT"

    @pytest.mark.asyncio
    async def test_gives_up(self) -> None:
        async def insert(code: str) -> str:
            raise ConflictError("dup", code="DUPLICATE_KEY")

        with pytest.raises(ConflictError) as exc_info:
            await insert_with_generated_code(insert, IdGenerator(seed=5), "DRV", START, max_attempts=2)

        assert exc_info.value.code == "CODE_GENERATION_FAILED"
