# tests/core/test_tracking_service.py
"""
Тесты сервиса GPS-трекеров.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError as PydanticValidationError

from src.common.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from src.core.tracking.models import (
    LocationUpdateDTO,
    TrackerCreateDTO,
    TrackerFilter,
    TrackerUpdateDTO,
)
from src.core.tracking.service import (
    EVENT_LOCATION_UPDATE,
    EVENT_TRACKER_ATTACHED,
    EVENT_TRACKER_DETACHED,
    TrackingService,
)
from src.core.users.models import User, Vehicle
from src.infra.security import TokenCodec
from src.shared.models.common import PaginationParams
from tests.conftest import NOW


@pytest.fixture
def broadcaster() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def service(repos: Any, tokens: TokenCodec, clock: Any, broadcaster: AsyncMock) -> TrackingService:
    return TrackingService(repos, tokens, clock, broadcaster=broadcaster)


@pytest.fixture
async def tracker(service: TrackingService, manager: User) -> Any:
    return await service.create_tracker(manager, TrackerCreateDTO(device_id=" gps-001 ", label="Front"))


class TestAdministration:
    """Управление трекерами."""

    @pytest.mark.asyncio
    async def test_device_id_normalized(self, tracker: Any) -> None:
        assert tracker.device_id == "GPS-001"
        assert tracker.status == "inactive"

    @pytest.mark.asyncio
    async def test_duplicate_device(self, service: TrackingService, manager: User, tracker: Any) -> None:
        with pytest.raises(ConflictError) as exc_info:
            await service.create_tracker(manager, TrackerCreateDTO(device_id="GPS-001"))

        assert exc_info.value.code == "TRACKER_DEVICE_DUPLICATE"

    @pytest.mark.asyncio
    async def test_agent_forbidden(self, service: TrackingService, agent: User) -> None:
        with pytest.raises(ForbiddenError) as exc_info:
            await service.create_tracker(agent, TrackerCreateDTO(device_id="GPS-002"))

        assert exc_info.value.code == "TRACKER_FORBIDDEN"

    @pytest.mark.asyncio
    async def test_update_and_list(self, service: TrackingService, admin: User, tracker: Any) -> None:
        updated = await service.update_tracker(admin, tracker.id, TrackerUpdateDTO(label="Rear"))
        page = await service.list_trackers(admin, TrackerFilter(status="inactive"), PaginationParams())

        assert updated.label == "Rear"
        assert [t.id for t in page.items] == [tracker.id]

    @pytest.mark.asyncio
    async def test_delete(self, service: TrackingService, manager: User, tracker: Any) -> None:
        await service.delete_tracker(manager, tracker.id)

        with pytest.raises(NotFoundError):
            await service.get_tracker(manager, tracker.id)


class TestDeviceLogin:
    """Вход устройства."""

    @pytest.mark.asyncio
    async def test_returns_device_token(
        self, service: TrackingService, tokens: TokenCodec, tracker: Any,
    ) -> None:
        result = await service.device_login("gps-001", ip="10.0.0.5", user_agent="tracker/1.0")

        claims = tokens.decode_device_token(result["token"])
        assert claims == {"tracker_id": tracker.id, "device_id": "GPS-001"}
        assert result["tracker"].last_seen_ip == "10.0.0.5"
        assert result["tracker"].last_seen_at == NOW

    @pytest.mark.asyncio
    async def test_unknown_device(self, service: TrackingService) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await service.device_login("nope")

        assert exc_info.value.code == "TRACKER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_blank_device(self, service: TrackingService) -> None:
        with pytest.raises(ValidationError):
            await service.device_login("  ")

    @pytest.mark.asyncio
    async def test_maintenance_rejected(self, service: TrackingService, manager: User, tracker: Any) -> None:
        await service.update_tracker(manager, tracker.id, TrackerUpdateDTO(status="maintenance"))

        with pytest.raises(ForbiddenError) as exc_info:
            await service.device_login("GPS-001")

        assert exc_info.value.code == "TRACKER_MAINTENANCE"


class TestAttachment:
    """Привязка к автомобилю."""

    @pytest.mark.asyncio
    async def test_attach_copies_branch(
        self, service: TrackingService, tracker: Any, vehicle: Vehicle, broadcaster: AsyncMock,
    ) -> None:
        attached = await service.attach_vehicle(tracker.id, vehicle.id)

        assert attached.vehicle_id == vehicle.id
        assert attached.branch_id == "branch-1"
        assert attached.status == "active"
        assert attached.attached_at == NOW
        broadcaster.broadcast.assert_awaited_once()
        assert broadcaster.broadcast.call_args[0][:2] == ("vehicle:vehicle-1", EVENT_TRACKER_ATTACHED)

    @pytest.mark.asyncio
    async def test_retired_vehicle(self, service: TrackingService, tracker: Any, repos: Any) -> None:
        repos.vehicles.preload(Vehicle(id="old", vehicle_model_id="m", status="retired"))

        with pytest.raises(ValidationError) as exc_info:
            await service.attach_vehicle(tracker.id, "old")

        assert exc_info.value.code == "VEHICLE_RETIRED"

    @pytest.mark.asyncio
    async def test_reattach_notifies_previous_room(
        self, service: TrackingService, tracker: Any, vehicle: Vehicle, repos: Any, broadcaster: AsyncMock,
    ) -> None:
        repos.vehicles.preload(Vehicle(id="vehicle-2", vehicle_model_id="m", branch_id="branch-2"))
        await service.attach_vehicle(tracker.id, vehicle.id)
        broadcaster.broadcast.reset_mock()

        await service.attach_vehicle(tracker.id, "vehicle-2")

        calls = [c[0][:2] for c in broadcaster.broadcast.call_args_list]
        assert calls == [
            ("vehicle:vehicle-1", EVENT_TRACKER_DETACHED),
            ("vehicle:vehicle-2", EVENT_TRACKER_ATTACHED),
        ]

    @pytest.mark.asyncio
    async def test_detach(
        self, service: TrackingService, manager: User, tracker: Any, vehicle: Vehicle, broadcaster: AsyncMock,
    ) -> None:
        await service.attach_vehicle(tracker.id, vehicle.id)

        detached = await service.detach(manager, tracker.id, "battery swap")

        assert detached.vehicle_id is None
        assert detached.status == "inactive"
        assert detached.detach_reason == "battery swap"
        assert broadcaster.broadcast.call_args[0][1] == EVENT_TRACKER_DETACHED


class TestLocation:
    """Приём координат."""

    @pytest.mark.asyncio
    async def test_update_broadcasts_to_vehicle_room(
        self, service: TrackingService, tracker: Any, vehicle: Vehicle, broadcaster: AsyncMock,
    ) -> None:
        await service.attach_vehicle(tracker.id, vehicle.id)
        broadcaster.broadcast.reset_mock()

        snapshot = await service.update_location(tracker.id, LocationUpdateDTO(latitude=-17.83, longitude=31.05))

        assert snapshot.at == NOW
        room, event, data = broadcaster.broadcast.call_args[0][:3]
        assert room == "vehicle:vehicle-1"
        assert event == EVENT_LOCATION_UPDATE
        assert data["location"]["latitude"] == -17.83

        last = await service.last_location(vehicle.id)
        assert last["tracker_id"] == tracker.id
        assert last["location"].longitude == 31.05

    @pytest.mark.asyncio
    async def test_unattached_tracker_not_broadcast(
        self, service: TrackingService, tracker: Any, broadcaster: AsyncMock,
    ) -> None:
        await service.update_location(
            tracker.id,
            LocationUpdateDTO(latitude=1.0, longitude=2.0, at=NOW - timedelta(seconds=30)),
        )

        broadcaster.broadcast.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_out_of_range_rejected(self, service: TrackingService, tracker: Any) -> None:
        with pytest.raises(PydanticValidationError):
            await service.update_location(tracker.id, LocationUpdateDTO(latitude=95.0, longitude=0.0))

    @pytest.mark.asyncio
    async def test_last_location_requires_tracker(self, service: TrackingService, vehicle: Vehicle) -> None:
        with pytest.raises(NotFoundError) as exc_info:
            await service.last_location(vehicle.id)

        assert exc_info.value.code == "TRACKER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_last_location_before_first_report(
        self, service: TrackingService, tracker: Any, vehicle: Vehicle,
    ) -> None:
        await service.attach_vehicle(tracker.id, vehicle.id)

        with pytest.raises(NotFoundError) as exc_info:
            await service.last_location(vehicle.id)

        assert exc_info.value.code == "LOCATION_NOT_FOUND"
