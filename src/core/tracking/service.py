# src/core/tracking/service.py
"""
Сервис GPS-трекеров автомобилей.

Администрирование трекеров, вход устройств, привязка к автомобилю
и приём координат. Обновления рассылаются в комнату vehicle:<id>.
"""

from __future__ import annotations

from typing import Any, Optional

from src.common.clock import Clock, ensure_utc
from src.common.constants import TrackerStatus, TypeMsg, UserRole, VehicleStatus
from src.common.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from src.common.logger import log_debug, log_info
from src.core.broadcast import Broadcaster, NullBroadcaster, vehicle_room
from src.core.repositories.interfaces import Repositories
from src.core.tracking.models import (
    LocationSnapshot,
    LocationUpdateDTO,
    TrackerCreateDTO,
    TrackerFilter,
    TrackerUpdateDTO,
    VehicleTracker,
)
from src.core.users.models import User, ensure_role
from src.infra.security import TokenCodec
from src.shared.models.common import Page, PaginationParams

EVENT_TRACKER_ATTACHED = "vehicle:tracker_attached"
EVENT_TRACKER_DETACHED = "vehicle:tracker_detached"
EVENT_LOCATION_UPDATE = "vehicle:location_update"

# Трекеры, чья последняя позиция считается позицией автомобиля
LOCATABLE_STATUSES = {TrackerStatus.ACTIVE.value, TrackerStatus.MAINTENANCE.value}


class TrackingService:
    """Трекеры и их координаты."""

    def __init__(
        self,
        repos: Repositories,
        tokens: TokenCodec,
        clock: Clock,
        broadcaster: Broadcaster | None = None,
    ) -> None:
        self._repos = repos
        self._tokens = tokens
        self._clock = clock
        self._broadcaster: Broadcaster = broadcaster or NullBroadcaster()

    def set_broadcaster(self, broadcaster: Broadcaster) -> None:
        self._broadcaster = broadcaster

    # =========================================================================
    # АДМИНИСТРИРОВАНИЕ (manager/admin)
    # =========================================================================

    async def create_tracker(self, actor: User, dto: TrackerCreateDTO) -> VehicleTracker:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN, code="TRACKER_FORBIDDEN")
        now = self._clock.now()
        try:
            tracker = await self._repos.trackers.insert(VehicleTracker(
                **dto.model_dump(),
                created_by=actor.id,
                created_at=now,
                updated_at=now,
            ))
        except ConflictError as e:
            raise ConflictError(
                f"Tracker with device_id {dto.device_id.strip().upper()} already exists",
                code="TRACKER_DEVICE_DUPLICATE",
            ) from e
        await log_info(f"Трекер {tracker.device_id} создан ({actor.id})", type_msg=TypeMsg.INFO)
        return tracker

    async def list_trackers(
        self,
        actor: User,
        flt: TrackerFilter,
        pagination: PaginationParams,
    ) -> Page[VehicleTracker]:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN, code="TRACKER_FORBIDDEN")
        return Page[VehicleTracker].slice(await self._repos.trackers.list(flt), pagination)

    async def get_tracker(self, actor: User, tracker_id: str) -> VehicleTracker:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN, code="TRACKER_FORBIDDEN")
        return await self._load(tracker_id)

    async def update_tracker(self, actor: User, tracker_id: str, dto: TrackerUpdateDTO) -> VehicleTracker:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN, code="TRACKER_FORBIDDEN")
        await self._load(tracker_id)
        changes = dto.model_dump(exclude_unset=True, exclude_none=True)
        return await self._update(tracker_id, changes)

    async def delete_tracker(self, actor: User, tracker_id: str) -> None:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN, code="TRACKER_FORBIDDEN")
        tracker = await self._load(tracker_id)
        await self._repos.trackers.delete(tracker.id)
        await log_info(f"Трекер {tracker.device_id} удалён ({actor.id})", type_msg=TypeMsg.INFO)

    async def attach(self, actor: User, tracker_id: str, vehicle_id: str) -> VehicleTracker:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN, code="TRACKER_FORBIDDEN")
        return await self.attach_vehicle(tracker_id, vehicle_id)

    async def detach(self, actor: User, tracker_id: str, reason: Optional[str] = None) -> VehicleTracker:
        ensure_role(actor, UserRole.MANAGER, UserRole.ADMIN, code="TRACKER_FORBIDDEN")
        return await self.detach_vehicle(tracker_id, reason or f"detached by {actor.id}")

    # =========================================================================
    # УСТРОЙСТВО
    # =========================================================================

    async def device_login(
        self,
        device_id: str,
        ip: str = "",
        user_agent: str = "",
    ) -> dict[str, Any]:
        """
        Обмен device_id на токен устройства.

        Raises:
            NotFoundError: TRACKER_NOT_FOUND
            ForbiddenError: TRACKER_MAINTENANCE
        """
        if not device_id or not device_id.strip():
            raise ValidationError("device_id is required", code="DEVICE_ID_REQUIRED")
        tracker = await self._repos.trackers.get_by_device(device_id)
        if tracker is None:
            raise NotFoundError("Tracker not registered", code="TRACKER_NOT_FOUND")
        if tracker.status == TrackerStatus.MAINTENANCE:
            raise ForbiddenError("Tracker is under maintenance", code="TRACKER_MAINTENANCE")

        tracker = await self._update(tracker.id, self._seen(ip, user_agent))
        token = self._tokens.create_device_token(tracker.id, tracker.device_id, now=self._clock.now())
        await log_info(f"Вход трекера {tracker.device_id}", type_msg=TypeMsg.DEBUG)
        return {"token": token, "tracker": tracker}

    async def attach_vehicle(
        self,
        tracker_id: str,
        vehicle_id: str,
        ip: str = "",
        user_agent: str = "",
    ) -> VehicleTracker:
        """Привязка к автомобилю: статус active, branch_id берётся у автомобиля."""
        if not vehicle_id:
            raise ValidationError("vehicle_id is required", code="VALIDATION_ERROR")
        tracker = await self._load(tracker_id)
        vehicle = await self._repos.vehicles.get(vehicle_id)
        if vehicle is None:
            raise NotFoundError("Vehicle not found", code="VEHICLE_NOT_FOUND")
        if vehicle.status == VehicleStatus.RETIRED:
            raise ValidationError("Retired vehicles cannot receive trackers", code="VEHICLE_RETIRED")

        previous_vehicle = tracker.vehicle_id
        updated = await self._update(tracker.id, {
            "vehicle_id": vehicle.id,
            "branch_id": vehicle.branch_id,
            "status": TrackerStatus.ACTIVE.value,
            "attached_at": self._clock.now(),
            "detached_at": None,
            "detach_reason": None,
            **self._seen(ip, user_agent),
        })
        if previous_vehicle and previous_vehicle != vehicle.id:
            await self._broadcast_detached(previous_vehicle, updated, "re-attached")

        await log_info(f"Трекер {updated.device_id} привязан к автомобилю {vehicle.id}", type_msg=TypeMsg.INFO)
        await self._broadcaster.broadcast(
            vehicle_room(vehicle.id),
            EVENT_TRACKER_ATTACHED,
            {"vehicle_id": vehicle.id, "tracker_id": updated.id},
        )
        return updated

    async def detach_vehicle(
        self,
        tracker_id: str,
        reason: Optional[str] = None,
        ip: str = "",
        user_agent: str = "",
    ) -> VehicleTracker:
        tracker = await self._load(tracker_id)
        old_vehicle = tracker.vehicle_id
        updated = await self._update(tracker.id, {
            "vehicle_id": None,
            "branch_id": None,
            "status": TrackerStatus.INACTIVE.value,
            "detached_at": self._clock.now(),
            "detach_reason": reason or "detached",
            **self._seen(ip, user_agent),
        })
        if old_vehicle:
            await log_info(f"Трекер {updated.device_id} отвязан от автомобиля {old_vehicle}", type_msg=TypeMsg.INFO)
            await self._broadcast_detached(old_vehicle, updated, updated.detach_reason)
        return updated

    async def update_location(
        self,
        tracker_id: str,
        dto: LocationUpdateDTO,
        ip: str = "",
        user_agent: str = "",
    ) -> LocationSnapshot:
        """
        Сохраняет координаты и рассылает их в комнату автомобиля.

        Без привязанного автомобиля позиция сохраняется, но не рассылается.
        """
        now = self._clock.now()
        snapshot = LocationSnapshot(
            latitude=dto.latitude,
            longitude=dto.longitude,
            speed_kmh=dto.speed_kmh,
            heading_deg=dto.heading_deg,
            accuracy_m=dto.accuracy_m,
            source=dto.source,
            at=ensure_utc(dto.at) if dto.at else now,
        )
        tracker = await self._update(tracker_id, {
            "last_location": snapshot.model_dump(),
            **self._seen(ip, user_agent),
        })
        await log_debug(f"Координаты трекера {tracker.device_id}: {snapshot.latitude}, {snapshot.longitude}")

        if tracker.vehicle_id:
            await self._broadcaster.broadcast(
                vehicle_room(tracker.vehicle_id),
                EVENT_LOCATION_UPDATE,
                {
                    "vehicle_id": tracker.vehicle_id,
                    "tracker_id": tracker.id,
                    "location": snapshot.model_dump(mode="json"),
                    "updated_at": now.isoformat(),
                },
            )
        return snapshot

    async def last_location(self, vehicle_id: str) -> dict[str, Any]:
        """Последняя известная позиция автомобиля."""
        tracker = await self._repos.trackers.find_by_vehicle(vehicle_id, LOCATABLE_STATUSES)
        if tracker is None:
            raise NotFoundError("No active tracker for this vehicle", code="TRACKER_NOT_FOUND")
        if tracker.last_location is None:
            raise NotFoundError("No location reported yet", code="LOCATION_NOT_FOUND")
        return {
            "vehicle_id": vehicle_id,
            "tracker_id": tracker.id,
            "location": tracker.last_location,
            "last_seen_at": tracker.last_seen_at,
        }

    async def get_device_tracker(self, tracker_id: str) -> VehicleTracker:
        """Трекер по id из токена устройства."""
        return await self._load(tracker_id)

    # =========================================================================
    # ВСПОМОГАТЕЛЬНЫЕ
    # =========================================================================

    async def _load(self, tracker_id: str) -> VehicleTracker:
        tracker = await self._repos.trackers.get(tracker_id)
        if tracker is None:
            raise NotFoundError("Tracker not found", code="TRACKER_NOT_FOUND")
        return tracker

    async def _update(self, tracker_id: str, changes: dict[str, Any]) -> VehicleTracker:
        updated = await self._repos.trackers.update(tracker_id, changes)
        if updated is None:
            raise NotFoundError("Tracker not found", code="TRACKER_NOT_FOUND")
        return updated

    def _seen(self, ip: str, user_agent: str) -> dict[str, Any]:
        changes: dict[str, Any] = {"last_seen_at": self._clock.now()}
        if ip:
            changes["last_seen_ip"] = ip
        if user_agent:
            changes["last_seen_user_agent"] = user_agent
        return changes

    async def _broadcast_detached(self, vehicle_id: str, tracker: VehicleTracker, reason: Optional[str]) -> None:
        await self._broadcaster.broadcast(
            vehicle_room(vehicle_id),
            EVENT_TRACKER_DETACHED,
            {"vehicle_id": vehicle_id, "tracker_id": tracker.id, "reason": reason},
        )
