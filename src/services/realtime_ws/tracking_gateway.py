# src/services/realtime_ws/tracking_gateway.py
"""
Обработчики событий пространства tracking.

Сессии трекеров (kind=tracker):
- tracker:attach_vehicle {vehicle_id}
- tracker:location_update {latitude, longitude, speed_kmh, heading_deg, accuracy_m, source, at}
- tracker:detach_vehicle {reason}

Сессии пользователей (kind=user):
- vehicle:subscribe / vehicle:unsubscribe {vehicle_id}

Общие: ping
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from pydantic import ValidationError as PydanticValidationError

from src.common.errors import DomainError, ForbiddenError, ValidationError
from src.common.logger import log_error
from src.core.broadcast import vehicle_room
from src.core.tracking.models import LocationUpdateDTO
from src.core.tracking.service import TrackingService
from src.services.realtime_ws.fabric import Session, SessionFabric

ERROR_EVENT = "tracking:error"

KIND_TRACKER = "tracker"
KIND_USER = "user"

Handler = Callable[[Session, dict[str, Any]], Awaitable[None]]


def _vehicle_id(data: dict[str, Any]) -> str:
    value = data.get("vehicle_id") or data.get("vehicleId")
    if not value or not isinstance(value, str):
        raise ValidationError("vehicle_id is required", code="VALIDATION_ERROR")
    return value


def _coordinate(data: dict[str, Any], key: str) -> float:
    value = data.get(key)
    # bool является подклассом int
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} must be a number", code="VALIDATION_ERROR")
    return float(value)


class TrackingGateway:
    """Маршрутизация событий tracking-сессий в сервис трекеров."""

    def __init__(self, fabric: SessionFabric, tracking: TrackingService) -> None:
        self._fabric = fabric
        self._tracking = tracking
        self._tracker_handlers: dict[str, Handler] = {
            "tracker:attach_vehicle": self._attach_vehicle,
            "tracker:location_update": self._location_update,
            "tracker:detach_vehicle": self._detach_vehicle,
        }
        self._user_handlers: dict[str, Handler] = {
            "vehicle:subscribe": self._subscribe,
            "vehicle:unsubscribe": self._unsubscribe,
        }

    async def on_connect(self, session: Session) -> None:
        """Трекер с привязанным автомобилем сразу входит в его комнату."""
        if session.kind != KIND_TRACKER:
            return
        tracker = await self._tracking.get_device_tracker(session.principal_id)
        if tracker.vehicle_id:
            await self._fabric.join(session.session_id, vehicle_room(tracker.vehicle_id))

    async def handle(self, session: Session, event: str, data: dict[str, Any]) -> None:
        """Обрабатывает одно событие сессии, ошибки уходят в tracking:error."""
        try:
            handler = self._resolve(session, event)
            await handler(session, data)
        except DomainError as e:
            await self._fabric.send(session.session_id, ERROR_EVENT, {"code": e.code, "message": e.message})
        except PydanticValidationError as e:
            await self._fabric.send(session.session_id, ERROR_EVENT, {
                "code": "VALIDATION_ERROR",
                "message": str(e.errors(include_url=False)[0].get("msg", "Invalid payload")),
            })
        except Exception as e:
            await log_error(f"Ошибка обработки {event} в сессии {session.session_id}: {e}", exc_info=True)
            await self._fabric.send(session.session_id, ERROR_EVENT, {
                "code": "INTERNAL_ERROR",
                "message": "Failed to process event",
            })

    def _resolve(self, session: Session, event: str) -> Handler:
        if event == "ping":
            return self._ping
        own = self._tracker_handlers if session.kind == KIND_TRACKER else self._user_handlers
        handler = own.get(event)
        if handler is not None:
            return handler
        if event in self._tracker_handlers or event in self._user_handlers:
            raise ForbiddenError(f"Event {event} is not allowed for {session.kind}", code="FORBIDDEN_EVENT")
        raise ValidationError(f"Unknown event: {event}", code="UNKNOWN_EVENT")

    # =========================================================================
    # ТРЕКЕР
    # =========================================================================

    async def _attach_vehicle(self, session: Session, data: dict[str, Any]) -> None:
        vehicle_id = _vehicle_id(data)
        room = vehicle_room(vehicle_id)
        previous_rooms = {r for r in session.rooms if r != room}

        # Входим заранее, чтобы трекер получил собственное vehicle:tracker_attached
        await self._fabric.join(session.session_id, room)
        try:
            tracker = await self._tracking.attach_vehicle(session.principal_id, vehicle_id)
        except Exception:
            await self._fabric.leave(session.session_id, room)
            raise

        for old_room in previous_rooms:
            await self._fabric.leave(session.session_id, old_room)
        await self._fabric.send(session.session_id, "tracker:attached", {
            "tracker_id": tracker.id,
            "vehicle_id": tracker.vehicle_id,
        })

    async def _location_update(self, session: Session, data: dict[str, Any]) -> None:
        payload = dict(data)
        payload["latitude"] = _coordinate(data, "latitude")
        payload["longitude"] = _coordinate(data, "longitude")
        dto = LocationUpdateDTO.model_validate(payload)
        snapshot = await self._tracking.update_location(session.principal_id, dto)
        await self._fabric.send(session.session_id, "tracker:location_ack", {
            "at": snapshot.at.isoformat(),
        })

    async def _detach_vehicle(self, session: Session, data: dict[str, Any]) -> None:
        reason = data.get("reason") if isinstance(data.get("reason"), str) else None
        tracker = await self._tracking.detach_vehicle(session.principal_id, reason)
        for room in list(session.rooms):
            await self._fabric.leave(session.session_id, room)
        await self._fabric.send(session.session_id, "tracker:detached", {"tracker_id": tracker.id})

    # =========================================================================
    # ПОЛЬЗОВАТЕЛЬ
    # =========================================================================

    async def _subscribe(self, session: Session, data: dict[str, Any]) -> None:
        vehicle_id = _vehicle_id(data)
        await self._fabric.join(session.session_id, vehicle_room(vehicle_id))
        await self._fabric.send(session.session_id, "vehicle:subscribed", {"vehicle_id": vehicle_id})

    async def _unsubscribe(self, session: Session, data: dict[str, Any]) -> None:
        vehicle_id = _vehicle_id(data)
        await self._fabric.leave(session.session_id, vehicle_room(vehicle_id))
        await self._fabric.send(session.session_id, "vehicle:unsubscribed", {"vehicle_id": vehicle_id})

    async def _ping(self, session: Session, data: dict[str, Any]) -> None:
        await self._fabric.send(session.session_id, "pong", {})
