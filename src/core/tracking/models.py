# src/core/tracking/models.py
"""
Модели GPS-трекеров.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from src.common.constants import LocationSource, TrackerStatus
from src.shared.models.common import Document


class LocationSnapshot(BaseModel):
    """Последняя известная позиция."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    speed_kmh: Optional[float] = Field(None, ge=0)
    heading_deg: Optional[float] = Field(None, ge=0, le=360)
    accuracy_m: Optional[float] = Field(None, ge=0)
    source: LocationSource = LocationSource.GPS
    at: datetime


class TrackerSettings(BaseModel):
    reporting_interval_sec: int = Field(15, ge=1)
    allow_background_tracking: bool = True


class VehicleTracker(Document):
    """Физическое устройство слежения."""

    device_id: str = Field(..., description="Уникальный ID устройства")
    label: str = ""
    notes: str = ""
    vehicle_id: Optional[str] = None
    branch_id: Optional[str] = None
    status: TrackerStatus = TrackerStatus.INACTIVE
    last_seen_at: Optional[datetime] = None
    last_seen_ip: str = ""
    last_seen_user_agent: str = ""
    last_location: Optional[LocationSnapshot] = None
    settings: TrackerSettings = Field(default_factory=TrackerSettings)
    created_by: Optional[str] = None
    attached_at: Optional[datetime] = None
    detached_at: Optional[datetime] = None
    detach_reason: Optional[str] = None

    @field_validator("device_id")
    @classmethod
    def upper_device(cls, v: str) -> str:
        value = v.strip().upper()
        if not value:
            raise ValueError("device_id is required")
        return value


class TrackerCreateDTO(BaseModel):
    device_id: str = Field(..., min_length=1)
    label: str = ""
    notes: str = ""
    status: TrackerStatus = TrackerStatus.INACTIVE
    settings: TrackerSettings = Field(default_factory=TrackerSettings)


class TrackerUpdateDTO(BaseModel):
    label: Optional[str] = None
    notes: Optional[str] = None
    status: Optional[TrackerStatus] = None
    settings: Optional[TrackerSettings] = None


class TrackerFilter(BaseModel):
    status: Optional[TrackerStatus] = None
    vehicle_id: Optional[str] = None
    branch_id: Optional[str] = None


class LocationUpdateDTO(BaseModel):
    """Входящее обновление координат (at по умолчанию - время сервера)."""
    latitude: float
    longitude: float
    speed_kmh: Optional[float] = None
    heading_deg: Optional[float] = None
    accuracy_m: Optional[float] = None
    source: LocationSource = LocationSource.GPS
    at: Optional[datetime] = None
