# src/core/tracking/__init__.py
"""
Домен GPS-трекеров автомобилей.
"""

from src.core.tracking.models import LocationSnapshot, LocationUpdateDTO, VehicleTracker

__all__ = ["LocationSnapshot", "LocationUpdateDTO", "VehicleTracker"]
