# src/core/users/__init__.py
"""
Пользователи, профили водителей и автомобили.
Учётные записи ведёт внешний сервис, здесь только чтение и проверка ролей.
"""

from src.core.users.models import DriverProfile, User, Vehicle, ensure_role, ensure_staff

__all__ = [
    "User",
    "DriverProfile",
    "Vehicle",
    "ensure_role",
    "ensure_staff",
]
