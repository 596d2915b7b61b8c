# src/core/users/models.py
"""
Модели пользователей, профилей водителей и единиц автопарка.

Для ядра это справочные данные только для чтения:
CRUD выполняется внешними модулями.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import Field, field_validator

from src.common.constants import (
    STAFF_ROLES,
    Currency,
    DriverProfileStatus,
    UserRole,
    UserStatus,
    VehicleStatus,
)
from src.common.errors import ForbiddenError
from src.shared.models.common import Document


class User(Document):
    """Модель пользователя."""

    email: str = Field(..., description="Email (уникален)")
    full_name: str = Field("", description="Полное имя")
    phone: Optional[str] = Field(None, description="Номер телефона")
    roles: list[UserRole] = Field(default_factory=lambda: [UserRole.CUSTOMER], description="Роли")
    status: UserStatus = Field(UserStatus.PENDING, description="Статус учётной записи")

    @field_validator("roles")
    @classmethod
    def at_least_one_role(cls, v: list[UserRole]) -> list[UserRole]:
        if not v:
            raise ValueError("user must have at least one role")
        return v

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return v.strip().lower()

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE

    @property
    def is_staff(self) -> bool:
        return any(role in STAFF_ROLES for role in self.roles)

    def has_role(self, *roles: UserRole | str) -> bool:
        wanted = {r.value if isinstance(r, UserRole) else r for r in roles}
        return any(role in wanted for role in self.roles)


class DriverProfile(Document):
    """Профиль водителя (один на пользователя)."""

    user_id: str = Field(..., description="ID пользователя")
    status: DriverProfileStatus = Field(DriverProfileStatus.PENDING, description="Статус проверки")
    is_available: bool = Field(True, description="Принимает ли заказы")
    hourly_rate: Decimal = Field(Decimal("0"), ge=0, description="Ставка в час")
    currency: Currency = Field(Currency.USD, description="Валюта ставки")

    @property
    def can_be_requested(self) -> bool:
        return self.status == DriverProfileStatus.APPROVED and self.is_available


class Vehicle(Document):
    """Единица автопарка."""

    vehicle_model_id: str = Field(..., description="ID модели автомобиля")
    branch_id: Optional[str] = Field(None, description="ID филиала")
    plate_number: str = Field("", description="Госномер")
    status: VehicleStatus = Field(VehicleStatus.AVAILABLE, description="Статус")


def ensure_role(user: User, *roles: UserRole | str, code: str = "FORBIDDEN") -> None:
    """ForbiddenError, если у пользователя нет ни одной из ролей."""
    if not user.has_role(*roles):
        wanted = ", ".join(r.value if isinstance(r, UserRole) else r for r in roles)
        raise ForbiddenError(f"Requires one of roles: {wanted}", code=code)


def ensure_staff(user: User, code: str = "FORBIDDEN") -> None:
    ensure_role(user, *STAFF_ROLES, code=code)
