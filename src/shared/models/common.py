# src/shared/models/common.py
"""
Общие модели для всех модулей.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Generic, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


T = TypeVar("T")

CENT = Decimal("0.01")


def money(value: Any) -> Decimal:
    """Приводит значение к Decimal с двумя знаками (округление half-up)."""
    if isinstance(value, float):
        value = repr(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    """
    Базовый документ хранилища.

    version увеличивается при каждом изменении и используется
    в compare-and-set вместе с ожидаемым статусом.
    """
    model_config = ConfigDict(from_attributes=True, use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=lambda: uuid4().hex, description="Непрозрачный идентификатор")
    version: int = Field(0, ge=0, description="Номер версии документа")
    created_at: datetime = Field(default_factory=utcnow, description="Время создания")
    updated_at: datetime = Field(default_factory=utcnow, description="Время обновления")


class PaginationParams(BaseModel):
    """Параметры пагинации."""

    page: int = Field(default=1, ge=1, description="Номер страницы")
    page_size: int = Field(default=20, ge=1, le=100, description="Размер страницы")

    @property
    def offset(self) -> int:
        """Смещение для выборки."""
        return (self.page - 1) * self.page_size

    @property
    def limit(self) -> int:
        return self.page_size


class Page(BaseModel, Generic[T]):
    """Страница результатов."""

    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return (self.total + self.page_size - 1) // self.page_size if self.page_size else 0

    def pagination(self) -> dict[str, int]:
        return {
            "page": self.page,
            "page_size": self.page_size,
            "total": self.total,
            "total_pages": self.total_pages,
        }

    @classmethod
    def slice(cls, items: list[T], pagination: PaginationParams) -> "Page[T]":
        """Страница из полного отсортированного списка."""
        return cls(
            items=items[pagination.offset:pagination.offset + pagination.limit],
            total=len(items),
            page=pagination.page,
            page_size=pagination.page_size,
        )


class HealthStatus(BaseModel):
    """Статус здоровья сервиса."""

    service: str
    status: str = "healthy"  # healthy, degraded, unhealthy
    version: str | None = None
    dependencies: dict[str, str] = Field(default_factory=dict)
