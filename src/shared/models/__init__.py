# src/shared/models/__init__.py
"""
Общие Pydantic-модели.
"""

from src.shared.models.common import (
    Document,
    HealthStatus,
    Page,
    PaginationParams,
    money,
)

__all__ = [
    "Document",
    "HealthStatus",
    "Page",
    "PaginationParams",
    "money",
]
