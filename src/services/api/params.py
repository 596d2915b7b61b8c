# src/services/api/params.py
"""
Общие параметры запросов.
"""

from fastapi import Query

from src.shared.models.common import PaginationParams


def pagination_params(
    page: int = Query(1, ge=1, description="Номер страницы"),
    page_size: int = Query(20, ge=1, le=100, description="Размер страницы"),
) -> PaginationParams:
    return PaginationParams(page=page, page_size=page_size)
