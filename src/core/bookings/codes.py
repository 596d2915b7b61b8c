# src/core/bookings/codes.py
"""
Генерация человекочитаемых кодов броней с повтором при коллизии.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import TypeVar

from src.common.clock import IdGenerator
from src.common.constants import TypeMsg
from src.common.errors import ConflictError
from src.common.logger import log_info

T = TypeVar("T")

RESERVATION_CODE_PREFIX = "RSV"
DRIVER_BOOKING_CODE_PREFIX = "DRV"


async def insert_with_generated_code(
    insert: Callable[[str], Awaitable[T]],
    ids: IdGenerator,
    prefix: str,
    at: datetime,
    max_attempts: int = 5,
) -> T:
    """
    Вставляет документ с кодом PREFIX-YYYYMMDD-NNNNNN.

    insert получает код и выполняет вставку. Дубликат ключа (DUPLICATE_KEY)
    приводит к новой попытке с другим суффиксом, остальные конфликты
    (например, пересечение интервалов) пробрасываются сразу.

    Raises:
        ConflictError: CODE_GENERATION_FAILED после max_attempts коллизий
    """
    for attempt in range(1, max_attempts + 1):
        code = ids.booking_code(prefix, at)
        try:
            return await insert(code)
        except ConflictError as e:
            if e.code != "DUPLICATE_KEY":
                raise
            await log_info(
                f"Коллизия кода {code} (попытка {attempt}/{max_attempts})",
                type_msg=TypeMsg.WARNING,
            )

    raise ConflictError(
        f"Could not generate a unique {prefix} code",
        code="CODE_GENERATION_FAILED",
    )
