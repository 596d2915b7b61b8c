# src/common/clock.py
"""
Часы и генерация идентификаторов.

Единственные глобальные изменяемые объекты, кроме конфигурации.
Сервисы получают их через конструктор, тесты подменяют FixedClock.
"""

from __future__ import annotations

import random
import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol
from uuid import uuid4


class Clock(Protocol):
    """Источник текущего времени (UTC, timezone-aware)."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """
    Системные часы.

    Гарантирует неубывание: если системное время откатилось назад,
    возвращается последнее выданное значение.
    """

    def __init__(self) -> None:
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        current = datetime.now(timezone.utc)
        with self._lock:
            if self._last is not None and current < self._last:
                current = self._last
            self._last = current
        return current


class FixedClock:
    """Управляемые часы для тестов и воспроизводимых сценариев."""

    def __init__(self, start: datetime) -> None:
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        self._now = value

    def advance(self, **kwargs: float) -> datetime:
        """Сдвигает часы вперёд (аргументы как у timedelta)."""
        self._now = self._now + timedelta(**kwargs)
        return self._now


def ensure_utc(value: datetime) -> datetime:
    """Приводит datetime к UTC; naive значения считаются UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class IdGenerator:
    """
    Генератор непрозрачных идентификаторов и человекочитаемых кодов.

    Коды имеют вид PREFIX-YYYYMMDD-NNNNNN. Суффикс монотонно растёт
    в пределах процесса (по модулю 10^6), стартовое значение случайно,
    чтобы разные процессы реже сталкивались. Уникальность всё равно
    обеспечивает хранилище, вызывающий код повторяет попытку при коллизии.
    """

    SUFFIX_MODULO = 1_000_000

    def __init__(self, seed: int | None = None) -> None:
        rnd = random.Random(seed)
        self._sequence = rnd.randrange(self.SUFFIX_MODULO)
        self._lock = threading.Lock()

    def new_id(self) -> str:
        return uuid4().hex

    def next_suffix(self) -> int:
        with self._lock:
            self._sequence = (self._sequence + 1) % self.SUFFIX_MODULO
            return self._sequence

    def booking_code(self, prefix: str, at: datetime) -> str:
        return f"{prefix}-{at:%Y%m%d}-{self.next_suffix():06d}"
