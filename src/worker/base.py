# src/worker/base.py
"""
Базовый класс для периодических воркеров.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from src.common.constants import TypeMsg
from src.common.errors import DomainError
from src.common.logger import log_error, log_info, log_warning


class BaseWorker(ABC):
    """
    Базовый класс для всех воркеров.
    Выполняет run_once с заданным интервалом до остановки.
    """

    def __init__(self, interval: float) -> None:
        """
        Args:
            interval: Пауза между проходами (секунды)
        """
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Имя воркера."""

    @abstractmethod
    async def run_once(self) -> int:
        """
        Один проход.

        Returns:
            Количество обработанных записей
        """

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Запускает воркер."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        await log_info(f"Воркер {self.name} запущен (интервал {self.interval}с)", type_msg=TypeMsg.INFO)

    async def stop(self) -> None:
        """Останавливает воркер."""
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await log_info(f"Воркер {self.name} остановлен", type_msg=TypeMsg.INFO)

    async def tick(self) -> int:
        """Проход с перехватом ошибок: сбой одного прохода не останавливает воркер."""
        try:
            processed = await self.run_once()
        except DomainError as e:
            await log_warning(f"Воркер {self.name}: {e.code} {e.message}")
            return 0
        except Exception as e:
            await log_error(f"Ошибка в воркере {self.name}: {e}", exc_info=True)
            return 0
        if processed:
            await log_info(f"Воркер {self.name} обработал {processed}", type_msg=TypeMsg.DEBUG)
        return processed

    async def _loop(self) -> None:
        while self._running:
            await self.tick()
            await asyncio.sleep(self.interval)
