# tests/worker/test_base.py
"""
Unit тесты для базового класса воркера (src/worker/base.py).
"""

from __future__ import annotations

import asyncio

import pytest

from src.common.errors import GatewayError
from src.worker.base import BaseWorker


class CountingWorker(BaseWorker):
    """Воркер, считающий проходы."""

    def __init__(self, interval: float = 0.01, results: list | None = None) -> None:
        super().__init__(interval)
        self.calls = 0
        self._results = list(results or [])
        self.ran = asyncio.Event()

    @property
    def name(self) -> str:
        return "counting"

    async def run_once(self) -> int:
        self.calls += 1
        self.ran.set()
        if self._results:
            result = self._results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result
        return 0


class TestTick:
    """Один проход воркера."""

    @pytest.mark.asyncio
    async def test_returns_processed(self) -> None:
        worker = CountingWorker(results=[3])

        assert await worker.tick() == 3

    @pytest.mark.asyncio
    async def test_domain_error_swallowed(self) -> None:
        worker = CountingWorker(results=[GatewayError("down")])

        assert await worker.tick() == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_swallowed(self) -> None:
        worker = CountingWorker(results=[RuntimeError("boom"), 2])

        assert await worker.tick() == 0
        assert await worker.tick() == 2


class TestLifecycle:
    """Запуск и остановка."""

    @pytest.mark.asyncio
    async def test_start_runs_loop(self) -> None:
        worker = CountingWorker()

        await worker.start()
        await asyncio.wait_for(worker.ran.wait(), timeout=1)

        assert worker.is_running is True
        await worker.stop()
        assert worker.is_running is False

    @pytest.mark.asyncio
    async def test_loop_survives_failures(self) -> None:
        worker = CountingWorker(results=[RuntimeError("first"), GatewayError("second")])

        await worker.start()
        for _ in range(100):
            if worker.calls >= 3:
                break
            await asyncio.sleep(0.01)
        await worker.stop()

        assert worker.calls >= 3

    @pytest.mark.asyncio
    async def test_start_twice_single_task(self) -> None:
        worker = CountingWorker()

        await worker.start()
        task = worker._task
        await worker.start()

        assert worker._task is task
        await worker.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self) -> None:
        worker = CountingWorker()

        await worker.stop()

        assert worker.is_running is False
