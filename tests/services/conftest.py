# tests/services/conftest.py
"""
Фикстуры real-time сессий.
"""

from __future__ import annotations

from typing import Any

import pytest

from src.services.api.dependencies import ServiceContainer
from src.services.realtime_ws.fabric import SessionFabric


@pytest.fixture
async def fabric(container: ServiceContainer) -> Any:
    """Фабрика контейнера; сессии закрываются после теста."""
    yield container.fabric
    await container.fabric.close_all()


@pytest.fixture
async def standalone_fabric() -> Any:
    item = SessionFabric(queue_size=8)
    yield item
    await item.close_all()
