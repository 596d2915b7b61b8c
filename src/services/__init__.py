# src/services/__init__.py
"""
Внешние поверхности приложения.

- api: HTTP API (FastAPI) поверх доменных сервисов
- realtime_ws: WebSocket сессии чата и трекинга
"""

__all__: list[str] = []
