# src/services/api/app.py
"""
FastAPI приложение: HTTP API и WebSocket сессии в одном процессе.

REST endpoints (под API_PREFIX):
- /reservations, /driver-bookings, /payments, /chats,
  /vehicle-trackers, /notifications

WebSocket endpoints:
- /ws/chat, /ws/tracking

Служебные:
- GET /health, GET /ws/stats
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from src.common.constants import TypeMsg
from src.common.logger import log_info, request_id_var
from src.config.loader import Settings, get_settings
from src.services.api.dependencies import (
    ServiceContainer,
    cleanup_dependencies,
    get_container,
    init_dependencies,
)
from src.services.api.responses import register_exception_handlers
from src.services.api.routes import chats, driver_bookings, notifications, payments, reservations, trackers
from src.services.realtime_ws import routes as realtime_routes
from src.shared.models.common import HealthStatus

SERVICE_NAME = "car_rental_api"
REQUEST_ID_HEADER = "X-Request-ID"


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Создаёт приложение.

    Args:
        container: Готовый граф сервисов (тесты); None - собрать по настройкам при старте
        settings: Настройки (по умолчанию из config.json и окружения)
    """
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        from src.services.bootstrap import close_runtime, init_runtime

        runtime = container or await init_runtime(settings)
        init_dependencies(runtime)
        if runtime.subscriber is not None:
            await runtime.subscriber.start()
        await log_info(f"{SERVICE_NAME} запущен", type_msg=TypeMsg.INFO)

        yield

        # Shutdown
        await cleanup_dependencies()
        if container is None:
            await close_runtime(runtime)
        await log_info(f"{SERVICE_NAME} остановлен", type_msg=TypeMsg.INFO)

    app = FastAPI(
        title="Car Rental API",
        description="Бронирования автомобилей и водителей, платежи, чат и GPS-трекинг.",
        version=settings.system.VERSION,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        # request_id попадает во все записи лога этого запроса
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex[:16]
        ctx_token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(ctx_token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


    prefix = settings.api.API_PREFIX
    for module in (reservations, driver_bookings, payments, chats, trackers, notifications):
        app.include_router(module.router, prefix=prefix)
    app.include_router(realtime_routes.router)

    @app.get("/health", response_model=HealthStatus, tags=["Health"])
    async def health_check() -> HealthStatus:
        """Проверка здоровья сервиса."""
        runtime = get_container()
        return HealthStatus(
            service=SERVICE_NAME,
            status="healthy",
            version=settings.system.VERSION,
            dependencies={
                "storage": runtime.settings.booking.STORAGE_BACKEND,
                "broadcast": runtime.settings.realtime.BROADCAST_BUS,
                "sessions": str(runtime.fabric.active_sessions),
            },
        )

    return app
