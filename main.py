#!/usr/bin/env python3
# main.py
"""
Главная точка входа приложения Car Rental.
Запускает HTTP API с WebSocket сессиями, фоновые воркеры или всё вместе.
"""

from __future__ import annotations

import asyncio
import signal
import sys

from src.common.constants import TypeMsg
from src.common.errors import ConfigurationError
from src.common.logger import log_error, log_info, setup_logging
from src.config import settings

MODES = ("api", "worker", "all")

# Глобальный флаг для graceful shutdown
_shutdown_event: asyncio.Event | None = None


def setup_signal_handlers() -> asyncio.Event:
    """Настраивает обработчики сигналов для graceful shutdown."""
    global _shutdown_event
    _shutdown_event = asyncio.Event()

    def signal_handler(sig: int) -> None:
        """Обработчик сигналов SIGINT и SIGTERM."""
        if _shutdown_event and not _shutdown_event.is_set():
            print(f"\nПолучен сигнал остановки (sig={sig}), завершаем работу...")
            _shutdown_event.set()

    try:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
    except NotImplementedError:
        # Windows не поддерживает add_signal_handler
        signal.signal(signal.SIGINT, lambda s, f: signal_handler(s))
        signal.signal(signal.SIGTERM, lambda s, f: signal_handler(s))
    return _shutdown_event


async def serve_api(app, stop_event: asyncio.Event) -> None:
    """Uvicorn сервер до сигнала остановки."""
    import uvicorn

    config = uvicorn.Config(
        app,
        host=settings.api.API_HOST,
        port=settings.api.API_PORT,
        log_level="debug" if settings.system.DEBUG else "info",
    )
    server = uvicorn.Server(config)
    # Сигналы обрабатываем сами
    server.install_signal_handlers = lambda: None

    serve_task = asyncio.create_task(server.serve())
    stop_task = asyncio.create_task(stop_event.wait())
    await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
    server.should_exit = True
    await serve_task
    stop_task.cancel()


async def run_api(stop_event: asyncio.Event) -> None:
    """HTTP API и WebSocket сессии. Инфраструктура открывается в lifespan приложения."""
    from src.services.api.app import create_app

    await log_info(
        f"Запуск API на {settings.api.API_HOST}:{settings.api.API_PORT}...",
        type_msg=TypeMsg.INFO,
    )
    await serve_api(create_app(settings=settings), stop_event)


async def run_worker(stop_event: asyncio.Event) -> None:
    """Фоновые воркеры: истечение заказов и сверка платежей."""
    from src.services.bootstrap import close_runtime, init_runtime
    from src.worker.runner import run_workers

    container = await init_runtime(settings)
    try:
        await run_workers(container, stop_event)
    finally:
        await close_runtime(container)


async def run_all(stop_event: asyncio.Event) -> None:
    """API и воркеры в одном процессе с общим набором сервисов."""
    from src.services.api.app import create_app
    from src.services.bootstrap import close_runtime, init_runtime
    from src.worker.runner import run_workers

    container = await init_runtime(settings)
    try:
        await asyncio.gather(
            serve_api(create_app(container=container), stop_event),
            run_workers(container, stop_event),
        )
    finally:
        await close_runtime(container)


async def main(mode: str | None = None) -> int:
    """
    Главная функция запуска.

    Args:
        mode: Режим запуска (api, worker, all). Если None, берётся COMPONENT_MODE.

    Returns:
        Код завершения процесса
    """
    setup_logging()
    stop_event = setup_signal_handlers()

    mode = mode or settings.system.COMPONENT_MODE
    if mode not in MODES:
        await log_error(f"Неизвестный режим '{mode}'")
        return 1

    try:
        settings.validate_required()
    except ConfigurationError as e:
        await log_error(f"Ошибка конфигурации: {e}")
        return 1

    await log_info(
        f"Car Rental v{settings.system.VERSION}: запуск в режиме '{mode}'",
        type_msg=TypeMsg.INFO,
    )

    runners = {"api": run_api, "worker": run_worker, "all": run_all}
    try:
        await runners[mode](stop_event)
    except ConfigurationError as e:
        await log_error(f"Ошибка конфигурации: {e}")
        return 1
    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
        return 1

    await log_info("Приложение остановлено", type_msg=TypeMsg.INFO)
    return 0


def print_usage() -> None:
    """Выводит справку по использованию."""
    print("""
Car Rental: бронирования автомобилей и водителей

Использование:
    python main.py [mode]

Режимы:
    api       HTTP API и WebSocket сессии (:API_PORT)
    worker    фоновые воркеры (истечение заказов, сверка платежей)
    all       всё в одном процессе

Без аргумента режим берётся из COMPONENT_MODE (по умолчанию all).
    """)


if __name__ == "__main__":
    mode = None

    if len(sys.argv) > 1:
        arg = sys.argv[1].lower()
        if arg in ("--help", "-h"):
            print_usage()
            sys.exit(0)
        elif arg in MODES:
            mode = arg
        else:
            print(f"Ошибка: неизвестный режим '{arg}'")
            print_usage()
            sys.exit(1)

    try:
        sys.exit(asyncio.run(main(mode)))
    except KeyboardInterrupt:
        pass
