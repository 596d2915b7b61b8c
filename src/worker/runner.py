# src/worker/runner.py
"""
Запускалка фоновых воркеров.
"""

from __future__ import annotations

import asyncio
from typing import List

from src.common.constants import TypeMsg
from src.common.logger import log_error, log_info
from src.services.api.dependencies import ServiceContainer
from src.worker.base import BaseWorker
from src.worker.expiry import BookingExpiryWorker
from src.worker.reconciliation import PaymentReconciliationWorker


def build_workers(container: ServiceContainer) -> List[BaseWorker]:
    """Воркеры процесса с интервалами из секции worker."""
    cfg = container.settings.worker
    return [
        BookingExpiryWorker(container.driver_bookings, interval=cfg.EXPIRY_SWEEP_INTERVAL),
        PaymentReconciliationWorker(
            container.payments,
            interval=cfg.PAYMENT_RECONCILE_INTERVAL,
            batch_size=cfg.RECONCILE_BATCH_SIZE,
        ),
    ]


async def run_workers(container: ServiceContainer, stop_event: asyncio.Event | None = None) -> None:
    """
    Запускает воркеры и ждёт остановки.

    Args:
        container: Собранные сервисы (инфраструктуру открывает и закрывает вызывающий)
        stop_event: Событие остановки; без него работает до отмены задачи
    """
    workers = build_workers(container)
    stop_event = stop_event or asyncio.Event()

    try:
        for worker in workers:
            await worker.start()

        await log_info(f"Запущено {len(workers)} воркеров", type_msg=TypeMsg.INFO)
        await stop_event.wait()

    except asyncio.CancelledError:
        await log_info("Получен сигнал остановки", type_msg=TypeMsg.INFO)
    except Exception as e:
        await log_error(f"Критическая ошибка: {e}", exc_info=True)
    finally:
        for worker in workers:
            await worker.stop()
        await log_info("Воркеры остановлены", type_msg=TypeMsg.INFO)
