# src/worker/__init__.py
"""
Фоновые воркеры: истечение заказов водителей и сверка платежей.
"""

from src.worker.base import BaseWorker
from src.worker.expiry import BookingExpiryWorker
from src.worker.reconciliation import PaymentReconciliationWorker

__all__ = ["BaseWorker", "BookingExpiryWorker", "PaymentReconciliationWorker"]
