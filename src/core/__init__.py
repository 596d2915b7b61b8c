# src/core/__init__.py
"""
Доменный слой (Core Domain).
Бронирования, заказы водителей, платежи, чат, трекинг и уведомления.

Подпакеты:
- bookings: бронирования автомобилей и заказы водителей
- payments: платежи и webhook шлюза
- promos: промокоды
- pricing: снимки цены
- chat, tracking, notifications
- repositories: интерфейсы хранилища и реализации (память, PostgreSQL)
"""

__all__: list[str] = []
