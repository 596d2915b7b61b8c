# src/core/pricing/__init__.py
"""
Снимки цены бронирований и заказов водителей.
"""
