# src/core/repositories/__init__.py
"""
Хранилище документов.

- interfaces: абстрактные репозитории и набор Repositories
- memory: in-memory реализация (тесты, STORAGE_BACKEND=memory)
- postgres: реализация на asyncpg
"""
