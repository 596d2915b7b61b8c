# src/services/api/__init__.py
"""
HTTP API поверх доменных сервисов.

Конверт ответов {success, data | code, message}, bearer JWT,
роли проверяются в доменных сервисах.
"""
