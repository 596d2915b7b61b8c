# src/services/api/routes/__init__.py
"""
Роутеры HTTP API.
"""
