# src/shared/__init__.py
"""
Общий код между слоями.

Модули:
- models: базовый документ, деньги, пагинация, статус здоровья
"""

__all__: list[str] = []
