# src/common/errors.py
"""
Иерархия доменных ошибок.

Каждая ошибка несёт стабильный строковый код (например, DRIVER_TIME_CONFLICT)
и HTTP-эквивалентный статус. HTTP слой и real-time шлюз превращают их
в конверт {success: false, code, message, details?}.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Базовая доменная ошибка."""

    status_code: int = 400
    default_code: str = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        """Сериализует ошибку в конверт ответа."""
        payload: dict[str, Any] = {
            "success": False,
            "code": self.code,
            "message": self.message,
        }
        if self.details is not None:
            payload["details"] = self.details
        return payload

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(DomainError):
    """Некорректные входные данные или нарушение инварианта."""
    status_code = 400
    default_code = "VALIDATION_ERROR"


class InvalidStateError(DomainError):
    """Переход недопустим из текущего статуса."""
    status_code = 400
    default_code = "INVALID_STATE"


class AuthenticationError(DomainError):
    """Запрос без валидной аутентификации."""
    status_code = 401
    default_code = "UNAUTHENTICATED"


class ForbiddenError(DomainError):
    """Роль или владелец не совпадают."""
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(DomainError):
    """Сущность не найдена."""
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(DomainError):
    """Пересечение интервалов, проигранный CAS или дубликат уникального ключа."""
    status_code = 409
    default_code = "CONFLICT"


class TransientError(DomainError):
    """Хранилище или шлюз временно недоступны, запрос можно повторить."""
    status_code = 503
    default_code = "SERVICE_UNAVAILABLE"


class GatewayError(TransientError):
    """Ошибка внешнего платёжного шлюза."""
    status_code = 502
    default_code = "GATEWAY_ERROR"


class ConfigurationError(Exception):
    """Отсутствует обязательная конфигурация. Процесс должен завершиться."""
