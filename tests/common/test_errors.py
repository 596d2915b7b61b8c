# tests/common/test_errors.py
"""
Тесты иерархии доменных ошибок.
"""

from __future__ import annotations

import pytest

from src.common.errors import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    DomainError,
    ForbiddenError,
    GatewayError,
    InvalidStateError,
    NotFoundError,
    TransientError,
    ValidationError,
)


class TestStatusCodes:
    """HTTP-эквиваленты ошибок."""

    @pytest.mark.parametrize(
        "error_cls, status, code",
        [
            (ValidationError, 400, "VALIDATION_ERROR"),
            (InvalidStateError, 400, "INVALID_STATE"),
            (AuthenticationError, 401, "UNAUTHENTICATED"),
            (ForbiddenError, 403, "FORBIDDEN"),
            (NotFoundError, 404, "NOT_FOUND"),
            (ConflictError, 409, "CONFLICT"),
            (TransientError, 503, "SERVICE_UNAVAILABLE"),
            (GatewayError, 502, "GATEWAY_ERROR"),
        ],
    )
    def test_defaults(self, error_cls: type[DomainError], status: int, code: str) -> None:
        error = error_cls("boom")

        assert error.status_code == status
        assert error.code == code
        assert isinstance(error, DomainError)

    def test_gateway_error_is_transient(self) -> None:
        assert issubclass(GatewayError, TransientError)

    def test_configuration_error_is_not_domain(self) -> None:
        """Ошибка конфигурации не попадает в HTTP конверт."""
        assert not issubclass(ConfigurationError, DomainError)


class TestEnvelope:
    """Сериализация в конверт ответа."""

    def test_to_dict_without_details(self) -> None:
        error = NotFoundError("Reservation not found", code="RESERVATION_NOT_FOUND")

        assert error.to_dict() == {
            "success": False,
            "code": "RESERVATION_NOT_FOUND",
            "message": "Reservation not found",
        }

    def test_to_dict_with_details(self) -> None:
        error = ConflictError(
            "Vehicle is already booked",
            code="VEHICLE_TIME_CONFLICT",
            details={"conflicts": []},
        )

        payload = error.to_dict()

        assert payload["details"] == {"conflicts": []}
        assert payload["success"] is False

    def test_str_and_repr(self) -> None:
        error = ForbiddenError("nope", code="DRIVER_ONLY")

        assert str(error) == "nope"
        assert "DRIVER_ONLY" in repr(error)
        assert repr(error).startswith("ForbiddenError(")
