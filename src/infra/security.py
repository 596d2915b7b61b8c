# src/infra/security.py
"""
JWT токены пользователей и GPS-трекеров.

Выпуск пользовательских токенов выполняет внешний сервис аутентификации,
здесь они только проверяются. Токены устройств выпускаются при device login.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from src.common.errors import AuthenticationError

DEVICE_TOKEN_TYPE = "tracker"


class TokenCodec:
    """Кодирование и проверка JWT с общим секретом."""

    def __init__(self, secret: str, algorithm: str = "HS256", device_ttl_days: int = 7) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._device_ttl = timedelta(days=device_ttl_days)

    def decode(self, token: str) -> dict[str, Any]:
        """
        Декодирует токен и проверяет подпись и срок действия.

        Raises:
            AuthenticationError: токен отсутствует, просрочен или подпись неверна
        """
        if not token:
            raise AuthenticationError("Missing bearer token", code="TOKEN_MISSING")
        try:
            return jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except JWTError as e:
            raise AuthenticationError("Invalid or expired token", code="TOKEN_INVALID") from e

    def user_id_from(self, token: str) -> str:
        """Возвращает sub пользовательского токена."""
        claims = self.decode(token)
        if claims.get("type") == DEVICE_TOKEN_TYPE:
            raise AuthenticationError("Device token is not accepted here", code="TOKEN_INVALID")
        subject = claims.get("sub") or claims.get("id")
        if not subject:
            raise AuthenticationError("Token has no subject", code="TOKEN_INVALID")
        return str(subject)

    def create_user_token(self, user_id: str, expires_minutes: int = 60, now: datetime | None = None) -> str:
        """Пользовательский токен (используется в тестах и dev-окружении)."""
        issued = now or datetime.now(timezone.utc)
        payload = {"sub": user_id, "type": "access", "exp": issued + timedelta(minutes=expires_minutes)}
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def create_device_token(self, tracker_id: str, device_id: str, now: datetime | None = None) -> str:
        """Токен трекера: {tracker_id, device_id, type: tracker}."""
        issued = now or datetime.now(timezone.utc)
        payload = {
            "tracker_id": tracker_id,
            "device_id": device_id,
            "type": DEVICE_TOKEN_TYPE,
            "exp": issued + self._device_ttl,
        }
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode_device_token(self, token: str) -> dict[str, str]:
        """
        Проверяет токен трекера.

        Returns:
            {"tracker_id": ..., "device_id": ...}
        """
        claims = self.decode(token)
        if claims.get("type") != DEVICE_TOKEN_TYPE or not claims.get("tracker_id"):
            raise AuthenticationError("Not a device token", code="TOKEN_INVALID")
        return {"tracker_id": str(claims["tracker_id"]), "device_id": str(claims.get("device_id", ""))}
