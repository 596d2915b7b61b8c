# src/services/api/auth.py
"""
Аутентификация запросов по bearer JWT.

Токен выпускает внешний сервис аутентификации; здесь проверяется подпись,
пользователь загружается из репозитория и должен быть активен.
"""

from __future__ import annotations

from typing import Callable

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from src.common.constants import UserRole
from src.common.errors import AuthenticationError, ForbiddenError
from src.core.repositories.interfaces import UserRepository
from src.core.users.models import User
from src.infra.security import TokenCodec
from src.services.api.dependencies import get_repositories, get_tokens

bearer = HTTPBearer(auto_error=False)


async def resolve_user(token: str, tokens: TokenCodec, users: UserRepository) -> User:
    """
    Пользователь по токену.

    Raises:
        AuthenticationError: TOKEN_MISSING, TOKEN_INVALID, USER_NOT_FOUND, USER_INACTIVE
    """
    user_id = tokens.user_id_from(token)
    user = await users.get(user_id)
    if user is None:
        raise AuthenticationError("User not found", code="USER_NOT_FOUND")
    if not user.is_active:
        raise AuthenticationError("User is not active", code="USER_INACTIVE")
    return user


async def get_current_user(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    tokens: TokenCodec = Depends(get_tokens),
) -> User:
    if creds is None:
        raise AuthenticationError("Missing bearer token", code="TOKEN_MISSING")
    return await resolve_user(creds.credentials, tokens, get_repositories().users)


def require_roles(*roles: UserRole | str) -> Callable:
    """Dependency: текущий пользователь с одной из ролей."""

    async def _guard(user: User = Depends(get_current_user)) -> User:
        if not user.has_role(*roles):
            raise ForbiddenError("Insufficient role", code="FORBIDDEN")
        return user

    return _guard


async def get_current_tracker(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    tokens: TokenCodec = Depends(get_tokens),
) -> dict[str, str]:
    """Claims токена устройства: {tracker_id, device_id}."""
    if creds is None:
        raise AuthenticationError("Missing device token", code="TOKEN_MISSING")
    return tokens.decode_device_token(creds.credentials)
