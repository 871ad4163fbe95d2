"""
startorigin.api.deps — FastAPI dependency injection
=====================================================

Engine, config and live-channel singletons, session-provider JWT checks and
the domain-error → HTTP mapping.  Tests swap the singletons with
``app.dependency_overrides``.
"""

from __future__ import annotations

import os
from functools import lru_cache
from typing import Annotated

import jwt
from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.responses import JSONResponse
from jwt.exceptions import InvalidTokenError
from sqlalchemy import Engine

from startorigin.config import StartOriginConfig, load_config
from startorigin.database.engine import create_db_engine
from startorigin.engine.live import LiveChannel, create_live_channel
from startorigin.errors import (
    AlreadyOwned,
    AuthenticationRequired,
    BlockedRecipient,
    ChatCreationError,
    ChatDisabled,
    Forbidden,
    InsufficientPoints,
    NotFound,
    StartOriginError,
    ValidationFailed,
)

_WEAK_SECRETS = frozenset({
    "super-secret-jwt-token-with-at-least-32-characters-long",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"
ADMIN_ROLE = "admin"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Use the session provider's JWT signing secret."
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> StartOriginConfig:
    return load_config()


@lru_cache(maxsize=1)
def get_live() -> LiveChannel:
    return create_live_channel(get_engine())


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------
def decode_token(token: str) -> dict:
    """Verify a session-provider access token and return its claims.

    Raises :class:`InvalidTokenError` for bad signatures, expiry or a
    missing ``sub``.
    """
    payload = jwt.decode(
        token, JWT_SECRET, algorithms=[JWT_ALGORITHM], options={"verify_aud": False},
    )
    if not payload.get("sub"):
        raise InvalidTokenError("token has no subject")
    return payload


def is_admin(claims: dict) -> bool:
    meta = claims.get("app_metadata") or {}
    roles = meta.get("roles") or []
    return ADMIN_ROLE in roles or meta.get("role") == ADMIN_ROLE


def _bearer(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1]


def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict:
    """Validate the bearer token and return its claims. Raises 401 if invalid."""
    token = _bearer(authorization)
    if token is None:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Missing token")
    try:
        return decode_token(token)
    except InvalidTokenError:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid token")


def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
) -> dict | None:
    """Claims for a valid token, ``None`` for anonymous or invalid ones."""
    token = _bearer(authorization)
    if token is None:
        return None
    try:
        return decode_token(token)
    except InvalidTokenError:
        return None


def get_current_admin(
    user: Annotated[dict, Depends(get_current_user)],
) -> dict:
    """Like :func:`get_current_user`, plus the admin role. Raises 403 if absent."""
    if not is_admin(user):
        raise HTTPException(status.HTTP_403_FORBIDDEN, "Not admin")
    return user


# ---------------------------------------------------------------------------
# Domain errors → HTTP
# ---------------------------------------------------------------------------
_STATUS_BY_ERROR: tuple[tuple[type[StartOriginError], int], ...] = (
    (AuthenticationRequired, status.HTTP_401_UNAUTHORIZED),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (BlockedRecipient, status.HTTP_403_FORBIDDEN),
    (ChatDisabled, status.HTTP_403_FORBIDDEN),
    (InsufficientPoints, status.HTTP_402_PAYMENT_REQUIRED),
    (AlreadyOwned, status.HTTP_400_BAD_REQUEST),
    (ValidationFailed, status.HTTP_400_BAD_REQUEST),
    (ChatCreationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(exc: StartOriginError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return status.HTTP_400_BAD_REQUEST


def error_body(exc: StartOriginError) -> dict:
    body: dict = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, InsufficientPoints):
        body["shortfall"] = exc.shortfall
        body["problems_needed"] = exc.problems_needed
    if isinstance(exc, AuthenticationRequired):
        body["login_url"] = exc.login_url
    return body


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StartOriginError)
    async def _domain_error(request: Request, exc: StartOriginError) -> JSONResponse:
        return JSONResponse(status_code=status_for(exc), content=error_body(exc))
