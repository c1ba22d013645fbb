"""Request dependencies for the secret endpoint."""

from __future__ import annotations

import secrets
from typing import Any

from fastapi import Depends, HTTPException, Request
from fastapi import status as http_status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from layerbuild.secrets import SecretProvider

_basic = HTTPBasic(realm="layerbuild secret service", auto_error=False)


def get_providers(request: Request) -> dict[str, SecretProvider]:
    """Get secret providers from app state."""
    providers: Any = request.app.state.providers
    return providers  # type: ignore[no-any-return]


def require_credentials(
    request: Request,
    credentials: HTTPBasicCredentials | None = Depends(_basic),
) -> None:
    """Enforce basic auth when the app was created with credentials.

    Raises:
        HTTPException: 401 on missing or wrong credentials.
    """
    expected: tuple[str, str] | None = request.app.state.credentials
    if expected is None:
        return

    if credentials is not None:
        user_ok = secrets.compare_digest(
            credentials.username.encode("utf-8"), expected[0].encode("utf-8")
        )
        password_ok = secrets.compare_digest(
            credentials.password.encode("utf-8"), expected[1].encode("utf-8")
        )
        if user_ok and password_ok:
            return

    raise HTTPException(
        status_code=http_status.HTTP_401_UNAUTHORIZED,
        detail={"code": "unauthorized", "message": "Not authorized"},
        headers={"WWW-Authenticate": 'Basic realm="layerbuild secret service"'},
    )
