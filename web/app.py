"""FastAPI application factory for the secret endpoint.

The app is created per build: it serves the secrets registered while the
build file was loaded, optionally behind HTTP basic auth.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import Depends, FastAPI

from layerbuild import __version__
from web.deps import require_credentials
from web.routers import health, secrets

if TYPE_CHECKING:
    from layerbuild.config import Settings
    from layerbuild.secrets import SecretProvider


def create_app(
    providers: dict[str, SecretProvider],
    settings: Settings | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        providers: Secret providers keyed by kind.
        settings: Run settings; basic auth is enabled when
            ``use_authenticated_secret_server`` is set.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="layerbuild secret service",
        description="Serves build secrets to image builds",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    application.state.providers = providers
    application.state.credentials = None
    if settings is not None and settings.use_authenticated_secret_server:
        application.state.credentials = (
            settings.secret_server_user or "",
            settings.secret_server_password or "",
        )

    dependencies = [Depends(require_credentials)]
    application.include_router(
        health.router, prefix="/v1", tags=["health"], dependencies=dependencies
    )
    application.include_router(
        secrets.router, prefix="/v1/secrets", tags=["secrets"], dependencies=dependencies
    )

    return application
