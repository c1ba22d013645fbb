"""Router modules for the secret endpoint."""

from web.routers import health, secrets

__all__ = ["health", "secrets"]
