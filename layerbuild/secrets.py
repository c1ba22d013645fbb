"""Secret providers.

A secret is registered under a name with a provider-specific value:

- ``file``: the value is a host path; the secret is the file content.
- ``env``: the value is an environment variable name; the secret is its value.

Provider kinds form a closed set (SecretKind); each SecretProvider holds
the registrations for one kind.
"""

from __future__ import annotations

import logging
import os
import threading
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class SecretKind(str, Enum):
    """Kind of secret provider."""

    FILE = "file"
    ENV = "env"


class SecretError(Exception):
    """Raised when a secret cannot be registered or served."""

    def __init__(self, message: str, code: str = "secret_error") -> None:
        super().__init__(message)
        self.code = code


class SecretProvider:
    """Registry of secrets for a single provider kind.

    Registrations happen while the manifest is loaded; lookups come from the
    secret HTTP endpoint, possibly from several threads at once.
    """

    def __init__(self, kind: SecretKind) -> None:
        self.kind = kind
        self._registry: dict[str, str] = {}
        self._lock = threading.Lock()

    def register_secret(self, name: str, value: str) -> None:
        """Register a secret.

        Args:
            name: Secret name as used by the build.
            value: File path or environment variable name, depending on kind.
        """
        with self._lock:
            if name in self._registry and self._registry[name] != value:
                logger.warning(
                    "Secret %s (%s) re-registered with a different value",
                    name,
                    self.kind.value,
                )
            self._registry[name] = value

    def get_secret(self, name: str) -> str:
        """Resolve a registered secret.

        Args:
            name: Secret name.

        Returns:
            The secret content.

        Raises:
            SecretError: If the secret is unknown or cannot be read.
        """
        with self._lock:
            value = self._registry.get(name)
        if value is None:
            raise SecretError(
                f"Secret '{name}' is not registered with the {self.kind.value} provider",
                code="secret_not_registered",
            )

        if self.kind is SecretKind.FILE:
            try:
                return Path(value).expanduser().read_text(encoding="utf-8")
            except OSError as e:
                raise SecretError(
                    f"Failed to read secret '{name}' from {value}: {e}",
                    code="secret_read_error",
                ) from e

        return os.environ.get(value, "")

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._registry)


def get_providers() -> dict[str, SecretProvider]:
    """Return a fresh provider for every known kind, keyed by kind value."""
    return {kind.value: SecretProvider(kind) for kind in SecretKind}


def lookup_provider(
    providers: dict[str, SecretProvider], kind: str
) -> SecretProvider:
    """Find the provider for a kind.

    Raises:
        SecretError: If no provider serves the kind.
    """
    provider = providers.get(kind)
    if provider is None:
        raise SecretError(f"Unknown secret provider '{kind}'", code="unknown_provider")
    return provider


__all__ = [
    "SecretError",
    "SecretKind",
    "SecretProvider",
    "get_providers",
    "lookup_provider",
]
