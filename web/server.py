"""Background server for the secret endpoint.

The server runs in a daemon thread for the duration of a build.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import TYPE_CHECKING

import uvicorn

from web.app import create_app

if TYPE_CHECKING:
    from layerbuild.config import Settings
    from layerbuild.secrets import SecretProvider

logger = logging.getLogger(__name__)


class SecretServer:
    """Serves build secrets over HTTP while a build runs.

    Usable as a context manager::

        with SecretServer(providers, settings):
            scheduler.run()
    """

    def __init__(
        self,
        providers: dict[str, SecretProvider],
        settings: Settings,
        startup_timeout: float = 10.0,
    ) -> None:
        self.settings = settings
        self.startup_timeout = startup_timeout
        config = uvicorn.Config(
            create_app(providers, settings),
            host=settings.api_binding,
            port=settings.api_port,
            log_level="warning",
            access_log=False,
        )
        self.server = uvicorn.Server(config)
        self._thread: threading.Thread | None = None

    def build_args(self, host: str | None = None) -> dict[str, str]:
        """Build arguments telling builds where to fetch secrets."""
        args = {
            "layerbuild_host": host or self.settings.api_binding,
            "layerbuild_port": str(self.settings.api_port),
        }
        if self.settings.use_authenticated_secret_server:
            args["layerbuild_user"] = self.settings.secret_server_user or ""
            args["layerbuild_password"] = self.settings.secret_server_password or ""
        return args

    def start(self) -> None:
        """Start serving and wait until the server accepts connections.

        Raises:
            RuntimeError: If the server does not start in time.
        """
        logger.info(
            "Starting secret API on %s:%d",
            self.settings.api_binding,
            self.settings.api_port,
        )
        self._thread = threading.Thread(
            target=self.server.run, name="layerbuild-secret-api", daemon=True
        )
        self._thread.start()

        deadline = time.monotonic() + self.startup_timeout
        while not self.server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                raise RuntimeError(
                    f"Secret API failed to start on "
                    f"{self.settings.api_binding}:{self.settings.api_port}"
                )
            time.sleep(0.05)

    def stop(self) -> None:
        if self._thread is None:
            return
        logger.debug("Stopping secret API")
        self.server.should_exit = True
        self._thread.join(timeout=self.startup_timeout)
        self._thread = None

    def __enter__(self) -> SecretServer:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()


__all__ = ["SecretServer"]
