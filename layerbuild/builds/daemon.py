"""Docker daemon connection."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import docker
from docker.errors import DockerException
from docker.tls import TLSConfig

from layerbuild.builds.runner import StepBuildError

if TYPE_CHECKING:
    from layerbuild.config import Settings

logger = logging.getLogger(__name__)


def get_docker_client(settings: Settings) -> docker.DockerClient:
    """Create a Docker client for the configured daemon.

    Without an explicit host the client is configured from the environment
    (DOCKER_HOST, DOCKER_TLS_VERIFY, DOCKER_CERT_PATH).

    Raises:
        StepBuildError: If the client cannot be created.
    """
    try:
        if settings.docker_host is None and not settings.use_tls:
            return docker.from_env()

        tls: TLSConfig | bool = False
        if settings.use_tls:
            if settings.docker_cert_path is None:
                raise StepBuildError(
                    "TLS requested but no docker_cert_path configured",
                    code="daemon_error",
                )
            cert_path = settings.docker_cert_path.expanduser()
            tls = TLSConfig(
                client_cert=(str(cert_path / "cert.pem"), str(cert_path / "key.pem")),
                ca_cert=str(cert_path / "ca.pem"),
                verify=True,
            )

        logger.debug("Connecting to Docker daemon at %s", settings.docker_host)
        return docker.DockerClient(base_url=settings.docker_host, tls=tls)
    except DockerException as e:
        raise StepBuildError(
            f"Failed to connect to Docker daemon: {e}", code="daemon_error"
        ) from e


__all__ = ["get_docker_client"]
