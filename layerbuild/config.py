"""Configuration settings for layerbuild.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_workdir() -> Path:
    """Return the default work directory (the current directory)."""
    return Path.cwd()


class Settings(BaseSettings):
    """Run-wide settings.

    Settings are loaded from environment variables with the LAYERBUILD_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="LAYERBUILD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    buildfile: Path = Field(
        default=Path("build.yml"),
        description="Build manifest path (relative to workdir unless absolute)",
    )
    workdir: Path = Field(
        default_factory=_default_workdir,
        description="Build context root and artifact destination root",
    )
    tmp_dir: Path | None = Field(
        default=None,
        description="Temporary directory for squashing (uses system default if not set)",
    )

    # Run identity
    unique_id: str = Field(
        default="",
        description="Build id appended to every image and container name",
    )
    start_step: str | None = Field(
        default=None,
        description="Only build this step and the steps depending on it",
    )

    # Build behaviour
    no_cache: bool = Field(default=False, description="Do not use the build cache")
    suppress_output: bool = Field(default=False, description="Suppress build output")
    rm_tmp_containers: bool = Field(
        default=True, description="Remove intermediate build containers"
    )
    force_rm_tmp_containers: bool = Field(
        default=False, description="Always remove intermediate build containers"
    )
    no_squash: bool = Field(
        default=False, description="Skip cleanup commands and squashing"
    )
    keep_steps: bool = Field(default=False, description="Keep all step images")
    keep_artifacts: bool = Field(
        default=False, description="Keep artifact directories created by the build"
    )
    force_rm_images: bool = Field(default=False, description="Force image removal")
    no_prune_rm_images: bool = Field(
        default=False, description="Do not delete untagged parents on image removal"
    )
    use_stat_for_permissions: bool = Field(
        default=False,
        description="Use stat inside the container to set artifact permissions",
    )
    allow_after_build_commands: bool = Field(
        default=False, description="Allow after-build commands to run on the host"
    )
    fail_on_command_error: bool = Field(
        default=False,
        description="Fail the step when its foreground command exits non-zero",
    )
    build_args: dict[str, str] = Field(
        default_factory=dict, description="Default build arguments for every step"
    )
    env_vars: dict[str, str] = Field(
        default_factory=dict,
        description="Values for _env(NAME) substitution (process env if empty)",
    )

    # Docker daemon
    docker_host: str | None = Field(
        default=None, description="Docker host URL (DOCKER_HOST if not set)"
    )
    docker_cert_path: Path | None = Field(
        default=None, description="Directory holding ca.pem, cert.pem and key.pem"
    )
    use_tls: bool = Field(default=False, description="Connect to the daemon over TLS")
    network: str | None = Field(default=None, description="Network mode for builds")
    docker_memory: str | None = Field(
        default=None, description="Memory limit for builds (e.g. 512m, 2g)"
    )
    docker_cpu_shares: int | None = Field(
        default=None, ge=0, description="CPU shares for builds"
    )
    docker_cpuset_cpus: str | None = Field(
        default=None, description="CPUs in which to allow build execution (e.g. 0-3)"
    )

    # Secrets
    secret_providers: str = Field(
        default="file,env", description="Comma separated enabled secret providers"
    )
    use_secrets: bool = Field(
        default=False, description="Serve secrets over HTTP during the build"
    )
    api_binding: str = Field(default="0.0.0.0", description="Secret API bind address")
    api_port: int = Field(default=8080, ge=1, le=65535, description="Secret API port")
    use_authenticated_secret_server: bool = Field(
        default=False, description="Require basic auth on the secret API"
    )
    secret_server_user: str | None = Field(default=None)
    secret_server_password: str | None = Field(default=None)

    # Concurrency
    max_concurrent_steps: int | None = Field(
        default=None,
        ge=1,
        description="Maximum steps built at once within a level (default: all)",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    @field_validator("unique_id")
    @classmethod
    def validate_unique_id(cls, v: str) -> str:
        """Validate the build id can be part of an image name."""
        if v and not all(c.isalnum() or c in "_.-" for c in v):
            raise ValueError(
                f"unique_id may only contain letters, digits, '_', '.' and '-', got '{v}'"
            )
        return v

    @property
    def buildfile_path(self) -> Path:
        """Absolute path of the build manifest."""
        if self.buildfile.is_absolute():
            return self.buildfile
        return self.workdir / self.buildfile

    @property
    def enabled_secret_providers(self) -> list[str]:
        """Secret provider kinds enabled for this run."""
        return [p.strip() for p in self.secret_providers.split(",") if p.strip()]


def get_settings() -> Settings:
    """Get the application settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2, exclude={"secret_server_password"})


__all__ = ["Settings", "get_settings", "print_settings_json"]
