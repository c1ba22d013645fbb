"""Pydantic models for build file validation.

A build file is a YAML document of the form::

    build:
      version: 2016-03-14
      steps:
        builder:
          name: builder
          dockerfile: Dockerfile.builder
          artifacts:
            - /app/bin/server
        deployment:
          name: app:latest
          dockerfile: Dockerfile.deployment
          depends_on:
            - builder
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

SUPPORTED_VERSIONS = ("2016-02-13", "2016-03-14")

# First schema version that allows secrets
SECRETS_VERSION = "2016-03-14"

VALID_SECRET_TYPES = ("file", "env")


class CleanupSchema(BaseModel):
    """Schema for cleanup commands run before squashing."""

    model_config = ConfigDict(extra="forbid")

    commands: list[str] = Field(default_factory=list)


class SecretSchema(BaseModel):
    """Schema for a secret declaration.

    Attributes:
        type: Provider kind (file or env).
        value: Host file path or environment variable name.
    """

    model_config = ConfigDict(extra="forbid")

    type: str
    value: str


class StepSchema(BaseModel):
    """Schema for a single build step."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, description="Image name (defaults to label)")
    dockerfile: str = Field(default="Dockerfile", min_length=1)
    context: str | None = None
    args: dict[str, str] = Field(default_factory=dict)
    artifacts: list[str] = Field(default_factory=list)
    target: str | None = None
    cleanup: CleanupSchema | None = None
    depends_on: list[str] = Field(default_factory=list)
    command: str | None = None
    after_build_command: str | None = None
    no_cache: bool = False
    keep: bool = False
    secrets: dict[str, SecretSchema] = Field(default_factory=dict)

    @field_validator("args", mode="before")
    @classmethod
    def stringify_args(cls, v: Any) -> Any:
        """Accept scalar YAML values (numbers, booleans) as build arg values."""
        if v is None:
            return {}
        if isinstance(v, dict):
            return {str(k): "" if val is None else str(val) for k, val in v.items()}
        return v

    @field_validator("artifacts")
    @classmethod
    def validate_artifacts(cls, v: list[str]) -> list[str]:
        """Validate artifact specs have a source path."""
        for item in v:
            if not item or not item.split(":", 1)[0].strip():
                raise ValueError(f"artifact must have a source path, got '{item}'")
        return v


class BuildSchema(BaseModel):
    """Schema for the ``build`` section."""

    model_config = ConfigDict(extra="forbid")

    version: str
    work_dir: str | None = None
    steps: dict[str, StepSchema] = Field(default_factory=dict)

    @field_validator("version", mode="before")
    @classmethod
    def stringify_version(cls, v: Any) -> Any:
        # YAML reads an unquoted 2016-03-14 as a date
        if v is not None and not isinstance(v, str):
            return str(v)
        return v

    def validate_version(self) -> None:
        """Validate the schema version is supported.

        Raises:
            ValueError: If the version is not supported.
        """
        if self.version not in SUPPORTED_VERSIONS:
            raise ValueError(
                f"Invalid build schema version '{self.version}', "
                f"expected one of {', '.join(SUPPORTED_VERSIONS)}"
            )

    @property
    def supports_secrets(self) -> bool:
        return self.version >= SECRETS_VERSION


class BuildFileSchema(BaseModel):
    """Top level build file."""

    model_config = ConfigDict(extra="ignore")

    build: BuildSchema


__all__ = [
    "SECRETS_VERSION",
    "SUPPORTED_VERSIONS",
    "VALID_SECRET_TYPES",
    "BuildFileSchema",
    "BuildSchema",
    "CleanupSchema",
    "SecretSchema",
    "StepSchema",
]
