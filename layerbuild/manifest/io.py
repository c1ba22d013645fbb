"""Build file loading.

This module handles:
- _env(NAME) substitution on the raw build file text
- YAML parsing and schema validation
- Conversion of the validated file into a runtime Manifest
- Secret registration with the enabled providers
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import ValidationError

from layerbuild.manifest.models import Artifact, Manifest, Secret, Step
from layerbuild.manifest.resolver import (
    ManifestError,
    check_unique_names,
    resolve_build_levels,
)
from layerbuild.manifest.schema import (
    VALID_SECRET_TYPES,
    BuildFileSchema,
    BuildSchema,
    StepSchema,
)
from layerbuild.secrets import SecretProvider, get_providers

if TYPE_CHECKING:
    from layerbuild.config import Settings

logger = logging.getLogger(__name__)

_ENV_PATTERN = re.compile(r"_env\((.*?)\)")


def substitute_env_vars(text: str, env_vars: Mapping[str, str] | None = None) -> str:
    """Replace every ``_env(NAME)`` occurrence in the text.

    Values come from ``env_vars`` when it is non-empty, otherwise from the
    process environment. Unknown names are replaced with an empty string.
    """
    source: Mapping[str, str] = env_vars if env_vars else os.environ

    def _replace(match: re.Match[str]) -> str:
        return source.get(match.group(1), "")

    return _ENV_PATTERN.sub(_replace, text)


def load_yaml(text: str) -> dict[str, Any]:
    """Parse build file text into a mapping.

    Raises:
        ManifestError: If the text is not a YAML mapping.
    """
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManifestError(f"Invalid build file YAML: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ManifestError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def parse_manifest_data(data: dict[str, Any]) -> BuildSchema:
    """Validate build file data against the schema.

    Raises:
        ManifestError: If the data does not match the schema or the
            version is not supported.
    """
    try:
        build = BuildFileSchema.model_validate(data).build
    except ValidationError as e:
        raise ManifestError(f"Invalid build file: {e}") from e

    try:
        build.validate_version()
    except ValueError as e:
        raise ManifestError(str(e), code="invalid_version") from e
    return build


def parse_artifact(step_name: str, spec: str) -> Artifact:
    """Parse an ``src[:dest]`` artifact spec."""
    source, _, dest = spec.partition(":")
    return Artifact(step=step_name, source=source, dest=dest or ".")


def _convert_secrets(
    label: str,
    schema: StepSchema,
    enabled: list[str],
    providers: dict[str, SecretProvider],
) -> tuple[Secret, ...]:
    secrets: list[Secret] = []
    for name, secret in schema.secrets.items():
        if secret.type not in VALID_SECRET_TYPES:
            raise ManifestError(
                f"Invalid secret type '{secret.type}' in step '{label}'",
                code="invalid_secret_type",
            )
        if secret.type not in enabled:
            raise ManifestError(
                f"Unsupported secret type '{secret.type}' in step '{label}'",
                code="unsupported_secret_type",
            )
        providers[secret.type].register_secret(name, secret.value)
        secrets.append(Secret(name=name, type=secret.type, value=secret.value))
    return tuple(secrets)


def build_manifest(
    build: BuildSchema,
    no_squash: bool = False,
    secret_providers: list[str] | None = None,
    providers: dict[str, SecretProvider] | None = None,
) -> Manifest:
    """Convert a validated build section into a Manifest.

    Args:
        build: Validated build section.
        no_squash: Drop cleanup commands from every step.
        secret_providers: Enabled secret provider kinds (default: all).
        providers: Provider registries to register secrets with.

    Returns:
        Manifest with resolved build levels.

    Raises:
        ManifestError: On invalid secrets, duplicate names, unknown or
            circular dependencies.
    """
    if providers is None:
        providers = get_providers()
    enabled = list(VALID_SECRET_TYPES) if secret_providers is None else secret_providers

    names_by_label = {
        label: schema.name or label for label, schema in build.steps.items()
    }
    check_unique_names(names_by_label.values())

    steps: list[Step] = []
    for label, schema in build.steps.items():
        name = names_by_label[label]

        secrets: tuple[Secret, ...] = ()
        if build.supports_secrets and schema.secrets:
            secrets = _convert_secrets(label, schema, enabled, providers)
        elif schema.secrets:
            logger.warning(
                "Ignoring secrets of step '%s': build file version %s does not support them",
                label,
                build.version,
            )

        depends_on: list[str] = []
        for dep in schema.depends_on:
            if dep not in names_by_label:
                raise ManifestError(
                    f"Step '{label}' depends on unknown step '{dep}'",
                    code="unknown_dependency",
                )
            depends_on.append(names_by_label[dep])

        cleanup: tuple[str, ...] = ()
        if schema.cleanup is not None and not no_squash:
            cleanup = tuple(schema.cleanup.commands)

        steps.append(
            Step(
                name=name,
                label=label,
                dockerfile=schema.dockerfile,
                context=schema.context,
                target=schema.target,
                args=dict(schema.args),
                artifacts=tuple(parse_artifact(name, a) for a in schema.artifacts),
                cleanup_commands=cleanup,
                depends_on=tuple(depends_on),
                command=schema.command,
                after_build_command=schema.after_build_command,
                no_cache=schema.no_cache,
                keep=schema.keep,
                secrets=secrets,
            )
        )

    levels = resolve_build_levels(steps)
    return Manifest(
        steps=tuple(steps),
        build_levels=tuple(tuple(level) for level in levels),
        version=build.version,
        workdir=build.work_dir,
        secret_providers=providers,
    )


def load_manifest(
    path: Path,
    env_vars: Mapping[str, str] | None = None,
    no_squash: bool = False,
    secret_providers: list[str] | None = None,
    providers: dict[str, SecretProvider] | None = None,
) -> Manifest:
    """Load a build file and return its Manifest.

    Raises:
        ManifestError: If the file cannot be read or is invalid.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestError(f"Failed to read build file {path}: {e}") from e

    data = load_yaml(substitute_env_vars(text, env_vars))
    build = parse_manifest_data(data)
    manifest = build_manifest(
        build,
        no_squash=no_squash,
        secret_providers=secret_providers,
        providers=providers,
    )
    logger.info(
        "Loaded %d step(s) in %d level(s) from %s",
        len(manifest.steps),
        len(manifest.build_levels),
        path,
    )
    return manifest


def load_manifest_from_settings(
    settings: Settings, providers: dict[str, SecretProvider] | None = None
) -> Manifest:
    """Load the build file named by the settings."""
    return load_manifest(
        settings.buildfile_path,
        env_vars=settings.env_vars,
        no_squash=settings.no_squash,
        secret_providers=settings.enabled_secret_providers,
        providers=providers,
    )


__all__ = [
    "build_manifest",
    "load_manifest",
    "load_manifest_from_settings",
    "load_yaml",
    "parse_artifact",
    "parse_manifest_data",
    "substitute_env_vars",
]
