"""Dockerfile preprocessing.

This module handles:
- Rewriting FROM references to earlier steps into their per-build image names
- Truncating a multi-stage Dockerfile after a target stage
- Naming and writing the generated Dockerfile beside the original
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from pathlib import Path

logger = logging.getLogger(__name__)

# FROM [--platform=...] image [AS stage]
FROM_PATTERN = re.compile(r"^(\s*FROM\s+(?:--\S+\s+)*)(\S+)(.*)$", re.IGNORECASE | re.MULTILINE)

# Any "AS <name>" stage marker at the end of a line
_NEXT_STAGE_PATTERN = re.compile(r"\s+[aA][sS]\s+.+\s*$")


class DockerfileError(Exception):
    """Raised when a Dockerfile cannot be prepared."""

    def __init__(self, message: str, code: str = "dockerfile_error") -> None:
        super().__init__(message)
        self.code = code


def replace_from_field(
    dockerfile: str, image_names: Mapping[str, str]
) -> tuple[str, list[str]]:
    """Rewrite FROM lines that reference manifest steps.

    Args:
        dockerfile: Dockerfile content.
        image_names: Step name to per-build image name.

    Returns:
        Tuple of (rewritten content, step names used as a base). Lines
        referencing anything else are left untouched.

    Raises:
        DockerfileError: If the Dockerfile has no FROM instruction.
    """
    if not FROM_PATTERN.search(dockerfile):
        raise DockerfileError(
            "Invalid Dockerfile: no valid FROM found", code="no_from"
        )

    bases: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        reference = match.group(2)
        image = image_names.get(reference)
        if image is None:
            return match.group(0)
        if reference not in bases:
            bases.append(reference)
        return f"{match.group(1)}{image}{match.group(3)}"

    return FROM_PATTERN.sub(_replace, dockerfile), bases


def read_dockerfile_to_target(dockerfile: str, target: str) -> str:
    """Keep the Dockerfile up to the end of the target stage.

    Lines are kept until the first stage marker following the line that
    declares ``AS <target>``.

    Raises:
        DockerfileError: If no stage is named ``target``.
    """
    target_pattern = re.compile(rf"\s+[aA][sS]\s+{re.escape(target)}\s*$")

    kept: list[str] = []
    found = False
    for line in dockerfile.splitlines():
        if found and _NEXT_STAGE_PATTERN.search(line):
            break
        if target_pattern.search(line):
            found = True
        kept.append(line)

    if not found:
        raise DockerfileError(
            f'Build target "{target}" does not exist in Dockerfile',
            code="target_not_found",
        )
    return "\n".join(kept) + "\n"


def generated_dockerfile_name(dockerfile: str, unique_id: str = "") -> str:
    """Name of the generated Dockerfile for a step."""
    if unique_id:
        return f"{dockerfile}_{unique_id}.generated"
    return f"{dockerfile}.generated"


def read_dockerfile(path: Path) -> str:
    """Read a step Dockerfile.

    Raises:
        DockerfileError: If the file cannot be read.
    """
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise DockerfileError(
            f"Failed to read Dockerfile {path}: {e}", code="dockerfile_read_error"
        ) from e


def write_dockerfile(content: str, path: Path) -> Path:
    """Write generated Dockerfile content and return its path."""
    logger.debug("Writing generated Dockerfile %s", path)
    path.write_text(content, encoding="utf-8")
    return path


__all__ = [
    "FROM_PATTERN",
    "DockerfileError",
    "generated_dockerfile_name",
    "read_dockerfile",
    "read_dockerfile_to_target",
    "replace_from_field",
    "write_dockerfile",
]
