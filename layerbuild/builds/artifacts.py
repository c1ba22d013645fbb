"""Artifact extraction from step containers.

This module handles:
- Copying files and directories out of a container onto the host
- Applying permissions reported by stat inside the container
- Finding the host paths created by a build so they can be removed
"""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import tempfile
from collections.abc import Iterable
from pathlib import Path, PurePosixPath
from typing import IO, Any

from docker.errors import APIError

from layerbuild.manifest.models import Artifact

logger = logging.getLogger(__name__)

# Archives up to this size stay in memory
SPOOL_MAX_SIZE = 16 * 1024 * 1024


class ArtifactError(Exception):
    """Raised when an artifact cannot be copied to the host."""

    def __init__(self, message: str, code: str = "artifact_error") -> None:
        super().__init__(message)
        self.code = code


def parse_stat_mode(output: str | bytes) -> int:
    """Parse ``stat --format=%a`` output into a permission mode.

    The value is octal (e.g. ``755``). The owner always gets rwx so the
    build user can manage the copied files.

    Raises:
        ArtifactError: If the output is not an octal mode.
    """
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    text = output.strip().strip("'\"")
    try:
        mode = int(text, 8)
    except ValueError as e:
        raise ArtifactError(
            f"Unexpected stat output {output!r}", code="artifact_copy_error"
        ) from e
    return mode | 0o700


def _safe_target(dest_dir: Path, name: str) -> Path:
    parts = PurePosixPath(name).parts
    if PurePosixPath(name).is_absolute() or ".." in parts:
        raise ArtifactError(
            f"Refusing to extract '{name}' outside {dest_dir}", code="path_traversal"
        )
    return dest_dir.joinpath(*parts)


def extract_artifact_tar(
    fileobj: IO[bytes], dest_dir: Path, mode: int | None = None
) -> list[Path]:
    """Extract a container archive into a host directory.

    Args:
        fileobj: Seekable tar stream as returned by the daemon.
        dest_dir: Host directory to extract into.
        mode: Permission mode applied to every entry (None: keep archive modes).

    Returns:
        Paths written, in archive order.

    Raises:
        ArtifactError: On entries other than regular files and directories,
            or entries escaping ``dest_dir``.
    """
    written: list[Path] = []
    with tarfile.open(fileobj=fileobj, mode="r:*") as tar:
        for member in tar:
            target = _safe_target(dest_dir, member.name)
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif member.isreg():
                logger.info("Copying %s to %s", member.name, target)
                target.parent.mkdir(parents=True, exist_ok=True)
                src = tar.extractfile(member)
                if src is None:
                    raise ArtifactError(
                        f"Cannot read '{member.name}' from archive",
                        code="artifact_copy_error",
                    )
                with src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
            else:
                raise ArtifactError(
                    f"Invalid header type for '{member.name}'",
                    code="invalid_header_type",
                )

            os.chmod(target, mode if mode is not None else (member.mode & 0o7777))
            written.append(target)
    return written


def copy_artifact(
    container: Any, artifact: Artifact, workdir: Path, mode: int | None = None
) -> list[Path]:
    """Copy one artifact from a container to ``workdir / artifact.dest``.

    Raises:
        ArtifactError: If the archive cannot be fetched or extracted.
    """
    dest_dir = workdir / artifact.dest
    dest_dir.mkdir(parents=True, exist_ok=True)

    try:
        chunks, _ = container.get_archive(artifact.source)
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as buf:
            for chunk in chunks:
                buf.write(chunk)
            buf.seek(0)
            return extract_artifact_tar(buf, dest_dir, mode)
    except APIError as e:
        raise ArtifactError(
            f"Failed to fetch artifact {artifact.source}: {e}",
            code="artifact_copy_error",
        ) from e
    except (tarfile.TarError, OSError) as e:
        raise ArtifactError(
            f"Failed to extract artifact {artifact.source}: {e}",
            code="artifact_copy_error",
        ) from e


def collect_host_artifact_roots(
    workdir: Path, artifacts: Iterable[Artifact]
) -> list[Path]:
    """Find the host paths a build will create for its artifacts.

    For every artifact, the projected host path is walked from ``workdir``
    down; the first component that does not exist yet is recorded. Paths
    that already exist before the build are never recorded.
    """
    roots: list[Path] = []
    for artifact in artifacts:
        projected = Path(os.path.normpath(workdir / artifact.dest / artifact.filename))
        try:
            relative = projected.relative_to(workdir)
        except ValueError:
            logger.warning(
                "Artifact %s lands outside the work directory; not tracked",
                artifact.source,
            )
            continue

        current = workdir
        for part in relative.parts:
            current = current / part
            if not current.exists():
                if current not in roots:
                    roots.append(current)
                break
    return roots


def remove_host_artifact_roots(roots: Iterable[Path]) -> None:
    """Remove artifact roots; overlapping roots may already be gone."""
    for root in roots:
        logger.debug("Removing artifact path %s", root)
        if root.is_dir() and not root.is_symlink():
            shutil.rmtree(root, ignore_errors=True)
        else:
            root.unlink(missing_ok=True)


__all__ = [
    "ArtifactError",
    "collect_host_artifact_roots",
    "copy_artifact",
    "extract_artifact_tar",
    "parse_stat_mode",
    "remove_host_artifact_roots",
]
