"""Shared type definitions for layerbuild.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StepStatus(str, Enum):
    """Final status of a build step within a run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class StepStage(str, Enum):
    """Stage of the per-step build pipeline."""

    PENDING = "pending"
    REWRITE_FROM = "rewrite_from"
    IMAGE_BUILD = "image_build"
    CONTAINER_CREATE = "container_create"
    CLEANUP_RUN = "cleanup_run"
    SQUASH = "squash"
    ARTIFACT_EXTRACT = "artifact_extract"
    COMMAND_RUN = "command_run"
    CONTAINER_TEARDOWN = "container_teardown"
    AFTER_BUILD = "after_build"
    DONE = "done"
    FAILED = "failed"


class BuildFailedError(Exception):
    """Raised when one or more steps of a run did not succeed."""

    def __init__(self, failed: list[str], code: str = "build_failed") -> None:
        super().__init__(f"Build failed for step(s): {', '.join(failed)}")
        self.failed = failed
        self.code = code


@dataclass
class StepResult:
    """Outcome of a single step.

    Attributes:
        name: Step name.
        label: Manifest label of the step.
        level: Build level the step belongs to.
        image: Run-qualified image name.
        status: Final status.
        stage: Last pipeline stage reached.
        error: Error message if the step failed.
        error_code: Stable error code if the step failed.
        exit_code: Foreground command exit code, if one ran.
        duration: Wall clock seconds spent in the step.
        bases: Names of earlier steps used as FROM images.
    """

    name: str
    label: str
    level: int
    image: str
    status: StepStatus = StepStatus.PENDING
    stage: StepStage = StepStage.PENDING
    error: str | None = None
    error_code: str | None = None
    exit_code: int | None = None
    duration: float | None = None
    bases: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        return {
            "name": self.name,
            "label": self.label,
            "level": self.level,
            "image": self.image,
            "status": self.status.value,
            "stage": self.stage.value,
            "error": self.error,
            "error_code": self.error_code,
            "exit_code": self.exit_code,
            "duration": self.duration,
            "bases": list(self.bases),
        }


@dataclass
class BuildReport:
    """Summary of a scheduler run."""

    build_id: str
    results: list[StepResult] = field(default_factory=list)
    removed_images: list[str] = field(default_factory=list)

    def by_status(self, status: StepStatus) -> list[StepResult]:
        return [r for r in self.results if r.status == status]

    @property
    def succeeded(self) -> list[StepResult]:
        return self.by_status(StepStatus.SUCCEEDED)

    @property
    def failed(self) -> list[StepResult]:
        return self.by_status(StepStatus.FAILED)

    @property
    def cancelled(self) -> list[StepResult]:
        return self.by_status(StepStatus.CANCELLED)

    @property
    def success(self) -> bool:
        return not self.failed and not self.cancelled

    def get(self, name: str) -> StepResult | None:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def raise_for_failures(self) -> None:
        """Raise BuildFailedError if any step failed."""
        if self.failed:
            raise BuildFailedError([r.name for r in self.failed])

    def to_dict(self) -> dict[str, Any]:
        return {
            "build_id": self.build_id,
            "success": self.success,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "cancelled": len(self.cancelled),
            "removed_images": list(self.removed_images),
            "steps": [r.to_dict() for r in self.results],
        }


__all__ = [
    "BuildFailedError",
    "BuildReport",
    "StepResult",
    "StepStage",
    "StepStatus",
]
