"""Build scheduling.

This module handles:
- Selecting the steps of a run (all steps, or a start step and its dependents)
- Running build levels in order with a barrier between levels
- Running the steps of a level concurrently on a thread pool
- Cancelling unstarted steps once a step fails
- Removing intermediate images and artifact directories after the run

A failing step never aborts the process: running siblings finish, every
step that has not started is cancelled and the outcome of each step is
returned in a BuildReport.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import TYPE_CHECKING

from docker.errors import APIError, DockerException

from layerbuild.builds.artifacts import (
    ArtifactError,
    collect_host_artifact_roots,
    remove_host_artifact_roots,
)
from layerbuild.builds.dockerfile import DockerfileError
from layerbuild.builds.runner import StepBuildError, StepRunner, unique_step_name
from layerbuild.manifest.resolver import ManifestError
from layerbuild.squash import SquashError
from layerbuild.types import BuildReport, StepResult, StepStage, StepStatus

if TYPE_CHECKING:
    from docker import DockerClient

    from layerbuild.config import Settings
    from layerbuild.manifest.models import Manifest, Step

logger = logging.getLogger(__name__)

# Errors that fail a single step
STEP_ERRORS = (
    StepBuildError,
    DockerfileError,
    ArtifactError,
    SquashError,
    DockerException,
    OSError,
)


def select_steps(manifest: Manifest, start_step: str | None = None) -> set[str]:
    """Names of the steps a run builds.

    Args:
        manifest: Loaded manifest.
        start_step: Optional step name or label to resume from.

    Returns:
        Every step name, or the start step and all steps depending on it.

    Raises:
        ManifestError: If the start step does not exist.
    """
    if not start_step:
        return {step.name for step in manifest.steps}

    step = manifest.find_step_by_name(start_step) or manifest.find_step_by_label(start_step)
    if step is None:
        raise ManifestError(
            f"Start step '{start_step}' not found in the build file",
            code="unknown_start_step",
        )
    return {step.name} | manifest.dependents_of(step.name)


class BuildScheduler:
    """Runs the steps of a manifest against a Docker daemon."""

    def __init__(
        self,
        manifest: Manifest,
        settings: Settings,
        client: DockerClient,
        extra_build_args: dict[str, str] | None = None,
        runner: StepRunner | None = None,
    ) -> None:
        self.manifest = manifest
        self.settings = settings
        self.client = client
        self.runner = runner or StepRunner(client, settings, manifest, extra_build_args)

    def image_name(self, step: Step) -> str:
        return unique_step_name(step.name, self.settings.unique_id)

    def run(self) -> BuildReport:
        """Build every selected step, level by level.

        Returns:
            BuildReport with one result per manifest step.

        Raises:
            ManifestError: If the configured start step does not exist.
        """
        selected = select_steps(self.manifest, self.settings.start_step)
        report = BuildReport(build_id=self.settings.unique_id)

        plan: list[list[tuple[Step, StepResult]]] = []
        for level_idx, level in enumerate(self.manifest.build_levels):
            entries = []
            for step in level:
                result = StepResult(
                    name=step.name,
                    label=step.label,
                    level=level_idx,
                    image=self.image_name(step),
                )
                if step.name not in selected:
                    result.status = StepStatus.SKIPPED
                report.results.append(result)
                entries.append((step, result))
            plan.append(entries)

        roots: list[Path] = []
        if not self.settings.keep_artifacts:
            logger.debug("Collecting artifact information")
            roots = collect_host_artifact_roots(
                self.settings.workdir,
                (a for s in self.manifest.steps if s.name in selected for a in s.artifacts),
            )

        number = 0
        numbers: dict[str, int] = {}
        for entries in plan:
            for step, result in entries:
                if result.status is StepStatus.PENDING:
                    number += 1
                    numbers[step.name] = number
                    logger.debug("Step %d - %s, image-name = '%s'", number, step.label, result.image)

        try:
            aborted = False
            for level_idx, entries in enumerate(plan):
                pending = [(s, r) for s, r in entries if r.status is StepStatus.PENDING]
                if not pending:
                    continue
                if aborted:
                    for _, result in pending:
                        result.status = StepStatus.CANCELLED
                    continue

                logger.info(
                    "Level %d: building %s",
                    level_idx,
                    ", ".join(step.name for step, _ in pending),
                )
                if not self._run_level(pending, numbers):
                    aborted = True

            if report.failed:
                logger.error(
                    "Build failed for step(s): %s",
                    ", ".join(r.name for r in report.failed),
                )
            elif not self.settings.keep_steps:
                report.removed_images = self.remove_intermediate_images(report)
        finally:
            if roots:
                remove_host_artifact_roots(roots)

        return report

    def _run_level(
        self, entries: list[tuple[Step, StepResult]], numbers: dict[str, int]
    ) -> bool:
        """Run one level; returns False if any step failed."""
        workers = self.settings.max_concurrent_steps or len(entries)
        ok = True
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures: dict[Future[bool], StepResult] = {
                pool.submit(self._run_step, step, result, numbers[step.name]): result
                for step, result in entries
            }
            for future in as_completed(futures):
                if future.cancelled() or future.result():
                    continue
                ok = False
                for other, result in futures.items():
                    if other.cancel():
                        result.status = StepStatus.CANCELLED
                        logger.info("Cancelled step %s", result.name)
        return ok

    def _run_step(self, step: Step, result: StepResult, number: int) -> bool:
        result.status = StepStatus.RUNNING
        started = time.monotonic()
        try:
            self.runner.run(step, result, number)
        except STEP_ERRORS as e:
            logger.error(
                "Step %d - Build for %s failed during %s: %s",
                number,
                step.name,
                result.stage.value,
                e,
            )
            self._record_failure(result, e)
            return False
        except Exception as e:
            logger.exception(
                "Step %d - Unexpected error building %s during %s",
                number,
                step.name,
                result.stage.value,
            )
            self._record_failure(result, e)
            return False
        finally:
            result.duration = time.monotonic() - started

        result.status = StepStatus.SUCCEEDED
        logger.info("Step %d - %s built as %s", number, step.name, result.image)
        return True

    @staticmethod
    def _record_failure(result: StepResult, error: Exception) -> None:
        result.status = StepStatus.FAILED
        result.error = str(error)
        result.error_code = str(getattr(error, "code", type(error).__name__))
        if isinstance(error, StepBuildError) and error.exit_code is not None:
            result.exit_code = error.exit_code
        result.stage = StepStage.FAILED

    def remove_intermediate_images(self, report: BuildReport) -> list[str]:
        """Remove images of steps that only served as a base for later steps.

        Returns:
            Names of the removed images.
        """
        bases = {name for result in report.results for name in result.bases}
        removed: list[str] = []
        for result in report.succeeded:
            step = self.manifest.find_step_by_name(result.name)
            if step is None or step.keep or result.name not in bases:
                continue

            logger.debug("Removing intermediate image %s", result.image)
            try:
                self.client.images.remove(
                    result.image,
                    force=self.settings.force_rm_images,
                    noprune=self.settings.no_prune_rm_images,
                )
            except APIError as e:
                logger.warning("Failed to remove image %s: %s", result.image, e)
                continue
            removed.append(result.image)
        return removed


__all__ = ["STEP_ERRORS", "BuildScheduler", "select_steps"]
