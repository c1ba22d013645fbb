"""Per-step build pipeline.

This module handles:
- Naming images and containers per build id
- Rewriting and writing the step Dockerfile
- Building the image against the Docker daemon
- Running cleanup commands, committing and squashing the result
- Copying artifacts to the host and running the step command
- Running the after-build command on the host

Stages run strictly in order; the first failure aborts the step. The
ephemeral container and the generated Dockerfile are removed whatever the
outcome.
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import tempfile
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Any

from docker.errors import APIError, BuildError, DockerException, ImageLoadError
from docker.utils import parse_bytes

from layerbuild.builds.artifacts import copy_artifact, parse_stat_mode
from layerbuild.builds.dockerfile import (
    generated_dockerfile_name,
    read_dockerfile,
    read_dockerfile_to_target,
    replace_from_field,
    write_dockerfile,
)
from layerbuild.squash import squash
from layerbuild.types import StepResult, StepStage

if TYPE_CHECKING:
    from docker import DockerClient

    from layerbuild.config import Settings
    from layerbuild.manifest.models import Manifest, Step

logger = logging.getLogger(__name__)

_CONTAINER_NAME_PATTERN = re.compile(r"/?[^a-zA-Z0-9_-]+")


class StepBuildError(Exception):
    """Raised when a step fails against the daemon or on the host."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_failed",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


def unique_step_name(name: str, build_id: str = "") -> str:
    """Image name of a step for one build.

    The build id is appended to the repository part, keeping any tag:
    ``app:1.0`` with id ``42`` becomes ``app-42:1.0``. A colon followed by
    a path (registry port) is not a tag. Without a build id the name is
    returned unchanged.
    """
    if not build_id:
        return name
    repo, sep, tag = name.rpartition(":")
    if sep and "/" not in tag:
        return f"{repo}-{build_id}:{tag}".lower()
    return f"{name}-{build_id}".lower()


def container_name(image_name: str) -> str:
    """Unique name for an ephemeral step container."""
    return f"{_CONTAINER_NAME_PATTERN.sub('-', image_name)}.{uuid.uuid4().hex[:16]}"


def container_limits(settings: Settings) -> dict[str, Any]:
    """Build resource limits from settings.

    Raises:
        StepBuildError: If the memory limit cannot be parsed.
    """
    limits: dict[str, Any] = {}
    if settings.docker_memory:
        try:
            limits["memory"] = parse_bytes(settings.docker_memory)
        except DockerException as e:
            raise StepBuildError(
                f"Invalid memory limit '{settings.docker_memory}': {e}",
                code="invalid_limits",
            ) from e
    if settings.docker_cpu_shares is not None:
        limits["cpushares"] = settings.docker_cpu_shares
    if settings.docker_cpuset_cpus:
        limits["cpusetcpus"] = settings.docker_cpuset_cpus
    return limits


def _decode(output: bytes | str | None) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


class StepRunner:
    """Runs the build pipeline of single steps.

    One runner serves every step of a run; ``run`` is safe to call from
    several threads because all per-step state is local.
    """

    def __init__(
        self,
        client: DockerClient,
        settings: Settings,
        manifest: Manifest,
        extra_build_args: dict[str, str] | None = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self.manifest = manifest
        self.extra_build_args = dict(extra_build_args or {})
        self.limits = container_limits(settings)
        self.image_names = {
            step.name: self.image_name(step) for step in manifest.steps
        }

    @property
    def workdir(self) -> Path:
        return self.settings.workdir

    def image_name(self, step: Step) -> str:
        return unique_step_name(step.name, self.settings.unique_id)

    def build_args(self, step: Step) -> dict[str, str]:
        """Build arguments of a step; step values override run-wide ones."""
        args = dict(self.settings.build_args)
        args.update(self.extra_build_args)
        args.update(step.args)
        return args

    def run(self, step: Step, result: StepResult, number: int = 1) -> None:
        """Run every stage of a step, recording progress on ``result``.

        Raises:
            StepBuildError, DockerfileError, ArtifactError, SquashError:
                On the first failing stage.
        """
        image = self.image_name(step)
        generated = self.workdir / generated_dockerfile_name(
            step.dockerfile, self.settings.unique_id
        )
        logger.info("Step %d - Building %s from context '%s'", number, step.name, self.workdir)

        try:
            result.stage = StepStage.REWRITE_FROM
            result.bases = self.prepare_dockerfile(step, generated, number)

            result.stage = StepStage.IMAGE_BUILD
            self.build_image(step, image, generated, number)

            if step.needs_container:
                self.run_container_stages(step, image, result, number)

            if step.after_build_command:
                result.stage = StepStage.AFTER_BUILD
                self.run_after_build(step, number)
        finally:
            generated.unlink(missing_ok=True)

        result.stage = StepStage.DONE

    def prepare_dockerfile(self, step: Step, generated: Path, number: int) -> list[str]:
        """Rewrite the step Dockerfile and write it beside the original.

        Returns:
            Names of steps used as FROM images.
        """
        logger.info("Step %d - Parsing and converting '%s'", number, step.dockerfile)
        content = read_dockerfile(self.workdir / step.dockerfile)
        content, bases = replace_from_field(content, self.image_names)
        if step.target:
            content = read_dockerfile_to_target(content, step.target)
        write_dockerfile(content, generated)
        return bases

    def build_image(self, step: Step, image: str, dockerfile: Path, number: int) -> None:
        context = self.workdir / step.context if step.context else self.workdir
        logger.info("Step %d - Building the %s image from %s", number, image, dockerfile)

        try:
            _, logs = self.client.images.build(
                path=str(context),
                dockerfile=str(dockerfile.resolve()),
                tag=image,
                nocache=self.settings.no_cache or step.no_cache,
                rm=self.settings.rm_tmp_containers,
                forcerm=self.settings.force_rm_tmp_containers,
                buildargs=self.build_args(step),
                network_mode=self.settings.network,
                container_limits=self.limits or None,
                quiet=self.settings.suppress_output,
            )
        except BuildError as e:
            for chunk in e.build_log:
                if "stream" in chunk:
                    logger.error("Step %d - %s", number, chunk["stream"].rstrip())
            raise StepBuildError(
                f"Build of {image} failed: {e.msg}", code="build_failed"
            ) from e
        except APIError as e:
            raise StepBuildError(
                f"Docker daemon error building {image}: {e}", code="daemon_error"
            ) from e

        if not self.settings.suppress_output:
            for chunk in logs:
                if "stream" in chunk and chunk["stream"].strip():
                    logger.debug("Step %d - %s", number, chunk["stream"].rstrip())

    def run_container_stages(
        self, step: Step, image: str, result: StepResult, number: int
    ) -> None:
        """Create the step container and run cleanup, artifact and command stages."""
        result.stage = StepStage.CONTAINER_CREATE
        name = container_name(image)
        logger.info("Step %d - Creating container %s", number, name)
        try:
            container = self.client.containers.create(
                image, command="/bin/bash", tty=True, name=name
            )
        except APIError as e:
            raise StepBuildError(
                f"Failed to create container for {image}: {e}", code="daemon_error"
            ) from e

        failed = True
        try:
            if step.cleanup_commands and not self.settings.no_squash:
                result.stage = StepStage.CLEANUP_RUN
                self.run_cleanup(step, container, number)
                result.stage = StepStage.SQUASH
                self.squash_container(container, image, number)

            if step.artifacts:
                result.stage = StepStage.ARTIFACT_EXTRACT
                self.extract_artifacts(step, container, number)

            if step.command:
                result.stage = StepStage.COMMAND_RUN
                result.exit_code = self.run_command(step, container, number)
            failed = False
        finally:
            result.stage = StepStage.CONTAINER_TEARDOWN
            logger.debug("Step %d - Removing container %s", number, name)
            try:
                container.remove(v=True, force=True)
            except APIError as e:
                if not failed:
                    raise StepBuildError(
                        f"Failed to remove container {name}: {e}", code="daemon_error"
                    ) from e
                logger.warning("Step %d - Failed to remove container %s: %s", number, name, e)

    def run_cleanup(self, step: Step, container: Any, number: int) -> None:
        logger.info("Step %d - Running cleanup commands in %s", number, container.name)
        try:
            container.start()
            for command in step.cleanup_commands:
                logger.debug("Step %d - Cleanup: %s", number, command)
                exit_code, output = container.exec_run(shlex.split(command))
                text = _decode(output).rstrip()
                if text:
                    logger.debug("Step %d - %s", number, text)
                if exit_code != 0:
                    logger.warning(
                        "Step %d - Cleanup command '%s' exited with %s",
                        number,
                        command,
                        exit_code,
                    )
        except APIError as e:
            raise StepBuildError(
                f"Failed to run cleanup commands: {e}", code="cleanup_failed"
            ) from e

    def squash_container(self, container: Any, image: str, number: int) -> None:
        """Commit the cleaned container, squash it and load it back as ``image``."""
        try:
            committed = container.commit()
            container.stop(timeout=0)
        except APIError as e:
            raise StepBuildError(
                f"Failed to commit container {container.name}: {e}", code="squash_failed"
            ) from e

        tmp_dir = self.settings.tmp_dir
        with tempfile.TemporaryDirectory(
            prefix="layerbuild-export-", dir=str(tmp_dir) if tmp_dir else None
        ) as workdir:
            exported = Path(workdir) / "export.tar"
            squashed = Path(workdir) / "squashed.tar"

            logger.info("Step %d - Exporting %s to %s", number, committed.short_id, exported)
            try:
                with open(exported, "wb") as f:
                    for chunk in committed.save():
                        f.write(chunk)
            except APIError as e:
                raise StepBuildError(
                    f"Failed to export {committed.short_id}: {e}", code="squash_failed"
                ) from e

            logger.info("Step %d - Squashing %s", number, image)
            squash(exported, squashed, tag=image, tmp_dir=tmp_dir)

            logger.debug("Step %d - Loading squashed image %s", number, image)
            try:
                with open(squashed, "rb") as f:
                    self.client.images.load(f)
            except (APIError, ImageLoadError) as e:
                raise StepBuildError(
                    f"Failed to load squashed image {image}: {e}", code="load_failed"
                ) from e

    def extract_artifacts(self, step: Step, container: Any, number: int) -> None:
        modes: dict[str, int | None] = {}
        try:
            if self.settings.use_stat_for_permissions:
                container.start()
                for artifact in step.artifacts:
                    modes[artifact.source] = self._stat_mode(container, artifact.source, number)
                container.stop(timeout=0)
        except APIError as e:
            raise StepBuildError(
                f"Failed to read artifact permissions: {e}", code="daemon_error"
            ) from e

        logger.info("Step %d - Copying artifacts from %s", number, container.name)
        for artifact in step.artifacts:
            copy_artifact(container, artifact, self.workdir, modes.get(artifact.source))

    def _stat_mode(self, container: Any, source: str, number: int) -> int | None:
        exit_code, output = container.exec_run(["stat", "--format=%a", source])
        if exit_code != 0:
            logger.error(
                "Step %d - Failed to fetch permissions for %s: %s",
                number,
                source,
                _decode(output).strip(),
            )
            return None
        mode = parse_stat_mode(output)
        logger.debug("Step %d - Permissions for %s are %o", number, source, mode)
        return mode

    def run_command(self, step: Step, container: Any, number: int) -> int:
        """Run the step command in its container.

        Returns:
            The command exit code.

        Raises:
            StepBuildError: On daemon errors, or on a non-zero exit when
                ``fail_on_command_error`` is set.
        """
        command = step.command or ""
        logger.info("Step %d - Running '%s' in %s", number, command, container.name)
        try:
            container.start()
            exit_code, output = container.exec_run(shlex.split(command), tty=True)
            text = _decode(output).rstrip()
            if text:
                logger.info("Step %d - %s", number, text)
            container.stop(timeout=0)
        except APIError as e:
            raise StepBuildError(
                f"Failed to run '{step.command}': {e}", code="daemon_error"
            ) from e

        if exit_code != 0:
            logger.error(
                "Step %d - Command '%s' exited with %s", number, step.command, exit_code
            )
            if self.settings.fail_on_command_error:
                raise StepBuildError(
                    f"Command '{step.command}' exited with {exit_code}",
                    exit_code=exit_code,
                    code="command_failed",
                )
        return exit_code

    def run_after_build(self, step: Step, number: int) -> None:
        if not self.settings.allow_after_build_commands:
            logger.warning(
                "Step %d - Skipping after-build command (not allowed): %s",
                number,
                step.after_build_command,
            )
            return

        logger.info("Step %d - Running [%s] on host", number, step.after_build_command)
        try:
            proc = subprocess.run(
                ["sh", "-c", step.after_build_command or ""],
                cwd=self.workdir,
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise StepBuildError(
                f"Failed to run after-build command: {e}", code="after_build_failed"
            ) from e

        output = (proc.stdout + proc.stderr).rstrip()
        if output:
            logger.info("Step %d - %s", number, output)
        if proc.returncode != 0:
            raise StepBuildError(
                f"After-build command exited with {proc.returncode}",
                exit_code=proc.returncode,
                code="after_build_failed",
            )


__all__ = [
    "StepBuildError",
    "StepRunner",
    "container_limits",
    "container_name",
    "unique_step_name",
]
