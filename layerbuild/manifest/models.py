"""Runtime models for a loaded build manifest.

Steps are immutable once loaded. Dependencies are held as step names and
resolved through the owning Manifest.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from layerbuild.secrets import SecretProvider


@dataclass(frozen=True)
class Artifact:
    """A file or directory copied out of a step's container.

    Attributes:
        step: Name of the step producing the artifact.
        source: Path inside the built image.
        dest: Host directory, relative to the work directory.
    """

    step: str
    source: str
    dest: str = "."

    @property
    def filename(self) -> str:
        return posixpath.basename(self.source.rstrip("/"))


@dataclass(frozen=True)
class Secret:
    """A secret declared by a step."""

    name: str
    type: str
    value: str


@dataclass(frozen=True, eq=False)
class Step:
    """A single build step producing one image.

    Attributes:
        name: Image name of the step, unique within the manifest.
        label: Key of the step in the build file.
        dockerfile: Dockerfile path relative to the work directory.
        context: Build context relative to the work directory (None: work directory).
        target: Optional build stage to stop at.
        args: Build arguments.
        artifacts: Artifacts to copy to the host after the build.
        cleanup_commands: Commands run in a container before squashing.
        depends_on: Names of steps that must be built first.
        command: Optional command run inside the built container.
        after_build_command: Optional shell command run on the host.
        no_cache: Build without the daemon's cache.
        keep: Keep the step image even when it only serves as a base.
        secrets: Secrets registered for the step.
    """

    name: str
    label: str
    dockerfile: str = "Dockerfile"
    context: str | None = None
    target: str | None = None
    args: dict[str, str] = field(default_factory=dict)
    artifacts: tuple[Artifact, ...] = ()
    cleanup_commands: tuple[str, ...] = ()
    depends_on: tuple[str, ...] = ()
    command: str | None = None
    after_build_command: str | None = None
    no_cache: bool = False
    keep: bool = False
    secrets: tuple[Secret, ...] = ()

    @property
    def needs_container(self) -> bool:
        """Whether the step needs an ephemeral container after the image build."""
        return bool(self.artifacts or self.cleanup_commands or self.command)


@dataclass(frozen=True, eq=False)
class Manifest:
    """A loaded build manifest.

    Attributes:
        steps: All steps, in build file order.
        build_levels: Steps partitioned so every dependency lies in an earlier level.
        version: Build file schema version.
        workdir: Optional work directory declared by the build file.
        secret_providers: Providers holding the registered secrets.
    """

    steps: tuple[Step, ...]
    build_levels: tuple[tuple[Step, ...], ...]
    version: str = ""
    workdir: str | None = None
    secret_providers: dict[str, SecretProvider] = field(default_factory=dict)

    @property
    def is_privileged(self) -> bool:
        """Whether any step runs cleanup commands."""
        return any(step.cleanup_commands for step in self.steps)

    def find_step_by_name(self, name: str) -> Step | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def find_step_by_label(self, label: str) -> Step | None:
        for step in self.steps:
            if step.label == label:
                return step
        return None

    def level_of(self, name: str) -> int:
        for idx, level in enumerate(self.build_levels):
            if any(step.name == name for step in level):
                return idx
        raise KeyError(name)

    def dependents_of(self, name: str) -> set[str]:
        """Names of all steps that depend on ``name``, directly or transitively."""
        found: set[str] = set()
        frontier = [name]
        while frontier:
            current = frontier.pop()
            for step in self.steps:
                if current in step.depends_on and step.name not in found:
                    found.add(step.name)
                    frontier.append(step.name)
        return found


__all__ = ["Artifact", "Manifest", "Secret", "Step"]
