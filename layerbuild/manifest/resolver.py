"""Dependency leveling for build steps.

Steps are partitioned into build levels: level 0 holds every step without
dependencies, level k every step whose deepest dependency sits in level k-1.
Steps inside a level are independent and may be built concurrently.

The algorithm works on indexes into the step sequence and a private
in-degree table, so Step records are never modified.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from layerbuild.manifest.models import Step

logger = logging.getLogger(__name__)


class ManifestError(Exception):
    """Raised when a build manifest is invalid."""

    def __init__(self, message: str, code: str = "invalid_manifest") -> None:
        super().__init__(message)
        self.code = code


def check_unique_names(names: Iterable[str]) -> set[str]:
    """Check step names are unique.

    Returns:
        The set of names.

    Raises:
        ManifestError: On duplicate names.
    """
    seen: set[str] = set()
    dupes: list[str] = []
    for name in names:
        if name in seen and name not in dupes:
            dupes.append(name)
        seen.add(name)
    if dupes:
        raise ManifestError(
            f"Duplicate step name(s): {', '.join(dupes)}",
            code="duplicate_step",
        )
    return seen


def validate_steps(steps: Sequence[Step]) -> None:
    """Check step names are unique, then that dependencies resolve.

    Raises:
        ManifestError: On duplicate names or unknown dependencies.
    """
    seen = check_unique_names(step.name for step in steps)

    for step in steps:
        for dep in step.depends_on:
            if dep not in seen:
                raise ManifestError(
                    f"Step '{step.name}' depends on unknown step '{dep}'",
                    code="unknown_dependency",
                )


def resolve_build_levels(steps: Sequence[Step]) -> list[list[Step]]:
    """Partition steps into build levels.

    Args:
        steps: Steps of a manifest, in manifest order.

    Returns:
        Levels in build order. Within a level, steps keep manifest order.

    Raises:
        ManifestError: If names are duplicated, a dependency is unknown, or
            the dependencies contain a cycle. No levels are returned on error.
    """
    validate_steps(steps)

    index = {step.name: idx for idx, step in enumerate(steps)}
    dependents: list[list[int]] = [[] for _ in steps]
    indegree = [0] * len(steps)

    for idx, step in enumerate(steps):
        # dict.fromkeys drops repeated references while keeping order
        for dep in dict.fromkeys(step.depends_on):
            dependents[index[dep]].append(idx)
            indegree[idx] += 1

    remaining = list(range(len(steps)))
    levels: list[list[Step]] = []

    while remaining:
        level = [idx for idx in remaining if indegree[idx] == 0]
        if not level:
            stuck = ", ".join(steps[idx].name for idx in remaining)
            raise ManifestError(
                f"Found circular dependency between steps: {stuck}",
                code="circular_dependency",
            )

        for idx in level:
            for child in dependents[idx]:
                indegree[child] -= 1

        placed = set(level)
        remaining = [idx for idx in remaining if idx not in placed]
        levels.append([steps[idx] for idx in level])

    logger.debug(
        "Resolved %d step(s) into %d level(s)", len(steps), len(levels)
    )
    return levels


__all__ = ["ManifestError", "check_unique_names", "resolve_build_levels", "validate_steps"]
