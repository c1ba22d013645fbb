"""Image build orchestration.

This module handles:
- Dockerfile preprocessing (dockerfile.py)
- Docker daemon connection (daemon.py)
- Artifact extraction (artifacts.py)
- The per-step pipeline (runner.py)
- Level-by-level scheduling (scheduler.py)
"""

from layerbuild.builds.daemon import get_docker_client
from layerbuild.builds.runner import StepBuildError, StepRunner, unique_step_name
from layerbuild.builds.scheduler import BuildScheduler, select_steps

__all__ = [
    "BuildScheduler",
    "StepBuildError",
    "StepRunner",
    "get_docker_client",
    "select_steps",
    "unique_step_name",
]
