"""layerbuild - dependency-ordered, multi-stage container image builds.

This package turns a declarative build manifest into leveled build steps,
builds each step against a Docker daemon, and optionally squashes the
layers produced by cleanup commands into a single layer.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
