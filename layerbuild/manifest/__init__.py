"""Build manifest module.

This module handles:
- Validating build files (schema.py)
- Loading and converting build files into steps (io.py)
- Resolving steps into dependency-ordered build levels (resolver.py)
"""

from layerbuild.manifest.io import load_manifest, load_manifest_from_settings
from layerbuild.manifest.models import Artifact, Manifest, Secret, Step
from layerbuild.manifest.resolver import ManifestError, resolve_build_levels

__all__ = [
    "Artifact",
    "Manifest",
    "ManifestError",
    "Secret",
    "Step",
    "load_manifest",
    "load_manifest_from_settings",
    "resolve_build_levels",
]
