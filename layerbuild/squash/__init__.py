"""Layer squashing for saved images.

This module handles:
- Parsing ``docker save`` exports into a layer graph (export.py)
- Merging layers above a squash point into one (squasher.py)
"""

from layerbuild.squash.export import Export, Layer, SquashError
from layerbuild.squash.squasher import SquashResult, squash

__all__ = ["Export", "Layer", "SquashError", "SquashResult", "squash"]
