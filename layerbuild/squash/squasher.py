"""Layer squashing.

This module handles:
- Choosing the squash point of an export
- Merging every layer above it into one new layer
- Tagging and writing the squashed export

All working files live in a temporary directory owned by the call; it is
removed on return, on error and when the process unwinds from a signal.
"""

from __future__ import annotations

import logging
import sys
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from layerbuild.squash.export import Export, Layer, SquashError, parse_tag

logger = logging.getLogger(__name__)

TEMP_PREFIX = "layerbuild-squash-"


@dataclass
class SquashResult:
    """Outcome of a squash.

    Attributes:
        squash_point: Id of the layer the merge started above.
        new_layer: Id of the inserted layer (None when nothing was merged).
        merged: Ids of the layers merged into the new layer.
        leaf: Id of the last layer of the resulting chain.
    """

    squash_point: str
    new_layer: str | None
    leaf: str
    merged: list[str] = field(default_factory=list)


def choose_squash_point(export: Export, from_layer: str | None = None) -> Layer:
    """Pick the layer above which layers are merged.

    Preference: explicit ``from_layer`` (an id, id prefix or ``root``),
    the last earlier squash result, the first base image layer, the root.

    Raises:
        SquashError: If no layer matches.
    """
    if from_layer:
        if from_layer == "root":
            start = export.root()
        else:
            start = export.get_by_id(from_layer)
    else:
        start = export.first_squash() or export.first_from() or export.root()

    if start is None:
        raise SquashError(f"No layer matching {from_layer or 'root'}", code="layer_not_found")
    return start


def _log_history(export: Export, highlight: str | None) -> None:
    for short_id, cmd in export.history():
        marker = "->" if highlight and highlight.startswith(short_id) else "- "
        logger.debug("  %s %s %s", marker, short_id, cmd)


def squash(
    source: Path | IO[bytes],
    output: Path | IO[bytes] | None = None,
    tag: str | None = None,
    from_layer: str | None = None,
    tmp_dir: Path | None = None,
) -> SquashResult:
    """Squash an image export.

    Args:
        source: ``docker save`` archive path or stream.
        output: Destination path or stream (None: stdout).
        tag: Optional ``repo[:tag]`` applied to the resulting leaf.
        from_layer: Explicit squash point (layer id or ``root``).
        tmp_dir: Parent directory for working files.

    Returns:
        SquashResult describing the new chain.

    Raises:
        SquashError: On malformed tags, ambiguous or invalid exports, or
            unsupported layer content.
    """
    if tag:
        parse_tag(tag)

    with tempfile.TemporaryDirectory(
        prefix=TEMP_PREFIX, dir=str(tmp_dir) if tmp_dir else None
    ) as workdir:
        logger.debug("Squashing in %s", workdir)
        export = Export.load(source, Path(workdir))
        export.check_single_image()

        start = choose_squash_point(export, from_layer)
        export.extract_layers()

        new_layer: Layer | None = None
        merged: list[str] = []
        if export.child_of(start.id) is None:
            logger.info("Nothing to squash above %s", start.short_id)
        else:
            new_layer = export.insert_layer(start.id)
            logger.debug(
                "Inserted new layer %s after %s", new_layer.short_id, start.short_id
            )
            _log_history(export, new_layer.id)

            merged = export.squash_layers(new_layer)
            export.retarget_tags(merged, new_layer.id)
            logger.debug("Tarring up squashed layer %s", new_layer.short_id)
            export.tar_layer(new_layer)

        export.remove_extracted_layers()

        if tag:
            export.set_tag(tag)

        leaf = export.last_child()
        if leaf is None:
            raise SquashError("Export contains no layers", code="invalid_export")

        if output is None:
            logger.debug("Writing squashed image to stdout")
            export.write(sys.stdout.buffer)
        elif isinstance(output, Path):
            logger.debug("Writing squashed image to %s", output)
            with open(output, "wb") as f:
                export.write(f)
        else:
            export.write(output)

        _log_history(export, new_layer.id if new_layer else None)
        logger.info(
            "Squashed %d layer(s) into %s",
            len(merged),
            new_layer.short_id if new_layer else start.short_id,
        )
        return SquashResult(
            squash_point=start.id,
            new_layer=new_layer.id if new_layer else None,
            leaf=leaf.id,
            merged=merged,
        )


__all__ = ["TEMP_PREFIX", "SquashResult", "choose_squash_point", "squash"]
