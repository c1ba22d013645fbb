"""Image export model for layer squashing.

This module handles:
- Loading a ``docker save`` archive (legacy per-layer layout) into a layer graph
- Extracting layer content and merging layers with union-filesystem whiteouts
- Inserting the squashed layer and re-serializing the export

Export layout::

    repositories            {"repo": {"tag": "<layer id>"}}
    <layer id>/VERSION
    <layer id>/json         {"id", "parent", "config", "container_config", ...}
    <layer id>/layer.tar    filesystem delta of the layer
"""

from __future__ import annotations

import copy
import io
import json
import logging
import os
import posixpath
import shutil
import tarfile
from collections.abc import Collection
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, Any

logger = logging.getLogger(__name__)

REPOSITORIES_FILES = ("repositories", "repositories.json")
LAYER_VERSION = "1.0"

# Markers found in container_config.Cmd
SQUASH_MARKER = "#(squash)"
FROM_MARKER = "#(nop) ADD file"

WHITEOUT_PREFIX = ".wh."
OPAQUE_WHITEOUT = ".wh..wh..opq"


class SquashError(Exception):
    """Raised when an export cannot be squashed."""

    def __init__(self, message: str, code: str = "squash_error") -> None:
        super().__init__(message)
        self.code = code


def new_layer_id() -> str:
    """Random 64 hex character layer id."""
    return os.urandom(32).hex()


def normalize_member_name(name: str) -> str:
    """Normalize a layer tar member name to a relative posix path.

    Raises:
        SquashError: If the name is absolute or escapes the layer root.
    """
    norm = posixpath.normpath(name)
    if posixpath.isabs(norm) or norm == ".." or norm.startswith("../"):
        raise SquashError(f"Invalid path in layer tar: {name}", code="invalid_tar_entry")
    return norm


def whiteout_target(path: str) -> str | None:
    """Path hidden by a whiteout marker, or None for regular entries.

    For the opaque marker the target is its directory.
    """
    dirname, base = posixpath.split(path)
    if base == OPAQUE_WHITEOUT:
        return dirname
    if base.startswith(WHITEOUT_PREFIX):
        return posixpath.join(dirname, base[len(WHITEOUT_PREFIX):])
    return None


def _is_under(path: str, parent: str) -> bool:
    if not parent or parent == ".":
        return True
    return path.startswith(parent + "/")


@dataclass
class Layer:
    """One layer of an export.

    Attributes:
        id: Layer id (directory name in the export).
        path: Directory holding VERSION, json and layer.tar.
        config: Parsed layer json.
        members: Tar metadata of extracted entries, by normalized path.
    """

    id: str
    path: Path
    config: dict[str, Any]
    members: dict[str, tarfile.TarInfo] = field(default_factory=dict)

    @property
    def parent(self) -> str | None:
        return self.config.get("parent") or None

    @parent.setter
    def parent(self, value: str | None) -> None:
        if value:
            self.config["parent"] = value
        else:
            self.config.pop("parent", None)

    @property
    def short_id(self) -> str:
        return self.id[:12]

    @property
    def layer_tar(self) -> Path:
        return self.path / "layer.tar"

    @property
    def extract_dir(self) -> Path:
        return self.path / "layer"

    @property
    def command(self) -> str:
        container_config = self.config.get("container_config") or {}
        cmd = container_config.get("Cmd") or []
        if isinstance(cmd, str):
            return cmd
        return " ".join(cmd)

    def write_metadata(self) -> None:
        (self.path / "VERSION").write_text(LAYER_VERSION, encoding="utf-8")
        (self.path / "json").write_text(json.dumps(self.config), encoding="utf-8")

    def extract(self) -> None:
        """Extract layer.tar into the layer's working directory.

        Only regular files carry content on disk; metadata for every entry
        is kept in ``members``.

        Raises:
            SquashError: On unsupported entry types or unsafe paths.
        """
        self.extract_dir.mkdir(parents=True, exist_ok=True)
        self.members = {}
        if not self.layer_tar.exists():
            return

        try:
            with tarfile.open(self.layer_tar, mode="r:*") as tar:
                for member in tar:
                    name = normalize_member_name(member.name)
                    if name == ".":
                        continue
                    if not (member.isreg() or member.isdir() or member.issym() or member.islnk()):
                        raise SquashError(
                            f"Unsupported entry type for '{member.name}' in layer {self.short_id}",
                            code="invalid_tar_entry",
                        )

                    target = self.extract_dir / name
                    if member.isdir():
                        target.mkdir(parents=True, exist_ok=True)
                    elif member.isreg():
                        target.parent.mkdir(parents=True, exist_ok=True)
                        src = tar.extractfile(member)
                        if src is None:
                            raise SquashError(
                                f"Cannot read '{member.name}' in layer {self.short_id}",
                                code="invalid_tar_entry",
                            )
                        with src, open(target, "wb") as dst:
                            shutil.copyfileobj(src, dst)

                    member.name = name
                    if member.islnk():
                        member.linkname = normalize_member_name(member.linkname)
                    self.members[name] = member
        except tarfile.TarError as e:
            raise SquashError(
                f"Cannot read layer {self.short_id}: {e}", code="invalid_export"
            ) from e

    def remove_extracted(self) -> None:
        shutil.rmtree(self.extract_dir, ignore_errors=True)


class _MergedTree:
    """Accumulated file tree of a squashed range.

    Each entry keeps its tar metadata and, for regular files, the on-disk
    path holding its content.
    """

    def __init__(self) -> None:
        self.entries: dict[str, tuple[tarfile.TarInfo, Path | None]] = {}

    def detach_links(self, path: str, doomed: Collection[str] = ()) -> None:
        """Give hardlinks to ``path`` their own copy before the path changes.

        The first link takes over the entry and content of ``path``; any
        other links are re-pointed at it. Links in ``doomed`` are ignored.
        """
        current = self.entries.get(path)
        if current is None:
            return
        links = sorted(
            p
            for p, (member, _) in self.entries.items()
            if member.islnk() and member.linkname == path and p not in doomed
        )
        if not links:
            return

        target, content = current
        first = links[0]
        promoted = copy.copy(target)
        promoted.name = first
        self.entries[first] = (promoted, content)
        for p in links[1:]:
            link = copy.copy(self.entries[p][0])
            link.linkname = first
            self.entries[p] = (link, None)

    def remove(self, path: str, children_only: bool = False) -> None:
        doomed = [p for p in self.entries if _is_under(p, path)]
        if not children_only:
            doomed.append(path)
        doomed_set = set(doomed)
        for p in doomed:
            self.detach_links(p, doomed_set)
        for p in doomed:
            self.entries.pop(p, None)

    def apply(self, layer: Layer) -> None:
        """Overlay a layer onto the tree."""
        # Whiteouts only hide content of earlier layers, so they are applied
        # before the layer's own entries.
        for path, member in layer.members.items():
            target = whiteout_target(path)
            if target is None:
                continue
            if posixpath.basename(path) == OPAQUE_WHITEOUT:
                self.remove(target, children_only=True)
            else:
                self.remove(target)
            self.entries[path] = (member, None)

        for path, member in layer.members.items():
            if whiteout_target(path) is not None:
                continue
            dirname, base = posixpath.split(path)
            marker = self.entries.pop(posixpath.join(dirname, WHITEOUT_PREFIX + base), None)
            if marker is not None and member.isdir():
                # Content below the squash point stays hidden
                opaque = copy.copy(marker[0])
                opaque.name = posixpath.join(path, OPAQUE_WHITEOUT)
                self.entries[opaque.name] = (opaque, None)

            self.detach_links(path)
            previous = self.entries.get(path)
            if previous is not None and previous[0].isdir() and not member.isdir():
                self.remove(path, children_only=True)

            content = layer.extract_dir / path if member.isreg() else None
            self.entries[path] = (member, content)

    def materialize(self, layer: Layer) -> None:
        """Copy the tree into a layer's working directory."""
        for path, (member, content) in sorted(self.entries.items()):
            target = layer.extract_dir / path
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
            elif content is not None:
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(content, target)
            elif member.isreg():
                # Whiteout markers
                target.parent.mkdir(parents=True, exist_ok=True)
                target.touch()
        layer.members = {path: member for path, (member, _) in self.entries.items()}


class Export:
    """A loaded image export.

    Attributes:
        path: Directory the export was unpacked into.
        layers: Layers by id.
        repositories: Repository tag map (repo -> tag -> layer id).
    """

    def __init__(
        self,
        path: Path,
        layers: dict[str, Layer],
        repositories: dict[str, dict[str, str]],
    ) -> None:
        self.path = path
        self.layers = layers
        self.repositories = repositories

    @classmethod
    def load(cls, source: Path | IO[bytes], workdir: Path) -> Export:
        """Unpack an export archive into ``workdir`` and parse it.

        Args:
            source: Archive path or readable binary stream.
            workdir: Empty directory to unpack into.

        Raises:
            SquashError: If the archive is unreadable or malformed.
        """
        try:
            if isinstance(source, Path):
                tar = tarfile.open(source, mode="r:*")
            else:
                tar = tarfile.open(fileobj=source, mode="r|*")
            with tar:
                tar.extractall(workdir, filter="data")
        except (tarfile.TarError, OSError) as e:
            raise SquashError(f"Cannot read export: {e}", code="invalid_export") from e

        repositories: dict[str, dict[str, str]] = {}
        for filename in REPOSITORIES_FILES:
            repo_file = workdir / filename
            if repo_file.exists():
                repositories = cls._read_json(repo_file)
                break

        layers: dict[str, Layer] = {}
        for entry in sorted(workdir.iterdir()):
            layer_json = entry / "json"
            if not entry.is_dir() or not layer_json.is_file():
                continue
            config = cls._read_json(layer_json)
            layer_id = config.get("id") or entry.name
            layers[layer_id] = Layer(id=layer_id, path=entry, config=config)

        if not layers:
            raise SquashError("Export contains no layers", code="invalid_export")

        export = cls(workdir, layers, repositories)
        logger.debug("Loaded export with %d layer(s)", len(layers))
        return export

    @staticmethod
    def _read_json(path: Path) -> dict[str, Any]:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise SquashError(f"Cannot parse {path.name}: {e}", code="invalid_export") from e
        if not isinstance(data, dict):
            raise SquashError(f"Expected an object in {path.name}", code="invalid_export")
        return data

    def check_single_image(self) -> None:
        """Reject exports whose repository map points at several images.

        Raises:
            SquashError: If any repository maps its tags to more than one id.
        """
        for repo, tags in self.repositories.items():
            if len(set(tags.values())) > 1:
                raise SquashError(
                    f"Repository '{repo}' in this export holds multiple images; "
                    "export a specific image id or tag instead",
                    code="ambiguous_export",
                )

    def root(self) -> Layer | None:
        for layer in self.layers.values():
            if layer.parent is None or layer.parent not in self.layers:
                return layer
        return None

    def child_of(self, layer_id: str) -> Layer | None:
        for layer in self.layers.values():
            if layer.parent == layer_id:
                return layer
        return None

    def chain(self) -> list[Layer]:
        """Layers from the root down to the leaf."""
        result: list[Layer] = []
        current = self.root()
        while current is not None and current not in result:
            result.append(current)
            current = self.child_of(current.id)
        return result

    def last_child(self) -> Layer | None:
        chain = self.chain()
        return chain[-1] if chain else None

    def first_squash(self) -> Layer | None:
        """Most recent layer produced by an earlier squash."""
        found = None
        for layer in self.chain():
            if SQUASH_MARKER in layer.command:
                found = layer
        return found

    def first_from(self) -> Layer | None:
        """First layer created by a base image ADD."""
        for layer in self.chain():
            if FROM_MARKER in layer.command:
                return layer
        return None

    def get_by_id(self, layer_id: str) -> Layer:
        """Find a layer by full id or unique id prefix.

        Raises:
            SquashError: If no single layer matches.
        """
        if layer_id in self.layers:
            return self.layers[layer_id]
        matches = [lid for lid in self.layers if lid.startswith(layer_id)]
        if len(matches) != 1:
            raise SquashError(f"No layer matching {layer_id}", code="layer_not_found")
        return self.layers[matches[0]]

    def extract_layers(self) -> None:
        for layer in self.chain():
            layer.extract()

    def remove_extracted_layers(self) -> None:
        for layer in self.layers.values():
            layer.remove_extracted()

    def insert_layer(self, parent_id: str) -> Layer:
        """Insert an empty layer as the sole child of ``parent_id``.

        The former child of the parent is re-parented onto the new layer.
        """
        parent = self.get_by_id(parent_id)
        child = self.child_of(parent.id)

        layer_id = new_layer_id()
        config: dict[str, Any] = {
            "id": layer_id,
            "parent": parent.id,
            "created": datetime.now(timezone.utc).isoformat(),
            "container_config": {
                "Cmd": ["/bin/sh", "-c", f"{SQUASH_MARKER} from {parent.short_id}"],
            },
        }
        for key in ("config", "architecture", "os"):
            if key in parent.config:
                config[key] = copy.deepcopy(parent.config[key])

        path = self.path / layer_id
        path.mkdir()
        layer = Layer(id=layer_id, path=path, config=config)
        layer.extract_dir.mkdir()
        layer.write_metadata()

        if child is not None:
            child.parent = layer.id
        self.layers[layer_id] = layer
        return layer

    def squash_layers(self, target: Layer) -> list[str]:
        """Merge every descendant of ``target`` into it.

        Descendants are merged parent to child: later entries overwrite
        earlier ones and whiteout markers remove what they hide. Each merged
        layer's child is re-parented onto ``target`` and the merged layer is
        dropped.

        Returns:
            Ids of the merged layers, in merge order.
        """
        tree = _MergedTree()
        tree.apply(target)
        merged: list[str] = []

        child = self.child_of(target.id)
        while child is not None:
            logger.debug("Squashing %s into %s", child.short_id, target.short_id)
            tree.apply(child)
            # Runtime config of the newest merged layer wins
            for key in ("config", "architecture", "os"):
                if key in child.config:
                    target.config[key] = copy.deepcopy(child.config[key])

            grandchild = self.child_of(child.id)
            if grandchild is not None:
                grandchild.parent = target.id
            del self.layers[child.id]
            merged.append(child.id)
            child = grandchild

        tree.materialize(target)
        return merged

    def tar_layer(self, layer: Layer) -> None:
        """Write ``layer.tar`` from the layer's working directory."""
        # Parents sort before children; hardlinks go last so their targets exist
        ordered = sorted(layer.members.items(), key=lambda item: (item[1].islnk(), item[0]))
        with tarfile.open(layer.layer_tar, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for path, member in ordered:
                info = copy.copy(member)
                info.name = path
                # Stale pax values would override the normalized name and size
                info.pax_headers = {
                    k: v
                    for k, v in member.pax_headers.items()
                    if k not in ("path", "linkpath", "size")
                }
                if info.isreg():
                    content = layer.extract_dir / path
                    info.size = content.stat().st_size
                    with open(content, "rb") as f:
                        tar.addfile(info, f)
                else:
                    tar.addfile(info)
        layer.write_metadata()

    def set_tag(self, tag: str) -> Layer:
        """Point ``repo[:tag]`` at the leaf layer.

        Any previous entry of the repository is replaced.

        Raises:
            SquashError: On malformed tags.
        """
        repo, tag_part = parse_tag(tag)
        leaf = self.last_child()
        if leaf is None:
            raise SquashError("Export contains no layers", code="invalid_export")
        self.repositories[repo] = {tag_part: leaf.id}
        logger.debug("Tagging %s as %s:%s", leaf.short_id, repo, tag_part)
        return leaf

    def retarget_tags(self, old_ids: list[str], new_id: str) -> None:
        """Point tags that reference merged layers at ``new_id``."""
        for tags in self.repositories.values():
            for tag, layer_id in tags.items():
                if layer_id in old_ids:
                    tags[tag] = new_id

    def history(self) -> list[tuple[str, str]]:
        """(short id, command) for every layer in chain order."""
        return [(layer.short_id, layer.command[:60]) for layer in self.chain()]

    def write(self, dest: IO[bytes]) -> None:
        """Serialize the layer chain and repositories into a tar stream."""
        with tarfile.open(fileobj=dest, mode="w|") as tar:
            for layer in self.chain():
                layer.write_metadata()
                tar.add(layer.path, arcname=layer.id, recursive=False)
                for name in ("VERSION", "json", "layer.tar"):
                    member_path = layer.path / name
                    if member_path.exists():
                        tar.add(member_path, arcname=f"{layer.id}/{name}")

            if self.repositories:
                data = json.dumps(self.repositories).encode("utf-8")
                info = tarfile.TarInfo("repositories")
                info.size = len(data)
                info.mode = 0o644
                info.mtime = int(datetime.now(timezone.utc).timestamp())
                tar.addfile(info, io.BytesIO(data))


def parse_tag(tag: str) -> tuple[str, str]:
    """Split ``repo[:tag]``; the tag defaults to ``latest``.

    Only a colon after the last slash separates the tag, so registry ports
    stay part of the repository.

    Raises:
        SquashError: If the repository or tag part is empty.
    """
    repo, tag_part = tag, "latest"
    head, sep, tail = tag.rpartition(":")
    if sep and "/" not in tail:
        repo, tag_part = head, tail
    if not repo or not tag_part:
        raise SquashError(f"Bad tag format: {tag}", code="bad_tag")
    return repo, tag_part


__all__ = [
    "FROM_MARKER",
    "OPAQUE_WHITEOUT",
    "SQUASH_MARKER",
    "WHITEOUT_PREFIX",
    "Export",
    "Layer",
    "SquashError",
    "new_layer_id",
    "normalize_member_name",
    "parse_tag",
    "whiteout_target",
]
