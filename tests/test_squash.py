"""Tests for the squash package.

Exports are built in memory in the legacy ``docker save`` layout.
"""

import io
import json
import tarfile
from pathlib import Path
from typing import Any

import pytest

from layerbuild.squash import SquashError, squash
from layerbuild.squash.export import (
    FROM_MARKER,
    SQUASH_MARKER,
    Export,
    normalize_member_name,
    parse_tag,
    whiteout_target,
)

L0 = "0" * 64
L1 = "1" * 64
L2 = "2" * 64
L3 = "3" * 64


def layer_tar(entries: list[tuple[str, str, Any]]) -> bytes:
    """Build a layer tar from (name, kind, payload) entries."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, kind, payload in entries:
            info = tarfile.TarInfo(name)
            if kind == "dir":
                info.type = tarfile.DIRTYPE
                info.mode = 0o755
                tar.addfile(info)
            elif kind == "file":
                data = payload.encode() if isinstance(payload, str) else payload
                info.size = len(data)
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
            elif kind == "link":
                info.type = tarfile.LNKTYPE
                info.linkname = payload
                tar.addfile(info)
            elif kind == "symlink":
                info.type = tarfile.SYMTYPE
                info.linkname = payload
                tar.addfile(info)
            elif kind == "fifo":
                info.type = tarfile.FIFOTYPE
                tar.addfile(info)
    return buf.getvalue()


def add_bytes(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    tar.addfile(info, io.BytesIO(data))


def make_export(
    path: Path,
    layers: list[tuple[str, str | None, str, list[tuple[str, str, Any]]]],
    repositories: dict[str, dict[str, str]] | None = None,
    config: dict[str, dict[str, Any]] | None = None,
) -> Path:
    """Write an export with (id, parent, command, entries) layers."""
    with tarfile.open(path, mode="w") as tar:
        for layer_id, parent, cmd, entries in layers:
            info = tarfile.TarInfo(layer_id)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
            meta: dict[str, Any] = {
                "id": layer_id,
                "container_config": {"Cmd": ["/bin/sh", "-c", cmd]},
            }
            if parent:
                meta["parent"] = parent
            if config and layer_id in config:
                meta["config"] = config[layer_id]
            add_bytes(tar, f"{layer_id}/VERSION", b"1.0")
            add_bytes(tar, f"{layer_id}/json", json.dumps(meta).encode())
            add_bytes(tar, f"{layer_id}/layer.tar", layer_tar(entries))
        if repositories is not None:
            add_bytes(tar, "repositories", json.dumps(repositories).encode())
    return path


def read_output(path: Path) -> tuple[dict[str, Any], dict[str, dict[str, Any]], dict[str, list[str]]]:
    """Return repositories, layer json by id and layer tar member names by id."""
    repositories: dict[str, Any] = {}
    configs: dict[str, dict[str, Any]] = {}
    members: dict[str, list[str]] = {}
    with tarfile.open(path) as tar:
        for member in tar.getmembers():
            if not member.isfile():
                continue
            data = tar.extractfile(member).read()  # type: ignore[union-attr]
            if member.name == "repositories":
                repositories = json.loads(data)
            elif member.name.endswith("/json"):
                configs[member.name.split("/")[0]] = json.loads(data)
            elif member.name.endswith("/layer.tar"):
                with tarfile.open(fileobj=io.BytesIO(data)) as layer:
                    members[member.name.split("/")[0]] = layer.getnames()
    return repositories, configs, members


def read_layer_file(path: Path, layer_id: str, name: str) -> bytes:
    with tarfile.open(path) as tar:
        data = tar.extractfile(f"{layer_id}/layer.tar").read()  # type: ignore[union-attr]
    with tarfile.open(fileobj=io.BytesIO(data)) as layer:
        return layer.extractfile(name).read()  # type: ignore[union-attr]


@pytest.fixture
def four_layers(tmp_path: Path) -> Path:
    """Base image layer plus three build layers."""
    return make_export(
        tmp_path / "export.tar",
        [
            (
                L0,
                None,
                f"{FROM_MARKER}:abc in /",
                [
                    ("etc", "dir", None),
                    ("etc/passwd", "file", "root:x:0:0"),
                    ("opt", "dir", None),
                    ("opt/old", "file", "old"),
                ],
            ),
            (
                L1,
                L0,
                "apk add build-base",
                [
                    ("tmp", "dir", None),
                    ("tmp/cache", "dir", None),
                    ("tmp/cache/x", "file", "junk"),
                    ("app", "dir", None),
                    ("app/run", "file", "v1"),
                    ("app/hard", "link", "app/run"),
                    ("opt/.wh..wh..opq", "file", ""),
                ],
            ),
            (
                L2,
                L1,
                "rm -rf /tmp/cache /etc/passwd",
                [
                    ("tmp/.wh.cache", "file", ""),
                    ("etc/.wh.passwd", "file", ""),
                    ("app/config", "file", "debug=0"),
                ],
            ),
            (
                L3,
                L2,
                "make install",
                [("app/run", "file", "v2"), ("app/sh", "symlink", "/bin/sh")],
            ),
        ],
        repositories={"app": {"latest": L3}},
        config={L0: {"Env": ["A=0"]}, L3: {"Env": ["A=3"], "Cmd": ["/app/run"]}},
    )


class TestParseTag:
    """Test repo[:tag] parsing."""

    def test_default_tag(self) -> None:
        """A bare repository gets the latest tag."""
        assert parse_tag("myimage") == ("myimage", "latest")

    def test_explicit_tag(self) -> None:
        """The part after the colon is the tag."""
        assert parse_tag("myimage:1.0") == ("myimage", "1.0")

    def test_registry_port(self) -> None:
        """A registry port is part of the repository."""
        assert parse_tag("reg:5000/app") == ("reg:5000/app", "latest")
        assert parse_tag("reg:5000/app:v2") == ("reg:5000/app", "v2")

    @pytest.mark.parametrize("tag", [":1.0", "myimage:"])
    def test_bad_tag(self, tag: str) -> None:
        """Empty repository or tag parts are rejected."""
        with pytest.raises(SquashError) as exc_info:
            parse_tag(tag)
        assert exc_info.value.code == "bad_tag"


class TestPathHelpers:
    """Test tar member path helpers."""

    def test_whiteout_target(self) -> None:
        """Whiteout markers name the path they hide."""
        assert whiteout_target("tmp/.wh.cache") == "tmp/cache"
        assert whiteout_target("opt/.wh..wh..opq") == "opt"
        assert whiteout_target("tmp/cache") is None

    def test_normalize(self) -> None:
        """Leading ./ and redundant separators are removed."""
        assert normalize_member_name("./usr//bin/") == "usr/bin"

    @pytest.mark.parametrize("name", ["/etc/passwd", "../escape", "a/../../b"])
    def test_normalize_rejects_unsafe(self, name: str) -> None:
        """Absolute paths and escapes are invalid."""
        with pytest.raises(SquashError) as exc_info:
            normalize_member_name(name)
        assert exc_info.value.code == "invalid_tar_entry"


class TestExport:
    """Test export loading and layer graph queries."""

    def test_graph(self, four_layers: Path, tmp_path: Path) -> None:
        """The chain is ordered root to leaf."""
        workdir = tmp_path / "work"
        workdir.mkdir()
        export = Export.load(four_layers, workdir)

        assert [layer.id for layer in export.chain()] == [L0, L1, L2, L3]
        assert export.root().id == L0  # type: ignore[union-attr]
        assert export.last_child().id == L3  # type: ignore[union-attr]
        assert export.first_from().id == L0  # type: ignore[union-attr]
        assert export.first_squash() is None
        assert export.get_by_id("2222").id == L2
        assert export.repositories == {"app": {"latest": L3}}

    def test_unknown_layer(self, four_layers: Path, tmp_path: Path) -> None:
        """Unknown ids raise layer_not_found."""
        workdir = tmp_path / "work"
        workdir.mkdir()
        export = Export.load(four_layers, workdir)
        with pytest.raises(SquashError) as exc_info:
            export.get_by_id("ffff")
        assert exc_info.value.code == "layer_not_found"

    def test_insert_layer(self, four_layers: Path, tmp_path: Path) -> None:
        """An inserted layer becomes the parent of the former child."""
        workdir = tmp_path / "work"
        workdir.mkdir()
        export = Export.load(four_layers, workdir)

        new = export.insert_layer(L0)

        assert new.parent == L0
        assert export.get_by_id(L1).parent == new.id
        assert SQUASH_MARKER in new.command
        assert new.config["config"] == {"Env": ["A=0"]}
        assert [layer.id for layer in export.chain()] == [L0, new.id, L1, L2, L3]

    def test_empty_export(self, tmp_path: Path) -> None:
        """An export without layers is invalid."""
        source = make_export(tmp_path / "empty.tar", [], repositories={})
        workdir = tmp_path / "work"
        workdir.mkdir()
        with pytest.raises(SquashError) as exc_info:
            Export.load(source, workdir)
        assert exc_info.value.code == "invalid_export"


class TestSquash:
    """Test squashing end to end."""

    def test_squash_above_base_image(self, four_layers: Path, tmp_path: Path) -> None:
        """Layers above the base image collapse into one new layer."""
        output = tmp_path / "out.tar"

        result = squash(four_layers, output, tag="app:squashed")

        assert result.squash_point == L0
        assert result.merged == [L1, L2, L3]
        assert result.new_layer is not None
        assert result.leaf == result.new_layer

        repositories, configs, members = read_output(output)
        new_id = result.new_layer
        assert set(configs) == {L0, new_id}
        assert configs[new_id]["parent"] == L0
        assert configs[new_id]["config"] == {"Env": ["A=3"], "Cmd": ["/app/run"]}
        assert repositories == {"app": {"squashed": new_id}}

        names = members[new_id]
        assert "tmp/cache/x" not in names
        assert "tmp/cache" not in names
        # Markers hiding base image content are kept
        assert "tmp/.wh.cache" in names
        assert "etc/.wh.passwd" in names
        assert "opt/.wh..wh..opq" in names
        assert "app/sh" in names
        # The link keeps the content it had when app/run was replaced
        assert read_layer_file(output, new_id, "app/hard") == b"v1"
        assert read_layer_file(output, new_id, "app/run") == b"v2"
        assert read_layer_file(output, new_id, "app/config") == b"debug=0"

    def test_untagged_squash_moves_existing_tags(self, four_layers: Path, tmp_path: Path) -> None:
        """Tags of merged layers point at the new layer."""
        output = tmp_path / "out.tar"
        result = squash(four_layers, output)
        repositories, _, _ = read_output(output)
        assert repositories == {"app": {"latest": result.new_layer}}

    def test_squash_from_root(self, four_layers: Path, tmp_path: Path) -> None:
        """from_layer=root keeps only the root below the new layer."""
        result = squash(four_layers, tmp_path / "out.tar", from_layer="root")
        assert result.squash_point == L0
        assert result.merged == [L1, L2, L3]

    def test_squash_from_layer_prefix(self, four_layers: Path, tmp_path: Path) -> None:
        """An explicit layer id prefix sets the squash point."""
        output = tmp_path / "out.tar"
        result = squash(four_layers, output, from_layer="2222")
        assert result.squash_point == L2
        assert result.merged == [L3]
        _, configs, _ = read_output(output)
        assert set(configs) == {L0, L1, L2, result.new_layer}

    def test_readded_directory_becomes_opaque(self, tmp_path: Path) -> None:
        """A whited out directory added again hides the lower content."""
        source = make_export(
            tmp_path / "export.tar",
            [
                (L0, None, f"{FROM_MARKER}:abc in /", [("srv", "dir", None), ("srv/a", "file", "a")]),
                (L1, L0, "rm -rf /srv", [(".wh.srv", "file", "")]),
                (L2, L1, "mkdir /srv", [("srv", "dir", None), ("srv/b", "file", "b")]),
            ],
        )
        output = tmp_path / "out.tar"
        result = squash(source, output)
        _, _, members = read_output(output)
        names = members[result.new_layer]  # type: ignore[index]
        assert ".wh.srv" not in names
        assert "srv/.wh..wh..opq" in names
        assert "srv/b" in names

    def test_directory_replaced_by_file(self, tmp_path: Path) -> None:
        """A file replacing a directory drops the directory's children."""
        source = make_export(
            tmp_path / "export.tar",
            [
                (L0, None, f"{FROM_MARKER}:abc in /", []),
                (L1, L0, "mkdir", [("data", "dir", None), ("data/x", "file", "x")]),
                (L2, L1, "replace", [("data", "file", "flat")]),
            ],
        )
        output = tmp_path / "out.tar"
        result = squash(source, output)
        _, _, members = read_output(output)
        assert members[result.new_layer] == ["data"]  # type: ignore[index]

    def hardlinked_export(self, tmp_path: Path, change: list[tuple[str, str, Any]]) -> Path:
        """Export where L1 hardlinks two paths to app/run and L2 applies ``change``."""
        return make_export(
            tmp_path / "export.tar",
            [
                (L0, None, f"{FROM_MARKER}:abc in /", []),
                (
                    L1,
                    L0,
                    "ln",
                    [
                        ("app", "dir", None),
                        ("app/run", "file", "v1"),
                        ("app/hard", "link", "app/run"),
                        ("app/hard2", "link", "app/run"),
                    ],
                ),
                (L2, L1, "change", change),
            ],
        )

    def test_hardlink_keeps_content_when_target_replaced(self, tmp_path: Path) -> None:
        """Replacing a hardlinked file leaves the links with the old content."""
        source = self.hardlinked_export(tmp_path, [("app/run", "file", "v2")])
        output = tmp_path / "out.tar"
        result = squash(source, output)
        new_id = result.new_layer
        assert new_id is not None

        assert read_layer_file(output, new_id, "app/run") == b"v2"
        assert read_layer_file(output, new_id, "app/hard") == b"v1"
        assert read_layer_file(output, new_id, "app/hard2") == b"v1"
        _, _, members = read_output(output)
        # Remaining links follow the file they point at
        assert members[new_id][-1] == "app/hard2"

    def test_hardlink_survives_target_whiteout(self, tmp_path: Path) -> None:
        """Removing a hardlinked file leaves no dangling links."""
        source = self.hardlinked_export(tmp_path, [("app/.wh.run", "file", "")])
        output = tmp_path / "out.tar"
        result = squash(source, output)
        new_id = result.new_layer
        assert new_id is not None

        _, _, members = read_output(output)
        assert "app/run" not in members[new_id]
        assert read_layer_file(output, new_id, "app/hard") == b"v1"
        assert read_layer_file(output, new_id, "app/hard2") == b"v1"

    def test_hardlink_removed_with_its_directory(self, tmp_path: Path) -> None:
        """Links removed along with their target are not resurrected."""
        source = self.hardlinked_export(tmp_path, [(".wh.app", "file", "")])
        output = tmp_path / "out.tar"
        result = squash(source, output)
        _, _, members = read_output(output)
        assert members[result.new_layer] == [".wh.app"]  # type: ignore[index]

    def test_previous_squash_point(self, tmp_path: Path) -> None:
        """The most recent earlier squash layer is the default squash point."""
        source = make_export(
            tmp_path / "export.tar",
            [
                (L0, None, f"{FROM_MARKER}:abc in /", []),
                (L1, L0, f"{SQUASH_MARKER} from 000000000000", [("a", "file", "a")]),
                (L2, L1, "touch b", [("b", "file", "b")]),
            ],
        )
        result = squash(source, tmp_path / "out.tar")
        assert result.squash_point == L1
        assert result.merged == [L2]

    def test_nothing_to_squash(self, four_layers: Path, tmp_path: Path) -> None:
        """A leaf squash point inserts no layer but still tags."""
        output = tmp_path / "out.tar"
        result = squash(four_layers, output, tag="app:v1", from_layer=L3)
        assert result.new_layer is None
        assert result.merged == []
        assert result.leaf == L3
        repositories, configs, _ = read_output(output)
        assert set(configs) == {L0, L1, L2, L3}
        assert repositories == {"app": {"v1": L3}}

    def test_streams(self, four_layers: Path) -> None:
        """Input and output may be binary streams."""
        source = io.BytesIO(four_layers.read_bytes())
        output = io.BytesIO()
        result = squash(source, output, tag="app")
        output.seek(0)
        with tarfile.open(fileobj=output) as tar:
            data = tar.extractfile("repositories").read()  # type: ignore[union-attr]
        assert json.loads(data) == {"app": {"latest": result.leaf}}

    def test_ambiguous_export(self, tmp_path: Path) -> None:
        """A repository pointing at several images is rejected."""
        source = make_export(
            tmp_path / "export.tar",
            [
                (L0, None, f"{FROM_MARKER}:abc in /", []),
                (L1, L0, "touch a", []),
            ],
            repositories={"app": {"v1": L0, "v2": L1}},
        )
        with pytest.raises(SquashError) as exc_info:
            squash(source, tmp_path / "out.tar")
        assert exc_info.value.code == "ambiguous_export"

    def test_unsupported_entry(self, tmp_path: Path) -> None:
        """Device and fifo entries are rejected."""
        source = make_export(
            tmp_path / "export.tar",
            [
                (L0, None, f"{FROM_MARKER}:abc in /", []),
                (L1, L0, "mkfifo", [("pipe", "fifo", None)]),
            ],
        )
        with pytest.raises(SquashError) as exc_info:
            squash(source, tmp_path / "out.tar")
        assert exc_info.value.code == "invalid_tar_entry"

    def test_bad_tag_checked_first(self, four_layers: Path, tmp_path: Path) -> None:
        """Malformed tags fail before any work is done."""
        with pytest.raises(SquashError) as exc_info:
            squash(four_layers, tmp_path / "out.tar", tag="app:")
        assert exc_info.value.code == "bad_tag"
        assert not (tmp_path / "out.tar").exists()

    def test_temporary_files_removed(self, four_layers: Path, tmp_path: Path) -> None:
        """Working files are removed on success and on error."""
        scratch = tmp_path / "scratch"
        scratch.mkdir()
        squash(four_layers, tmp_path / "out.tar", tmp_dir=scratch)
        with pytest.raises(SquashError):
            squash(four_layers, tmp_path / "out2.tar", from_layer="ffff", tmp_dir=scratch)
        assert list(scratch.iterdir()) == []
