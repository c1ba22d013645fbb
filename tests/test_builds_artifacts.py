"""Tests for artifact extraction."""

import io
import os
import stat
import tarfile
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError

from layerbuild.builds.artifacts import (
    ArtifactError,
    collect_host_artifact_roots,
    copy_artifact,
    extract_artifact_tar,
    parse_stat_mode,
    remove_host_artifact_roots,
)
from layerbuild.manifest.models import Artifact


def make_tar(entries: list[tuple[str, bytes | None, int]], symlink: str | None = None) -> bytes:
    """Build a tar archive; entries with None content are directories."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, content, mode in entries:
            info = tarfile.TarInfo(name)
            info.mode = mode
            if content is None:
                info.type = tarfile.DIRTYPE
                tar.addfile(info)
            else:
                info.size = len(content)
                tar.addfile(info, io.BytesIO(content))
        if symlink:
            info = tarfile.TarInfo(symlink)
            info.type = tarfile.SYMTYPE
            info.linkname = "target"
            tar.addfile(info)
    return buf.getvalue()


class TestParseStatMode:
    """Test stat output parsing."""

    def test_octal(self) -> None:
        """stat output is octal and gains owner rwx."""
        assert parse_stat_mode(b"644\n") == 0o744
        assert parse_stat_mode("755") == 0o755

    def test_quoted(self) -> None:
        """Quotes around the value should be ignored."""
        assert parse_stat_mode("'600'\n") == 0o700

    def test_invalid(self) -> None:
        """Non-octal output should raise ArtifactError."""
        with pytest.raises(ArtifactError):
            parse_stat_mode("stat: cannot stat")


class TestExtractArtifactTar:
    """Test tar extraction onto the host."""

    def test_extracts_files_and_dirs(self, tmp_path: Path) -> None:
        """Files and directories should be written with archive modes."""
        data = make_tar(
            [("bin", None, 0o755), ("bin/server", b"ELF", 0o750)]
        )
        written = extract_artifact_tar(io.BytesIO(data), tmp_path)

        assert (tmp_path / "bin" / "server").read_bytes() == b"ELF"
        assert stat.S_IMODE(os.stat(tmp_path / "bin" / "server").st_mode) == 0o750
        assert written == [tmp_path / "bin", tmp_path / "bin" / "server"]

    def test_explicit_mode(self, tmp_path: Path) -> None:
        """An explicit mode should apply to every entry."""
        data = make_tar([("tool", b"x", 0o600)])
        extract_artifact_tar(io.BytesIO(data), tmp_path, mode=0o755)
        assert stat.S_IMODE(os.stat(tmp_path / "tool").st_mode) == 0o755

    def test_rejects_symlinks(self, tmp_path: Path) -> None:
        """Entries other than files and directories are invalid."""
        data = make_tar([], symlink="link")
        with pytest.raises(ArtifactError) as exc_info:
            extract_artifact_tar(io.BytesIO(data), tmp_path)
        assert exc_info.value.code == "invalid_header_type"

    def test_rejects_traversal(self, tmp_path: Path) -> None:
        """Entries escaping the destination should be refused."""
        data = make_tar([("../evil", b"x", 0o644)])
        with pytest.raises(ArtifactError) as exc_info:
            extract_artifact_tar(io.BytesIO(data), tmp_path)
        assert exc_info.value.code == "path_traversal"


class TestCopyArtifact:
    """Test copying from a container."""

    def test_copy(self, tmp_path: Path) -> None:
        """Archive chunks from the container should land in workdir/dest."""
        data = make_tar([("server", b"binary", 0o755)])
        container = MagicMock()
        container.get_archive.return_value = (iter([data[:100], data[100:]]), {})

        artifact = Artifact(step="builder", source="/app/server", dest="out")
        copy_artifact(container, artifact, tmp_path)

        container.get_archive.assert_called_once_with("/app/server")
        assert (tmp_path / "out" / "server").read_bytes() == b"binary"

    def test_daemon_error(self, tmp_path: Path) -> None:
        """Daemon errors should become artifact_copy_error."""
        container = MagicMock()
        container.get_archive.side_effect = APIError("no such file")

        with pytest.raises(ArtifactError) as exc_info:
            copy_artifact(container, Artifact(step="s", source="/missing"), tmp_path)
        assert exc_info.value.code == "artifact_copy_error"


class TestHostArtifactRoots:
    """Test collection and removal of host artifact roots."""

    def test_first_missing_component(self, tmp_path: Path) -> None:
        """The first path component that does not exist should be recorded."""
        (tmp_path / "existing").mkdir()
        artifacts = [
            Artifact(step="s", source="/app/server", dest="existing/new/deeper"),
            Artifact(step="s", source="/app/tool"),
        ]
        roots = collect_host_artifact_roots(tmp_path, artifacts)
        assert roots == [tmp_path / "existing" / "new", tmp_path / "tool"]

    def test_existing_paths_not_recorded(self, tmp_path: Path) -> None:
        """Artifacts overwriting existing files should not be recorded."""
        (tmp_path / "server").write_text("old")
        roots = collect_host_artifact_roots(
            tmp_path, [Artifact(step="s", source="/app/server")]
        )
        assert roots == []

    def test_outside_workdir_ignored(self, tmp_path: Path) -> None:
        """Destinations outside the work directory are not tracked."""
        roots = collect_host_artifact_roots(
            tmp_path / "work", [Artifact(step="s", source="/x", dest="../../elsewhere")]
        )
        assert roots == []

    def test_remove(self, tmp_path: Path) -> None:
        """Roots should be removed; already removed roots are fine."""
        (tmp_path / "dir" / "sub").mkdir(parents=True)
        (tmp_path / "file").write_text("x")
        remove_host_artifact_roots(
            [tmp_path / "dir", tmp_path / "file", tmp_path / "gone"]
        )
        assert not (tmp_path / "dir").exists()
        assert not (tmp_path / "file").exists()
