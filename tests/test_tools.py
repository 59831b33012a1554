"""Tests for the built-in filesystem tools: read_file, write_file, list_files, tree."""

import os
import sys

import pytest

from aria.conversation import Failure, FailureKind, Success
from aria.tools import MAX_READ_BYTES, ToolContext, list_files, read_file, tree, write_file


@pytest.fixture
def ctx(tmp_path):
    return ToolContext(working_dir=tmp_path)


# ---------------------------------------------------------------------------
# read_file
# ---------------------------------------------------------------------------


class TestReadFile:
    def test_reads_relative_path(self, ctx, tmp_path):
        (tmp_path / "hello.txt").write_text("hi there\n", encoding="utf-8")
        outcome = read_file({"path": "hello.txt"}, ctx)
        assert isinstance(outcome, Success)
        assert outcome.payload == {
            "path": "hello.txt",
            "content": "hi there\n",
            "truncated": False,
        }

    def test_reads_absolute_path(self, ctx, tmp_path):
        f = tmp_path / "abs.txt"
        f.write_text("x", encoding="utf-8")
        assert read_file({"path": str(f)}, ctx).payload["content"] == "x"

    def test_missing(self, ctx):
        outcome = read_file({"path": "nope.txt"}, ctx)
        assert outcome.kind is FailureKind.NOT_FOUND

    def test_directory(self, ctx, tmp_path):
        (tmp_path / "sub").mkdir()
        outcome = read_file({"path": "sub"}, ctx)
        assert outcome.kind is FailureKind.IS_A_DIRECTORY

    def test_binary(self, ctx, tmp_path):
        (tmp_path / "blob.bin").write_bytes(b"\x89PNG\x00\x00data")
        outcome = read_file({"path": "blob.bin"}, ctx)
        assert outcome.kind is FailureKind.NOT_TEXT
        assert "binary" in outcome.message

    def test_invalid_utf8(self, ctx, tmp_path):
        (tmp_path / "latin1.txt").write_bytes("café".encode("latin-1"))
        outcome = read_file({"path": "latin1.txt"}, ctx)
        assert outcome.kind is FailureKind.NOT_TEXT
        assert "UTF-8" in outcome.message

    def test_large_file_truncated(self, ctx, tmp_path):
        (tmp_path / "big.txt").write_text("a" * (MAX_READ_BYTES + 100), encoding="utf-8")
        outcome = read_file({"path": "big.txt"}, ctx)
        assert outcome.payload["truncated"] is True
        assert len(outcome.payload["content"]) == MAX_READ_BYTES

    def test_cut_inside_multibyte_character(self, ctx, tmp_path):
        # "é" is two bytes; the cut lands between them
        data = "a" * (MAX_READ_BYTES - 1) + "é" * 10
        (tmp_path / "wide.txt").write_text(data, encoding="utf-8")
        outcome = read_file({"path": "wide.txt"}, ctx)
        assert isinstance(outcome, Success)
        assert outcome.payload["content"] == "a" * (MAX_READ_BYTES - 1)

    @pytest.mark.skipif(
        sys.platform == "win32" or os.geteuid() == 0,
        reason="permission bits are not enforced",
    )
    def test_permission_denied(self, ctx, tmp_path):
        f = tmp_path / "secret.txt"
        f.write_text("s", encoding="utf-8")
        f.chmod(0)
        try:
            outcome = read_file({"path": "secret.txt"}, ctx)
        finally:
            f.chmod(0o644)
        assert outcome.kind is FailureKind.PERMISSION_DENIED

    @pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="no named pipes")
    def test_named_pipe_is_not_opened(self, ctx, tmp_path):
        os.mkfifo(tmp_path / "pipe")
        outcome = read_file({"path": "pipe"}, ctx)
        assert outcome.kind is FailureKind.INVALID_PATH
        assert "not a regular file" in outcome.message


# ---------------------------------------------------------------------------
# write_file
# ---------------------------------------------------------------------------


class TestWriteFile:
    def test_creates_file_and_parents(self, ctx, tmp_path):
        outcome = write_file({"path": "a/b/c.txt", "contents": "héllo"}, ctx)
        assert outcome.payload == {"path": "a/b/c.txt", "bytes_written": 6}
        assert (tmp_path / "a" / "b" / "c.txt").read_text(encoding="utf-8") == "héllo"

    def test_overwrites(self, ctx, tmp_path):
        (tmp_path / "f.txt").write_text("old", encoding="utf-8")
        write_file({"path": "f.txt", "contents": "new"}, ctx)
        assert (tmp_path / "f.txt").read_text(encoding="utf-8") == "new"

    def test_empty_contents(self, ctx, tmp_path):
        outcome = write_file({"path": "empty.txt", "contents": ""}, ctx)
        assert outcome.payload["bytes_written"] == 0
        assert (tmp_path / "empty.txt").exists()

    def test_target_is_directory(self, ctx, tmp_path):
        (tmp_path / "d").mkdir()
        outcome = write_file({"path": "d", "contents": "x"}, ctx)
        assert outcome.kind is FailureKind.INVALID_PATH

    def test_parent_is_a_file(self, ctx, tmp_path):
        (tmp_path / "file").write_text("x", encoding="utf-8")
        outcome = write_file({"path": "file/child.txt", "contents": "x"}, ctx)
        assert isinstance(outcome, Failure)
        assert outcome.kind is FailureKind.INVALID_PATH


# ---------------------------------------------------------------------------
# list_files
# ---------------------------------------------------------------------------


class TestListFiles:
    def test_sorted_with_kinds(self, ctx, tmp_path):
        (tmp_path / "b.txt").write_text("", encoding="utf-8")
        (tmp_path / "a").mkdir()
        (tmp_path / "c.py").write_text("", encoding="utf-8")
        outcome = list_files({"dir": "."}, ctx)
        assert outcome.payload["entries"] == [
            {"name": "a", "kind": "dir"},
            {"name": "b.txt", "kind": "file"},
            {"name": "c.py", "kind": "file"},
        ]

    def test_empty_directory(self, ctx):
        assert list_files({"dir": "."}, ctx).payload["entries"] == []

    def test_missing(self, ctx):
        assert list_files({"dir": "nope"}, ctx).kind is FailureKind.NOT_FOUND

    def test_not_a_directory(self, ctx, tmp_path):
        (tmp_path / "f").write_text("", encoding="utf-8")
        assert list_files({"dir": "f"}, ctx).kind is FailureKind.NOT_A_DIRECTORY


# ---------------------------------------------------------------------------
# tree
# ---------------------------------------------------------------------------


def _make_tree(root, depth, width):
    """Build a directory tree `depth` levels deep, `width` files per level."""
    current = root
    for level in range(depth):
        for i in range(width):
            (current / f"f{level}_{i}.txt").write_text("", encoding="utf-8")
        current = current / f"d{level}"
        current.mkdir()


class TestTree:
    def test_depth_first_listing(self, ctx, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.py").write_text("", encoding="utf-8")
        (tmp_path / "README").write_text("", encoding="utf-8")
        outcome = tree({"dir": "."}, ctx)
        assert outcome.payload["entries"] == ["README", "src/", "src/main.py"]
        assert outcome.payload["truncated"] is False
        assert "truncated_reason" not in outcome.payload

    def test_skips_git(self, ctx, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("", encoding="utf-8")
        (tmp_path / "a.txt").write_text("", encoding="utf-8")
        assert tree({"dir": "."}, ctx).payload["entries"] == ["a.txt"]

    def test_entry_ceiling(self, tmp_path):
        _make_tree(tmp_path, depth=3, width=20)
        ctx = ToolContext(working_dir=tmp_path, tree_max_entries=25)
        outcome = tree({"dir": "."}, ctx)
        assert len(outcome.payload["entries"]) == 25
        assert outcome.payload["truncated"] is True
        assert outcome.payload["truncated_reason"] == "max_entries"

    def test_depth_ceiling(self, tmp_path):
        _make_tree(tmp_path, depth=6, width=1)
        ctx = ToolContext(working_dir=tmp_path, tree_max_depth=2)
        outcome = tree({"dir": "."}, ctx)
        entries = outcome.payload["entries"]
        assert max(e.rstrip("/").count("/") for e in entries) == 1
        assert "d0/d1/" in entries
        assert outcome.payload["truncated"] is True
        assert outcome.payload["truncated_reason"] == "max_depth"

    def test_exact_fit_is_not_truncated(self, tmp_path):
        for i in range(5):
            (tmp_path / f"{i}.txt").write_text("", encoding="utf-8")
        ctx = ToolContext(working_dir=tmp_path, tree_max_entries=5)
        outcome = tree({"dir": "."}, ctx)
        assert len(outcome.payload["entries"]) == 5
        assert outcome.payload["truncated"] is False

    @pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges")
    def test_symlink_cycle_not_followed(self, ctx, tmp_path):
        (tmp_path / "sub").mkdir()
        os.symlink(tmp_path, tmp_path / "sub" / "loop")
        outcome = tree({"dir": "."}, ctx)
        assert outcome.payload["entries"] == ["sub/", "sub/loop/"]
        assert outcome.payload["truncated"] is False

    def test_missing(self, ctx):
        assert tree({"dir": "nope"}, ctx).kind is FailureKind.NOT_FOUND

    def test_not_a_directory(self, ctx, tmp_path):
        (tmp_path / "f").write_text("", encoding="utf-8")
        assert tree({"dir": "f"}, ctx).kind is FailureKind.NOT_A_DIRECTORY
