"""Tests for hashing, the dedup index and the staging workspace."""

from __future__ import annotations

import hashlib
import os
from typing import TYPE_CHECKING

from bitfreeze import report
from bitfreeze.config import README_TEXT
from bitfreeze.store import ContentIndex, Decision, Workspace, hash_file, parse_blob_listing

if TYPE_CHECKING:
    from pathlib import Path


class TestHashing:
    def test_hash_matches_md5(self, tmp_path: Path) -> None:
        data = os.urandom(3 * 1024 + 7)
        f = tmp_path / "f"
        f.write_bytes(data)
        assert hash_file(str(f), chunk_size=1024) == hashlib.md5(data).hexdigest()

    def test_empty_file(self, tmp_path: Path) -> None:
        f = tmp_path / "empty"
        f.write_bytes(b"")
        assert hash_file(str(f)) == "d41d8cd98f00b204e9800998ecf8427e"

    def test_hashing_leaves_atime_alone(self, tmp_path: Path) -> None:
        f = tmp_path / "f"
        f.write_bytes(b"content")
        os.utime(f, (1000000000, 1000000000))
        hash_file(str(f))
        assert int(os.stat(f).st_atime) == 1000000000


class TestBlobListing:
    def test_only_well_formed_hashes(self) -> None:
        lines = [
            "files/0cc175b9c0f1b6a831c399e269772661",
            "files/0cc175b9c0f1b6a831c399e269772661\n",
            "files/not-a-hash",
            "versions/1-2024-01-01 00:00:00.manifest",
            "README.txt",
        ]
        assert parse_blob_listing(lines) == {"0cc175b9c0f1b6a831c399e269772661"}


class TestContentIndex:
    def test_decisions_in_scan_order(self) -> None:
        index = ContentIndex({"stored"})
        assert index.decide("fresh") is Decision.STAGE
        index.mark_staged("fresh")
        assert index.decide("fresh") is Decision.SEEN_THIS_RUN
        assert index.decide("stored") is Decision.IN_BACKEND

    def test_seen_this_run_wins_over_backend(self) -> None:
        index = ContentIndex({"h"})
        index.mark_staged("h")
        assert index.decide("h") is Decision.SEEN_THIS_RUN

    def test_duplicate_flag(self) -> None:
        assert not Decision.STAGE.duplicate
        assert Decision.SEEN_THIS_RUN.duplicate
        assert Decision.IN_BACKEND.duplicate


class TestWorkspace:
    def test_layout(self, tmp_path: Path) -> None:
        with Workspace(str(tmp_path)) as ws:
            assert ws.files.is_dir()
            assert ws.versions.is_dir()
            assert (ws.path / "README.txt").read_text() == README_TEXT
            assert ws.members() == ["files", "versions", "README.txt"]
            path = ws.path
        assert not path.exists()

    def test_stage_blob(self, tmp_path: Path) -> None:
        src = tmp_path / "src"
        src.write_bytes(b"payload")
        skips = report.SkipLog()
        with Workspace(str(tmp_path)) as ws:
            assert ws.stage_blob(str(src), "a" * 32, None, skips, "src")
            assert (ws.files / ("a" * 32)).read_bytes() == b"payload"
            assert ws.staged_count() == 1
        assert len(skips) == 0

    def test_stage_blob_unreadable_is_skipped(self, tmp_path: Path, not_root: None) -> None:
        src = tmp_path / "secret"
        src.write_bytes(b"x")
        src.chmod(0)
        skips = report.SkipLog()
        try:
            with Workspace(str(tmp_path)) as ws:
                assert not ws.stage_blob(str(src), "b" * 32, None, skips, "secret")
                assert ws.staged_count() == 0
        finally:
            src.chmod(0o600)
        assert [(s.path, s.reason, s.op) for s in skips] == [("secret", report.PERMISSION_DENIED, "copy")]

    def test_stage_blob_vanished_source(self, tmp_path: Path) -> None:
        skips = report.SkipLog()
        with Workspace(str(tmp_path)) as ws:
            assert not ws.stage_blob(str(tmp_path / "gone"), "c" * 32, None, skips, "gone")
            assert ws.staged_count() == 0
        assert skips.counts() == {report.IO_ERROR: 1}

    def test_write_version(self, tmp_path: Path) -> None:
        with Workspace(str(tmp_path)) as ws:
            ws.write_version("1-2024-01-01 00:00:00", "a\tb\n", "hello")
            assert (ws.versions / "1-2024-01-01 00:00:00.manifest").read_text() == "a\tb\n"
            assert (ws.versions / "1-2024-01-01 00:00:00.comment").read_text() == "hello\n"
