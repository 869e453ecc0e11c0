"""Tests for the filesystem scanner."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

import pytest

from bitfreeze import report
from bitfreeze.errors import NotFoundError
from bitfreeze.manifest import EntryKind
from bitfreeze.scanner import ScanItem, Scanner

if TYPE_CHECKING:
    from pathlib import Path


def _rel(scanner: Scanner) -> list:
    return [(scanner.relpath(i.path), i.kind) for i in scanner]


class TestScanner:
    def test_sorted_depth_first(self, tree: Path) -> None:
        s = Scanner(str(tree))
        assert _rel(s) == [
            ("a.txt", EntryKind.FILE),
            ("b.txt", EntryKind.FILE),
            ("docs", EntryKind.DIRECTORY),
            ("docs/deep", EntryKind.DIRECTORY),
            ("docs/deep/data.bin", EntryKind.FILE),
            ("docs/readme.md", EntryKind.FILE),
            ("link-to-docs", EntryKind.SYMLINK),
        ]

    def test_links_are_not_descended(self, tree: Path) -> None:
        paths = [p for p, _ in _rel(Scanner(str(tree)))]
        assert not any(p.startswith("link-to-docs/") for p in paths)

    def test_lazy(self, tree: Path) -> None:
        it = iter(Scanner(str(tree)))
        assert isinstance(next(it), ScanItem)

    def test_restartable_without_elevation(self, tree: Path) -> None:
        s = Scanner(str(tree))
        assert _rel(s) == _rel(s)
        assert s.restartable

    def test_missing_root(self, tmp_path: Path) -> None:
        with pytest.raises(NotFoundError):
            list(Scanner(str(tmp_path / "nope")))

    def test_unsupported_type_skipped(self, tmp_path: Path) -> None:
        root = tmp_path / "r"
        root.mkdir()
        os.mkfifo(root / "pipe")
        (root / "f").write_text("x")
        skips = report.SkipLog()
        s = Scanner(str(root), skips=skips)
        assert _rel(s) == [("f", EntryKind.FILE)]
        assert [(k.path, k.reason) for k in skips] == [("pipe", report.UNSUPPORTED_TYPE)]

    def test_unreadable_subtree_skipped(self, tmp_path: Path, not_root: None) -> None:
        root = tmp_path / "r"
        (root / "locked").mkdir(parents=True)
        (root / "locked" / "hidden").write_text("x")
        (root / "open.txt").write_text("y")
        (root / "locked").chmod(0)
        skips = report.SkipLog()
        try:
            items = _rel(Scanner(str(root), skips=skips))
        finally:
            (root / "locked").chmod(0o755)
        assert items == [("locked", EntryKind.DIRECTORY), ("open.txt", EntryKind.FILE)]
        assert [(k.path, k.reason) for k in skips] == [("locked", report.PERMISSION_DENIED)]

    def test_elevated_listing_makes_scanner_single_use(self, tmp_path: Path, not_root: None,
                                                        monkeypatch: pytest.MonkeyPatch) -> None:
        root = tmp_path / "r"
        (root / "locked").mkdir(parents=True)
        hidden = str(root / "locked" / "hidden")
        monkeypatch.setattr("bitfreeze.scanner.elevated_list",
                            lambda ctx, path: [(hidden, EntryKind.FILE)])
        (root / "locked").chmod(0)
        try:
            s = Scanner(str(root), elevation=object())
            items = _rel(s)
        finally:
            (root / "locked").chmod(0o755)
        assert items == [("locked", EntryKind.DIRECTORY), ("locked/hidden", EntryKind.FILE)]
        assert not s.restartable
        with pytest.raises(RuntimeError):
            iter(s)

    def test_denied_child_is_listed_with_elevation(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        root = tmp_path / "r"
        (root / "rdonly").mkdir(parents=True)
        (root / "rdonly" / "alpha.txt").write_text("a")
        (root / "rdonly" / "child.txt").write_text("c")
        real_lstat = os.lstat

        def lstat(path, *args, **kwargs):
            if os.path.basename(path) == "child.txt":
                raise PermissionError(13, "Permission denied")
            return real_lstat(path, *args, **kwargs)

        calls = []

        def listing(ctx, path):
            calls.append(path)
            return [(os.path.join(path, "alpha.txt"), EntryKind.FILE),
                    (os.path.join(path, "child.txt"), EntryKind.FILE)]

        monkeypatch.setattr(os, "lstat", lstat)
        monkeypatch.setattr("bitfreeze.scanner.elevated_list", listing)
        skips = report.SkipLog()
        s = Scanner(str(root), elevation=object(), skips=skips)
        items = _rel(s)

        assert items == [
            ("rdonly", EntryKind.DIRECTORY),
            ("rdonly/alpha.txt", EntryKind.FILE),
            ("rdonly/child.txt", EntryKind.FILE),
        ]
        assert calls == [os.path.join(s.root, "rdonly")]
        assert len(skips) == 0
        assert not s.restartable

    def test_denied_child_without_elevation_is_skipped(self, tmp_path: Path,
                                                       monkeypatch: pytest.MonkeyPatch) -> None:
        root = tmp_path / "r"
        root.mkdir()
        (root / "child.txt").write_text("c")
        (root / "other.txt").write_text("o")
        real_lstat = os.lstat

        def lstat(path, *args, **kwargs):
            if os.path.basename(path) == "child.txt":
                raise PermissionError(13, "Permission denied")
            return real_lstat(path, *args, **kwargs)

        monkeypatch.setattr(os, "lstat", lstat)
        skips = report.SkipLog()
        s = Scanner(str(root), skips=skips)
        assert _rel(s) == [("other.txt", EntryKind.FILE)]
        assert [(k.path, k.reason, k.op) for k in skips] == [("child.txt", report.PERMISSION_DENIED, "scan")]


class TestFollowMode:
    def test_store_link_only(self, tree: Path) -> None:
        items = list(Scanner(str(tree)))
        assert not any(i.followed for i in items)

    def test_internal_target_is_reported(self, tmp_path: Path) -> None:
        root = tmp_path / "r"
        root.mkdir()
        (root / "real.txt").write_text("x")
        os.symlink("real.txt", root / "alias")
        s = Scanner(str(root), follow_symlinks=True)
        items = [(s.relpath(i.path), i.kind, i.followed) for i in s]
        assert ("alias", EntryKind.SYMLINK, False) in items
        assert ("real.txt", EntryKind.FILE, True) in items

    def test_external_target_not_followed(self, tmp_path: Path) -> None:
        outside = tmp_path / "outside.txt"
        outside.write_text("x")
        root = tmp_path / "r"
        root.mkdir()
        os.symlink(str(outside), root / "out")
        s = Scanner(str(root), follow_symlinks=True)
        assert _rel(s) == [("out", EntryKind.SYMLINK)]

    def test_dangling_link(self, tmp_path: Path) -> None:
        root = tmp_path / "r"
        root.mkdir()
        os.symlink("missing", root / "dangling")
        s = Scanner(str(root), follow_symlinks=True)
        assert _rel(s) == [("dangling", EntryKind.SYMLINK)]

    def test_link_cycle_terminates(self, tmp_path: Path) -> None:
        root = tmp_path / "r"
        (root / "d").mkdir(parents=True)
        os.symlink("..", root / "d" / "up")
        s = Scanner(str(root), follow_symlinks=True)
        items = _rel(s)
        assert ("d", EntryKind.DIRECTORY) in items
        assert ("d/up", EntryKind.SYMLINK) in items
