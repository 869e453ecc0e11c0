"""Shared test fixtures for bitfreeze."""

from __future__ import annotations

import fnmatch
import os
import shutil
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from bitfreeze.repository import Repository

# rar: "no files matching the given names"
MISSING_STATUS = 10


class FakeBackend:
    """In-memory stand-in for ``RarBackend``: members are plain files under ``store``."""

    def __init__(self, store: Path) -> None:
        self.store = store
        self.archive = store
        self.password: Optional[str] = None
        self.added: List[List[str]] = []
        self.add_status = 0
        self.extract_status: Optional[int] = None
        self.probe_status = 0
        self.repaired = 0

    def exists(self) -> bool:
        return self.store.is_dir()

    def names(self) -> List[str]:
        if not self.exists():
            return []
        return sorted(p.relative_to(self.store).as_posix() for p in self.store.rglob("*") if p.is_file())

    def list(self, pattern: str = "") -> List[str]:
        return [n for n in self.names() if not pattern or fnmatch.fnmatch(n, pattern)]

    def probe(self) -> int:
        return self.probe_status

    def add(self, paths: Sequence[str], cwd: str, expected: int = 0) -> int:
        if self.add_status != 0:
            return self.add_status
        written = []
        for p in paths:
            src = Path(cwd) / p
            files = [src] if src.is_file() else sorted(f for f in src.rglob("*") if f.is_file())
            for f in files:
                name = f.relative_to(cwd).as_posix()
                dest = self.store / name
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(f, dest)
                written.append(name)
        self.added.append(written)
        return 0

    def extract(self, names: Sequence[str], dest: str) -> int:
        if self.extract_status is not None:
            return self.extract_status
        missing = False
        for name in names:
            src = self.store / name
            if not src.is_file():
                missing = True
                continue
            shutil.copyfile(src, os.path.join(dest, src.name))
        return MISSING_STATUS if missing else 0

    def repair(self) -> int:
        self.repaired += 1
        return 0

    def test_password(self, password: str) -> bool:
        return True

    def is_encrypted(self) -> bool:
        return False


@pytest.fixture
def backend(tmp_path: Path) -> FakeBackend:
    return FakeBackend(tmp_path / "archive")


@pytest.fixture
def repo(backend: FakeBackend) -> Repository:
    return Repository(backend)


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    """A small source tree: two identical files, a nested dir and an internal symlink."""
    root = tmp_path / "src"
    (root / "docs" / "deep").mkdir(parents=True)
    (root / "a.txt").write_text("alpha\n")
    (root / "b.txt").write_text("alpha\n")
    (root / "docs" / "readme.md").write_text("# readme\n")
    (root / "docs" / "deep" / "data.bin").write_bytes(bytes(range(256)) * 4)
    os.symlink("docs", root / "link-to-docs")
    return root


@pytest.fixture
def not_root() -> None:
    if os.geteuid() == 0:
        pytest.skip("permission checks do not apply to root")
