# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

import hashlib
import logging
import os
import re
import shutil
import tempfile
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Set

from . import report
from .config import HASH_CHUNK_BYTES, README_TEXT
from .fsmeta import open_noatime
from .privilege import ElevationContext, attempt, elevated_copy, elevated_hash

logger = logging.getLogger(__name__)

BLOB_RE = re.compile(r"^files/([a-f0-9]{32})$")

# ===============================
# Hash helpers
# ===============================

def get_hasher():
    # 128-bit content identity; equal digest is taken to mean equal bytes
    return hashlib.md5()


def hash_file(path: str, chunk_size: int = HASH_CHUNK_BYTES) -> str:
    h = get_hasher()
    with open_noatime(path) as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def hash_with_fallback(path: str, elevation: Optional[ElevationContext], skips: report.SkipLog,
                       label: str) -> Optional[str]:
    ok, digest = attempt("hash", path, lambda: hash_file(path),
                         lambda ctx: elevated_hash(ctx, path), elevation, skips, label)
    return digest if ok else None


# ===============================
# Dedup index
# ===============================

def parse_blob_listing(lines: Iterable[str]) -> Set[str]:
    out = set()
    for line in lines:
        m = BLOB_RE.match(line.strip())
        if m:
            out.add(m.group(1))
    return out


class Decision(Enum):
    STAGE = "stage"
    SEEN_THIS_RUN = "seen"
    IN_BACKEND = "stored"

    @property
    def duplicate(self) -> bool:
        return self is not Decision.STAGE


class ContentIndex:
    """Which hashes already exist (backend) or were staged earlier in this scan."""

    def __init__(self, known: Iterable[str] = ()):
        self.known: Set[str] = set(known)
        self.seen: Set[str] = set()

    def decide(self, digest: str) -> Decision:
        if digest in self.seen:
            return Decision.SEEN_THIS_RUN
        if digest in self.known:
            return Decision.IN_BACKEND
        return Decision.STAGE

    def mark_staged(self, digest: str) -> None:
        self.seen.add(digest)


# ===============================
# Staging workspace
# ===============================

class Workspace:
    """Private temp tree mirroring the archive layout: files/, versions/, README.txt."""

    def __init__(self, base: Optional[str] = None):
        self.path = Path(tempfile.mkdtemp(prefix="bitfreeze_", dir=base))
        self.files = self.path / "files"
        self.versions = self.path / "versions"
        self.files.mkdir()
        self.versions.mkdir()
        (self.path / "README.txt").write_text(README_TEXT, encoding="utf-8")

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, *exc) -> None:
        self.discard()

    def members(self):
        return ["files", "versions", "README.txt"]

    def staged_count(self) -> int:
        return sum(1 for _ in self.files.iterdir())

    def stage_blob(self, src: str, digest: str, elevation: Optional[ElevationContext],
                   skips: report.SkipLog, label: str) -> bool:
        dest = str(self.files / digest)

        def _copy():
            with open_noatime(src) as fin, open(dest, "wb") as fout:
                shutil.copyfileobj(fin, fout, HASH_CHUNK_BYTES)

        try:
            ok, _ = attempt("copy", src, _copy, lambda ctx: elevated_copy(ctx, src, dest),
                            elevation, skips, label)
        except OSError as e:
            skips.add(label, report.IO_ERROR, "copy", str(e))
            ok = False
        if not ok and os.path.exists(dest):
            os.unlink(dest)
        return ok

    def write_version(self, name: str, manifest_text: str, comment: str) -> None:
        (self.versions / f"{name}.manifest").write_text(manifest_text, encoding="utf-8",
                                                          errors="surrogateescape")
        (self.versions / f"{name}.comment").write_text(comment + "\n", encoding="utf-8")

    def discard(self) -> None:
        shutil.rmtree(self.path, ignore_errors=True)
