# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors
"""Rebuild a tree from a commit.

Order matters here:

1. directories are created up front, but their metadata is restored last,
   deepest first, so placing files cannot bump a restored timestamp;
2. symlinks are created and read back; if that fails (or ``force_directory``
   is set) a plain directory takes the link's place and becomes a
   *fallback root*: files recorded beneath it are written as ordinary files;
3. files beneath a link that *was* created are not written, that would go
   through the link;
4. per file: content, chmod, chown/chgrp (privileged or elevated only),
   then atime/mtime.
"""

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Set

from tqdm import tqdm

from . import report
from .errors import CRC_STATUS_CODE, check_status
from .fsmeta import restore_metadata, restore_ownership
from .manifest import DirEntry, FileEntry, Manifest, SymlinkEntry
from .privilege import ElevationContext, is_privileged
from .repository import CommitRef, Repository

logger = logging.getLogger(__name__)


class CheckoutState(Enum):
    EXTRACT_MANIFEST = "extract-manifest"
    CLASSIFY = "classify"
    EXTRACT_BLOBS = "extract-blobs"
    PLACE_FILES = "place-files"
    RESTORE_DIR_METADATA = "restore-dir-metadata"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CheckoutStats:
    files_total: int = 0
    files_restored: int = 0
    unique_contents: int = 0
    directories: int = 0
    symlinks: int = 0
    link_fallbacks: int = 0
    behind_link: int = 0
    errors: int = 0


@dataclass
class CheckoutResult:
    state: CheckoutState
    commit: Optional[str] = None
    stats: CheckoutStats = field(default_factory=CheckoutStats)
    skips: report.SkipLog = field(default_factory=report.SkipLog)
    fallback_roots: List[str] = field(default_factory=list)
    elapsed: float = 0.0


def _under(path: str, roots: Set[str]) -> bool:
    parts = path.split("/")
    return any("/".join(parts[:i]) in roots for i in range(1, len(parts)))


class TreeBuilder:
    """Places a manifest's entries under ``dest`` using blobs found in ``blob_dir``."""

    def __init__(self, dest: str, blob_dir: str, force_directory: bool = False,
                 elevation: Optional[ElevationContext] = None, skips: Optional[report.SkipLog] = None,
                 show_progress: bool = False):
        self.dest = Path(dest)
        self.blob_dir = Path(blob_dir)
        self.force_directory = force_directory
        self.elevation = elevation
        self.ownership = is_privileged() or elevation is not None
        self.skips = report.SkipLog() if skips is None else skips
        self.show_progress = show_progress
        self.stats = CheckoutStats()
        self.fallback_roots: Set[str] = set()
        self.links: Set[str] = set()

    def _target(self, rel: str) -> Path:
        return self.dest / rel

    def _error(self, rel: str, reason: str, op: str, detail: str = "") -> None:
        self.stats.errors += 1
        self.skips.add(rel, reason, op, detail)

    # ===============================
    # Directories
    # ===============================

    def make_directories(self, dirs: List[DirEntry]) -> None:
        for d in dirs:
            try:
                self._target(d.path).mkdir(parents=True, exist_ok=True)
                self.stats.directories += 1
            except OSError as e:
                self._error(d.path, report.IO_ERROR, "mkdir", str(e))

    def restore_directories(self, dirs: List[DirEntry]) -> None:
        # deepest first: a parent's timestamp is set after everything inside it is final
        for d in sorted(dirs, key=lambda e: e.path.count("/"), reverse=True):
            target = self._target(d.path)
            if not target.is_dir() or target.is_symlink():
                continue
            restore_metadata(str(target), d.metadata, self.elevation, self.skips, d.path, self.ownership)

    # ===============================
    # Symlinks
    # ===============================

    def _make_link(self, link: SymlinkEntry) -> bool:
        target = self._target(link.path)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink():
            if os.readlink(target) == link.target:
                return True
            target.unlink()
        os.symlink(link.target, target)
        if os.readlink(target) != link.target:
            target.unlink()
            return False
        return True

    def place_symlinks(self, links: List[SymlinkEntry]) -> None:
        for link in links:
            created = False
            if not self.force_directory:
                try:
                    created = self._make_link(link)
                except OSError as e:
                    logger.info("symlink %s -> %s failed (%s), using a directory", link.path, link.target, e)
            if created:
                self.links.add(link.path)
                self.stats.symlinks += 1
                if self.ownership and link.metadata is not None:
                    restore_ownership(str(self._target(link.path)), link.metadata, self.elevation,
                                      self.skips, link.path, symlink=True)
                continue
            try:
                self._target(link.path).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                self._error(link.path, report.IO_ERROR, "mkdir", str(e))
                continue
            self.fallback_roots.add(link.path)
            self.stats.link_fallbacks += 1

    # ===============================
    # Files
    # ===============================

    def place_file(self, entry: FileEntry) -> bool:
        if _under(entry.path, self.links) and not _under(entry.path, self.fallback_roots):
            self.stats.behind_link += 1
            logger.debug("%s lives behind a restored symlink, not written", entry.path)
            return False
        src = self.blob_dir / entry.hash
        if not src.exists():
            self._error(entry.path, report.MISSING_BLOB, "place", f"hash {entry.hash}")
            return False
        target = self._target(entry.path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.is_symlink():
                target.unlink()
            shutil.copyfile(src, target)
        except OSError as e:
            self._error(entry.path, report.IO_ERROR, "write", str(e))
            return False
        restore_metadata(str(target), entry.metadata, self.elevation, self.skips, entry.path, self.ownership)
        self.stats.files_restored += 1
        return True

    def place_files(self, files: List[FileEntry]) -> None:
        for entry in tqdm(files, desc="Restoring files", unit="file", dynamic_ncols=True,
                          disable=not self.show_progress):
            self.place_file(entry)

    def build(self, manifest: Manifest,
              on_state: Optional[Callable[[CheckoutState], None]] = None) -> CheckoutStats:
        notify = on_state or (lambda state: None)
        files = list(manifest.files().values())
        dirs = manifest.directories()
        self.stats.files_total = len(files)
        self.stats.unique_contents = len(manifest.hashes())

        notify(CheckoutState.PLACE_FILES)
        self.dest.mkdir(parents=True, exist_ok=True)
        self.make_directories(dirs)
        self.place_symlinks(manifest.symlinks())
        self.place_files(files)

        notify(CheckoutState.RESTORE_DIR_METADATA)
        self.restore_directories(dirs)
        return self.stats


# ===============================
# Entry point
# ===============================

def checkout(repo: Repository, commit_id: int, dest: str, force_directory: bool = False,
             elevation: Optional[ElevationContext] = None, show_progress: bool = False) -> CheckoutResult:
    start = time.time()
    result = CheckoutResult(CheckoutState.EXTRACT_MANIFEST)
    ref: CommitRef = repo.find(commit_id)
    result.commit = ref.name
    try:
        manifest = repo.read_manifest(ref)

        result.state = CheckoutState.CLASSIFY
        hashes = manifest.hashes()
        logger.info("commit %s: %d files, %d unique contents", ref.name, len(manifest.files()), len(hashes))

        with tempfile.TemporaryDirectory(prefix="bitfreeze_") as blob_dir:
            result.state = CheckoutState.EXTRACT_BLOBS
            code = repo.extract_blobs(hashes, blob_dir)
            # rar also exits non-zero when only some names are missing; that is per-file
            if code == CRC_STATUS_CODE or (code != 0 and hashes and not any(os.scandir(blob_dir))):
                check_status(code, "Extracting file contents")
            if code != 0:
                logger.warning("extract exited %d, continuing with what was extracted", code)

            builder = TreeBuilder(dest, blob_dir, force_directory, elevation, result.skips, show_progress)
            builder.build(manifest, on_state=lambda state: setattr(result, "state", state))
    except Exception:
        result.state = CheckoutState.FAILED
        raise

    result.stats = builder.stats
    result.fallback_roots = sorted(builder.fallback_roots)
    result.state = CheckoutState.DONE
    result.elapsed = round(time.time() - start, 2)
    return result
