# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Set

from tqdm import tqdm

from . import report
from .config import DEFAULT_COMMENT, TIMESTAMP_FORMAT
from .errors import FatalBackendError, NotFoundError, check_status
from .fsmeta import read_metadata
from .manifest import DirEntry, EntryKind, FileEntry, Manifest, ManifestEntry, SymlinkEntry
from .privilege import ElevationContext, attempt, elevated_readlink
from .repository import Repository
from .scanner import ScanItem, Scanner
from .store import ContentIndex, Workspace, hash_with_fallback

logger = logging.getLogger(__name__)


class CommitState(Enum):
    SCANNING = "scanning"
    HASHING = "hashing"
    DUPLICATE_CHECK = "duplicate-check"
    STAGING = "staging"
    BACKEND_WRITE = "backend-write"
    DONE = "done"
    FAILED = "failed"


@dataclass
class CommitStats:
    scanned: int = 0
    added: int = 0
    duplicate: int = 0
    skipped: int = 0
    directories: int = 0
    symlinks: int = 0
    total_bytes: int = 0
    added_bytes: int = 0


@dataclass
class CommitResult:
    state: CommitState
    commit_id: Optional[int] = None
    name: Optional[str] = None
    comment: str = ""
    stats: CommitStats = field(default_factory=CommitStats)
    skips: report.SkipLog = field(default_factory=report.SkipLog)
    elapsed: float = 0.0
    previous: Optional[str] = None  # name of the commit we compared against

    @property
    def changed(self) -> bool:
        return self.commit_id is not None


def now_timestamp() -> str:
    return datetime.now().strftime(TIMESTAMP_FORMAT)


class CommitRun:
    """scan -> hash/dedup -> duplicate check -> staging -> backend write."""

    def __init__(self, repo: Repository, root: str, comment: str = DEFAULT_COMMENT,
                 follow_symlinks: bool = False, elevation: Optional[ElevationContext] = None,
                 show_progress: bool = False, workspace_dir: Optional[str] = None):
        self.repo = repo
        self.root = os.path.realpath(root)
        self.comment = comment or DEFAULT_COMMENT
        self.follow_symlinks = follow_symlinks
        self.elevation = elevation
        self.show_progress = show_progress
        self.workspace_dir = workspace_dir
        self.state = CommitState.SCANNING
        self.stats = CommitStats()
        self.skips = report.SkipLog()

    def _enter(self, state: CommitState) -> None:
        if state is self.state:
            return
        logger.debug("commit %s -> %s", self.state.value, state.value)
        self.state = state

    def run(self) -> CommitResult:
        if not os.path.isdir(self.root):
            raise NotFoundError(f"Folder '{self.root}' does not exist.")
        start = time.time()
        workspace = Workspace(self.workspace_dir)
        try:
            result = self._run(workspace)
        except Exception:
            self._enter(CommitState.FAILED)
            raise
        finally:
            workspace.discard()
        result.elapsed = round(time.time() - start, 2)
        return result

    def _run(self, workspace: Workspace) -> CommitResult:
        index = ContentIndex(self.repo.existing_hashes())
        entries = self.build_entries(index, workspace)
        manifest_text = Manifest(0, "", self.comment, entries).to_text()

        self._enter(CommitState.DUPLICATE_CHECK)
        previous = self.repo.latest()
        if previous is not None and self.repo.read_manifest_text(previous) == manifest_text:
            logger.info("no changes since %s", previous.name)
            self._enter(CommitState.DONE)
            return CommitResult(CommitState.DONE, comment=self.comment, stats=self.stats,
                                skips=self.skips, previous=previous.name)

        self._enter(CommitState.STAGING)
        commit_id = self.repo.next_commit_id()
        name = f"{commit_id}-{now_timestamp()}"
        workspace.write_version(name, manifest_text, self.comment)
        logger.info("commit %s stages %d new blobs", name, workspace.staged_count())

        self._enter(CommitState.BACKEND_WRITE)
        code = self.repo.backend.add(workspace.members(), str(workspace.path),
                                     expected=self.stats.added + 3)
        try:
            check_status(code, "Recording to archive")
        except FatalBackendError:
            logger.error("backend write failed, commit %s discarded", name)
            raise
        self._enter(CommitState.DONE)
        return CommitResult(CommitState.DONE, commit_id, name, self.comment, self.stats, self.skips,
                            previous=previous.name if previous else None)

    # ===============================
    # Scan & dedup
    # ===============================

    def build_entries(self, index: ContentIndex, workspace: Workspace) -> List[ManifestEntry]:
        scanner = Scanner(self.root, self.follow_symlinks, self.elevation, self.skips)
        entries: List[ManifestEntry] = []
        recorded: Set[str] = set()
        pbar = tqdm(desc="Scanning files", unit="file", dynamic_ncols=True, disable=not self.show_progress)
        try:
            for item in scanner:
                rel = scanner.relpath(item.path)
                if rel in recorded:
                    continue
                try:
                    entry = self._entry_for(item, rel, index, workspace)
                except FileNotFoundError:
                    self.skips.add(rel, report.VANISHED, "commit")
                    entry = None
                except OSError as e:
                    self.skips.add(rel, report.IO_ERROR, "commit", str(e))
                    entry = None
                if entry is None:
                    continue
                recorded.add(rel)
                entries.append(entry)
                if item.kind is EntryKind.FILE:
                    pbar.update(1)
        finally:
            pbar.close()
        # scanner-level skips (unlistable subtrees, vanished entries) count too
        self.stats.skipped = len(self.skips)
        return entries

    def _entry_for(self, item: ScanItem, rel: str, index: ContentIndex,
                   workspace: Workspace) -> Optional[ManifestEntry]:
        path = item.path
        self._enter(CommitState.HASHING if item.kind is EntryKind.FILE else CommitState.SCANNING)
        if item.kind is EntryKind.SYMLINK:
            # read the link before stat'ing it so the recorded atime is already settled
            ok, target = attempt("readlink", path, lambda: os.readlink(path),
                                 lambda ctx: elevated_readlink(ctx, path), self.elevation, self.skips, rel)
            if not ok:
                return None
            meta = read_metadata(path, self.elevation, self.skips, rel)
            if meta is None:
                return None
            self.stats.symlinks += 1
            return SymlinkEntry(rel, target, meta)

        if item.kind is EntryKind.DIRECTORY:
            meta = read_metadata(path, self.elevation, self.skips, rel)
            if meta is None:
                return None
            self.stats.directories += 1
            return DirEntry(rel, meta)

        digest = hash_with_fallback(path, self.elevation, self.skips, rel)
        if digest is None:
            return None
        meta = read_metadata(path, self.elevation, self.skips, rel)
        if meta is None:
            return None
        self.stats.scanned += 1
        self.stats.total_bytes += meta.size or 0

        decision = index.decide(digest)
        if decision.duplicate:
            self.stats.duplicate += 1
        else:
            if not workspace.stage_blob(path, digest, self.elevation, self.skips, rel):
                return None
            index.mark_staged(digest)
            self.stats.added += 1
            self.stats.added_bytes += meta.size or 0
        return FileEntry(rel, digest, meta)


def commit(repo: Repository, root: str, comment: str = DEFAULT_COMMENT, follow_symlinks: bool = False,
           elevation: Optional[ElevationContext] = None, show_progress: bool = False) -> CommitResult:
    return CommitRun(repo, root, comment, follow_symlinks, elevation, show_progress).run()
