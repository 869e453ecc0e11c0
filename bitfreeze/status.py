# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors
"""Live tree vs. the latest commit. Read-only: nothing is written anywhere."""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Set, Tuple

from tqdm import tqdm

from . import report
from .errors import NotFoundError
from .fsmeta import read_metadata
from .manifest import EntryKind, Manifest
from .privilege import ElevationContext
from .repository import CommitRef, Repository
from .scanner import Scanner
from .store import hash_with_fallback

logger = logging.getLogger(__name__)


@dataclass
class StatusReport:
    new: List[str] = field(default_factory=list)
    modified: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    metadata_changed: List[str] = field(default_factory=list)
    checksum_suspect: List[str] = field(default_factory=list)
    skips: report.SkipLog = field(default_factory=report.SkipLog)
    commit: Optional[str] = None

    @property
    def clean(self) -> bool:
        return not (self.new or self.modified or self.deleted
                    or self.metadata_changed or self.checksum_suspect)


def _unseen_roots(skips: report.SkipLog) -> List[str]:
    return [s.path for s in skips if s.op in ("list", "scan") and s.reason != report.VANISHED]


def _under(path: str, roots: List[str]) -> bool:
    return any(r == "." or path == r or path.startswith(r + "/") for r in roots)


def compare_tree(manifest: Manifest, root: str, include_meta: bool = False, checksum: bool = False,
                 follow_symlinks: bool = False, elevation: Optional[ElevationContext] = None,
                 show_progress: bool = False) -> StatusReport:
    rep = StatusReport()
    stored = manifest.files()
    scanner = Scanner(root, follow_symlinks, elevation, rep.skips)
    live: Set[str] = set()

    for item in tqdm(scanner, desc="Checking files", unit="entry", dynamic_ncols=True,
                     disable=not show_progress):
        if item.kind is not EntryKind.FILE:
            continue
        rel = scanner.relpath(item.path)
        if rel in live:
            continue
        live.add(rel)
        entry = stored.get(rel)
        if entry is None:
            rep.new.append(rel)
            continue
        try:
            digest = hash_with_fallback(item.path, elevation, rep.skips, rel)
            if digest is None:
                continue
            meta = read_metadata(item.path, elevation, rep.skips, rel)
        except OSError as e:
            rep.skips.add(rel, report.IO_ERROR, "status", str(e))
            continue
        if meta is None:
            continue

        if digest != entry.hash:
            if checksum and entry.metadata is not None and entry.metadata.mtime == meta.mtime:
                # content moved under an unchanged mtime
                rep.checksum_suspect.append(rel)
            else:
                rep.modified.append(rel)
        elif (include_meta and entry.metadata is not None
              and entry.metadata.access_fields() != meta.access_fields()):
            rep.metadata_changed.append(rel)

    # directories missing from the live tree are not reported,
    # nor are files under entries the scan could not look into
    unseen = _unseen_roots(rep.skips)
    rep.deleted = sorted(p for p in stored if p not in live and not _under(p, unseen))
    rep.new.sort()
    rep.modified.sort()
    rep.metadata_changed.sort()
    rep.checksum_suspect.sort()
    return rep


def status(repo: Repository, root: str, include_meta: bool = False, checksum: bool = False,
           follow_symlinks: bool = False, elevation: Optional[ElevationContext] = None,
           show_progress: bool = False) -> Tuple[CommitRef, StatusReport]:
    ref = repo.latest()
    if ref is None:
        raise NotFoundError("No commits found.")
    if not os.path.isdir(root):
        raise NotFoundError(f"Folder '{root}' does not exist.")
    manifest = repo.read_manifest(ref)
    rep = compare_tree(manifest, root, include_meta, checksum, follow_symlinks, elevation, show_progress)
    rep.commit = ref.name
    return ref, rep
