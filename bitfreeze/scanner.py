# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors
"""Lazy filesystem traversal yielding ``ScanItem(path, kind)``.

Iteration always starts again from the root, so a ``Scanner`` can be walked
more than once, until a subtree has had to be listed through the elevation
context. That listing is consumed eagerly and the scanner is no longer
restartable afterwards (``restartable`` turns False and ``iter()`` raises).
"""

import logging
import os
import stat
from typing import Iterator, List, NamedTuple, Optional, Set

from . import report
from .errors import ElevationFailed, NotFoundError
from .fsmeta import list_dir
from .manifest import EntryKind
from .privilege import ElevationContext, elevated_list

logger = logging.getLogger(__name__)


class ScanItem(NamedTuple):
    path: str
    kind: EntryKind
    followed: bool = False  # reached through a symlink in follow mode


class Scanner:
    def __init__(self, root: str, follow_symlinks: bool = False,
                 elevation: Optional[ElevationContext] = None,
                 skips: Optional[report.SkipLog] = None):
        self.root = os.path.realpath(root)
        self.follow_symlinks = follow_symlinks
        self.elevation = elevation
        self.skips = report.SkipLog() if skips is None else skips
        self.restartable = True
        self._followed: Set[str] = set()

    def __iter__(self) -> Iterator[ScanItem]:
        if not self.restartable:
            raise RuntimeError("scanner cannot be restarted after an elevated listing")
        if not os.path.isdir(self.root):
            raise NotFoundError(f"Folder '{self.root}' does not exist.")
        self._followed = set()
        return self._scan_root()

    def relpath(self, path: str) -> str:
        return os.path.relpath(path, self.root)

    def _scan_root(self) -> Iterator[ScanItem]:
        try:
            names = list_dir(self.root)
        except PermissionError:
            yield from self._elevated_subtree(self.root)
            return
        yield from self._walk(self.root, names)

    def _walk(self, directory: str, names: List[str]) -> Iterator[ScanItem]:
        for name in sorted(names):
            path = os.path.join(directory, name)
            try:
                st = os.lstat(path)
            except FileNotFoundError:
                self.skips.add(self.relpath(path), report.VANISHED, "scan")
                continue
            except PermissionError as e:
                if self.elevation is not None:
                    # listable but not searchable, so the remaining names come from the elevated listing
                    yield from self._elevated_subtree(directory, start=name)
                    return
                self.skips.add(self.relpath(path), report.PERMISSION_DENIED, "scan", e.strerror or "")
                continue

            mode = st.st_mode
            # links first, S_ISDIR/S_ISREG never see through them on lstat anyway
            if stat.S_ISLNK(mode):
                yield ScanItem(path, EntryKind.SYMLINK)
                if self.follow_symlinks:
                    yield from self._follow(path)
            elif stat.S_ISDIR(mode):
                # list before yielding so the directory's atime is settled when it is stat'ed
                try:
                    children = list_dir(path)
                except PermissionError:
                    yield ScanItem(path, EntryKind.DIRECTORY)
                    yield from self._elevated_subtree(path)
                    continue
                except OSError as e:
                    self.skips.add(self.relpath(path), report.IO_ERROR, "scan", str(e))
                    continue
                yield ScanItem(path, EntryKind.DIRECTORY)
                yield from self._walk(path, children)
            elif stat.S_ISREG(mode):
                yield ScanItem(path, EntryKind.FILE)
            else:
                self.skips.add(self.relpath(path), report.UNSUPPORTED_TYPE, "scan")

    def _elevated_subtree(self, directory: str, start: Optional[str] = None) -> Iterator[ScanItem]:
        """Entries under ``directory`` from the privileged listing.

        With ``start``, only children named ``start`` or later (and their
        subtrees) are yielded; the earlier ones were already walked.
        """
        rel = self.relpath(directory)
        if self.elevation is None:
            self.skips.add(rel, report.PERMISSION_DENIED, "list")
            return
        self.restartable = False
        try:
            listing = elevated_list(self.elevation, directory)
        except ElevationFailed as e:
            self.skips.add(rel, e.reason, "list", e.detail)
            return
        logger.info("listed %d entries under %s with elevation", len(listing), rel)
        for path, kind in listing:
            if start is not None and os.path.relpath(path, directory).split(os.sep)[0] < start:
                continue
            yield ScanItem(path, kind)

    def _inside_root(self, path: str) -> bool:
        return path != self.root and os.path.commonpath([self.root, path]) == self.root

    def _follow(self, link: str) -> Iterator[ScanItem]:
        target = os.path.realpath(link)
        if not self._inside_root(target) or target in self._followed:
            return
        self._followed.add(target)
        if os.path.isfile(target):
            yield ScanItem(target, EntryKind.FILE, followed=True)
        elif os.path.isdir(target):
            try:
                children = list_dir(target)
            except OSError as e:
                self.skips.add(self.relpath(target), report.IO_ERROR, "follow", str(e))
                return
            yield ScanItem(target, EntryKind.DIRECTORY, followed=True)
            yield from self._walk(target, children)
        else:
            logger.debug("dangling link %s -> %s", link, target)
