# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors
"""Manifest data model and its tab-separated text codec.

One entry per line:

    FILE  path <TAB> hash    <TAB> perm owner group mtime atime ctime size
    DIR   path <TAB> [DIR]   <TAB> perm owner group mtime atime ctime size
    LINK  path <TAB> [LINK]  <TAB> target <TAB> perm owner group mtime atime ctime size

Older archives carry fewer fields: bare ``path hash`` lines, then six
metadata fields without ``size``. All generations are read; only the
newest is written. Paths containing tabs or newlines cannot be encoded.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, Dict, Iterable, List, Optional, Tuple, Union

logger = logging.getLogger(__name__)

DIR_MARKER = "[DIR]"
LINK_MARKER = "[LINK]"

META_FIELDS_V2 = 6  # perm owner group mtime atime ctime
META_FIELDS_V3 = 7  # + size

# versions/<id>-<timestamp>.manifest (and the legacy .txt name)
VERSION_RE = re.compile(r"^versions/(\d+)-([\d\-: T]+)\.(manifest|txt)$")
VERSION_ID_RE = re.compile(r"^versions/(\d+)-")


class ManifestError(ValueError):
    pass


class EntryKind(Enum):
    FILE = "file"
    DIRECTORY = "dir"
    SYMLINK = "link"


@dataclass(frozen=True)
class Metadata:
    permissions: int
    owner: str
    group: str
    mtime: int
    atime: int
    ctime: int
    size: Optional[int] = None

    def fields(self) -> List[str]:
        size = "" if self.size is None else str(self.size)
        return [format(self.permissions, "04o"), self.owner, self.group,
                str(self.mtime), str(self.atime), str(self.ctime), size]

    @classmethod
    def parse(cls, parts: List[str]) -> "Metadata":
        if len(parts) not in (META_FIELDS_V2, META_FIELDS_V3):
            raise ManifestError(f"expected 6 or 7 metadata fields, got {len(parts)}")
        try:
            size = int(parts[6]) if len(parts) == META_FIELDS_V3 and parts[6] != "" else None
            return cls(
                permissions=int(parts[0], 8),
                owner=parts[1],
                group=parts[2],
                mtime=int(float(parts[3])),
                atime=int(float(parts[4])),
                ctime=int(float(parts[5])),
                size=size,
            )
        except ValueError as exc:
            raise ManifestError(f"bad metadata field: {exc}")

    def access_fields(self) -> Tuple[int, str, str]:
        return self.permissions, self.owner, self.group


@dataclass(frozen=True)
class FileEntry:
    kind: ClassVar[EntryKind] = EntryKind.FILE
    path: str
    hash: str
    metadata: Optional[Metadata] = None


@dataclass(frozen=True)
class DirEntry:
    kind: ClassVar[EntryKind] = EntryKind.DIRECTORY
    path: str
    metadata: Optional[Metadata] = None


@dataclass(frozen=True)
class SymlinkEntry:
    kind: ClassVar[EntryKind] = EntryKind.SYMLINK
    path: str
    target: str
    metadata: Optional[Metadata] = None


ManifestEntry = Union[FileEntry, DirEntry, SymlinkEntry]


# ===============================
# Codec
# ===============================

def encode_entry(entry: ManifestEntry) -> str:
    if "\t" in entry.path or "\n" in entry.path:
        raise ManifestError(f"path cannot be encoded: {entry.path!r}")
    if entry.metadata is None:
        raise ManifestError(f"entry has no metadata: {entry.path}")
    meta = entry.metadata.fields()
    if isinstance(entry, FileEntry):
        parts = [entry.path, entry.hash]
    elif isinstance(entry, DirEntry):
        parts = [entry.path, DIR_MARKER]
    elif isinstance(entry, SymlinkEntry):
        if "\t" in entry.target or "\n" in entry.target:
            raise ManifestError(f"link target cannot be encoded: {entry.target!r}")
        parts = [entry.path, LINK_MARKER, entry.target]
    else:
        raise TypeError(f"not a manifest entry: {entry!r}")
    return "\t".join(parts + meta)


def decode_entry(line: str) -> ManifestEntry:
    parts = line.split("\t")
    if len(parts) < 2:
        raise ManifestError(f"too few fields ({len(parts)})")
    path, marker = parts[0], parts[1]
    if not path:
        raise ManifestError("empty path")

    if marker == LINK_MARKER:
        if len(parts) < 3:
            raise ManifestError("link entry without target")
        target, rest = parts[2], parts[3:]
        meta = Metadata.parse(rest) if rest else None
        return SymlinkEntry(path, target, meta)

    rest = parts[2:]
    meta = Metadata.parse(rest) if rest else None
    if marker == DIR_MARKER:
        return DirEntry(path, meta)
    return FileEntry(path, marker, meta)


def encode_entries(entries: Iterable[ManifestEntry]) -> str:
    lines = [encode_entry(e) for e in entries]
    return "\n".join(lines) + "\n" if lines else ""


def decode_entries(text: str) -> List[ManifestEntry]:
    entries: List[ManifestEntry] = []
    for lineno, line in enumerate(text.splitlines(), 1):
        if not line.strip():
            continue
        try:
            entries.append(decode_entry(line))
        except ManifestError as exc:
            logger.warning("manifest line %d ignored: %s", lineno, exc)
    return entries


# ===============================
# Manifest
# ===============================

@dataclass
class Manifest:
    commit_id: int
    timestamp: str
    comment: str = ""
    entries: List[ManifestEntry] = field(default_factory=list)

    def __post_init__(self):
        seen = set()
        for e in self.entries:
            if e.path in seen:
                raise ManifestError(f"duplicate path in manifest: {e.path}")
            seen.add(e.path)

    @property
    def name(self) -> str:
        return f"{self.commit_id}-{self.timestamp}"

    def to_text(self) -> str:
        return encode_entries(self.entries)

    @classmethod
    def from_text(cls, text: str, commit_id: int = 0, timestamp: str = "", comment: str = "") -> "Manifest":
        entries = decode_entries(text)
        # tolerate duplicated paths in old archives, last one wins
        unique: Dict[str, ManifestEntry] = {}
        for e in entries:
            unique[e.path] = e
        if len(unique) != len(entries):
            logger.warning("manifest %s-%s has duplicate paths", commit_id, timestamp)
        return cls(commit_id, timestamp, comment, list(unique.values()))

    def files(self) -> Dict[str, FileEntry]:
        return {e.path: e for e in self.entries if isinstance(e, FileEntry)}

    def directories(self) -> List[DirEntry]:
        return [e for e in self.entries if isinstance(e, DirEntry)]

    def symlinks(self) -> List[SymlinkEntry]:
        return [e for e in self.entries if isinstance(e, SymlinkEntry)]

    def hashes(self) -> List[str]:
        seen: Dict[str, None] = {}
        for e in self.entries:
            if isinstance(e, FileEntry):
                seen.setdefault(e.hash)
        return list(seen)


# ===============================
# Version names
# ===============================

def manifest_member(commit_id: int, timestamp: str) -> str:
    return f"versions/{commit_id}-{timestamp}.manifest"


def comment_member(commit_id: int, timestamp: str) -> str:
    return f"versions/{commit_id}-{timestamp}.comment"


def parse_version_name(line: str) -> Optional[Tuple[int, str]]:
    m = VERSION_RE.match(line.strip())
    if not m:
        return None
    return int(m.group(1)), m.group(2)
