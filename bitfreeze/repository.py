# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Set

from .errors import BitfreezeError, FatalBackendError, NotFoundError, check_status
from .manifest import VERSION_ID_RE, Manifest, comment_member, parse_version_name
from .store import parse_blob_listing

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitRef:
    commit_id: int
    timestamp: str
    member: str  # archive entry name of the manifest

    @property
    def name(self) -> str:
        return f"{self.commit_id}-{self.timestamp}"

    @property
    def comment_member(self) -> str:
        return comment_member(self.commit_id, self.timestamp)


class Repository:
    """Commit-level view over an archive backend.

    The backend only needs ``list(pattern)``, ``extract(names, dest)``,
    ``add(paths, cwd, expected)``, ``repair()`` and ``exists()``.
    """

    def __init__(self, backend):
        self.backend = backend

    def exists(self) -> bool:
        return self.backend.exists()

    def require(self) -> None:
        if not self.backend.exists():
            raise NotFoundError("Repository archive not found.")

    def check_access(self) -> None:
        probe = getattr(self.backend, "probe", None)
        if probe is not None:
            check_status(probe(), "Opening archive")

    # ===============================
    # Commits
    # ===============================

    def commits(self) -> List[CommitRef]:
        """All commits, most recent timestamp first."""
        refs = []
        for line in self.backend.list("versions/*"):
            parsed = parse_version_name(line)
            if parsed:
                refs.append(CommitRef(parsed[0], parsed[1], line.strip()))
        # timestamps sort lexicographically; highest wins
        refs.sort(key=lambda r: (r.timestamp, r.commit_id), reverse=True)
        return refs

    def latest(self) -> Optional[CommitRef]:
        refs = self.commits()
        return refs[0] if refs else None

    def find(self, commit_id: int) -> CommitRef:
        for ref in self.commits():
            if ref.commit_id == commit_id:
                return ref
        raise NotFoundError(f"Commit ID {commit_id} not found.")

    def next_commit_id(self) -> int:
        highest = 0
        for line in self.backend.list("versions/*"):
            m = VERSION_ID_RE.match(line.strip())
            if m:
                highest = max(highest, int(m.group(1)))
        return highest + 1

    def existing_hashes(self) -> Set[str]:
        return parse_blob_listing(self.backend.list("files/*"))

    # ===============================
    # Reading members
    # ===============================

    def _read_member(self, member: str) -> Optional[str]:
        with tempfile.TemporaryDirectory(prefix="bitfreeze_") as tmp:
            code = self.backend.extract([member], tmp)
            path = Path(tmp) / Path(member).name
            if not path.exists():
                if code != 0:
                    check_status(code, f"Extracting {member}")
                return None
            return path.read_text(encoding="utf-8", errors="surrogateescape")

    def read_manifest_text(self, ref: CommitRef) -> str:
        text = self._read_member(ref.member)
        if text is None:
            raise FatalBackendError(f"Manifest {ref.member} could not be extracted.")
        return text

    def read_comment(self, ref: CommitRef) -> str:
        try:
            text = self._read_member(ref.comment_member)
        except BitfreezeError as e:
            logger.debug("comment %s unreadable: %s", ref.comment_member, e)
            text = None
        return text.strip() if text else "No comment"

    def read_manifest(self, ref: CommitRef, with_comment: bool = False) -> Manifest:
        text = self.read_manifest_text(ref)
        comment = self.read_comment(ref) if with_comment else ""
        return Manifest.from_text(text, ref.commit_id, ref.timestamp, comment)

    def load(self, commit_id: int) -> Manifest:
        return self.read_manifest(self.find(commit_id))

    def extract_blobs(self, hashes: List[str], dest: str) -> int:
        return self.backend.extract([f"files/{h}" for h in hashes], dest)
