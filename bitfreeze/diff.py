# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

from dataclasses import dataclass, field
from typing import List

from .manifest import Manifest


@dataclass
class DiffResult:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    changed: List[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


def diff(a: Manifest, b: Manifest) -> DiffResult:
    """Compare file entries only; directories and symlinks are not diffed."""
    files_a, files_b = a.files(), b.files()
    return DiffResult(
        added=sorted(files_b.keys() - files_a.keys()),
        removed=sorted(files_a.keys() - files_b.keys()),
        changed=sorted(p for p in files_a.keys() & files_b.keys() if files_a[p].hash != files_b[p].hash),
    )
