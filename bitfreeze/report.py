# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

import logging
import sys
from collections import Counter
from typing import Dict, Iterator, List, NamedTuple, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# Machine-readable skip reasons
PERMISSION_DENIED = "permission-denied"
ELEVATION_FAILED = "elevation-failed"
ELEVATION_TIMEOUT = "elevation-timeout"
VANISHED = "vanished"
UNSUPPORTED_TYPE = "unsupported-type"
IO_ERROR = "io-error"
MISSING_BLOB = "missing-blob"
UNKNOWN_OWNER = "unknown-owner"


class Skip(NamedTuple):
    path: str
    reason: str
    op: str = ""
    detail: str = ""


class SkipLog:
    """Ordered record of items a run gave up on. Never raises."""

    def __init__(self) -> None:
        self._items: List[Skip] = []

    def add(self, path: str, reason: str, op: str = "", detail: str = "") -> None:
        self._items.append(Skip(path, reason, op, detail))
        logger.warning("skipped %s [%s]%s%s", path, reason,
                       f" during {op}" if op else "", f": {detail}" if detail else "")

    def counts(self) -> Dict[str, int]:
        return dict(Counter(s.reason for s in self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Skip]:
        return iter(self._items)


# ===============================
# Console summaries
# ===============================

def print_summary(rows: Sequence[Tuple[str, object]], out=None) -> None:
    out = out or sys.stdout
    width = max((len(label) for label, _ in rows), default=0) + 2
    print("===== SUMMARY =====", file=out)
    for label, value in rows:
        if isinstance(value, int):
            value = f"{value:,}"
        print(f"  {(label + ':').ljust(width)}{value}", file=out)


def print_skips(skips: SkipLog, limit: int = 10, out=None) -> None:
    out = out or sys.stdout
    if not len(skips):
        return
    summary = ", ".join(f"{reason}={n}" for reason, n in sorted(skips.counts().items()))
    print(f"\n== SKIPPED ({len(skips)}: {summary}) ==", file=out)
    for i, s in enumerate(skips):
        if i >= limit:
            print(f" ... and {len(skips) - limit} more", file=out)
            break
        print(f" {s.path} [{s.reason}]" + (f" {s.detail}" if s.detail else ""), file=out)


def truncate(text: str, width: int = 40) -> str:
    return text if len(text) <= width else text[: width - 3] + "..."


def format_bytes(n: Optional[int]) -> str:
    if n is None:
        return "?"
    size = float(n)
    for unit in ("B", "KiB", "MiB", "GiB", "TiB"):
        if size < 1024 or unit == "TiB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{n} B"
