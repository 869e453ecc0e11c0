# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

import logging
import queue
import re
import subprocess
import threading
from dataclasses import dataclass, field
from typing import IO, List, Optional, Pattern, Sequence

from tqdm import tqdm

from .config import POLL_INTERVAL
from .errors import FatalBackendError

logger = logging.getLogger(__name__)

# rar prints "Adding    files/<hash>    OK" / "Extracting  <name>   OK"
SUCCESS_MARKER = re.compile(r"\bOK\s*$")


@dataclass
class MonitorResult:
    returncode: int
    matched: int
    percent: float
    lines: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def estimate_percent(matched: int, expected: int) -> float:
    if expected <= 0:
        return 0.0
    return min(100.0, matched * 100.0 / expected)


def _reader(stream: IO[bytes], out_q: "queue.Queue[Optional[str]]") -> None:
    # only job: move lines from the pipe into the queue, in order
    try:
        for raw in iter(stream.readline, b""):
            out_q.put(raw.decode(errors="replace").rstrip("\r\n"))
    finally:
        out_q.put(None)


class ProgressMonitor:
    """Run a backend command, polling its output to estimate completion.

    The estimate is cosmetic; the result's ``returncode`` comes from the
    process itself.
    """

    def __init__(self, argv: Sequence[str], expected: int, desc: str = "Working",
                 cwd: Optional[str] = None, marker: Pattern[str] = SUCCESS_MARKER,
                 poll_interval: float = POLL_INTERVAL, disable: bool = False):
        self.argv = list(argv)
        self.expected = expected
        self.desc = desc
        self.cwd = cwd
        self.marker = marker
        self.poll_interval = poll_interval
        self.disable = disable

    def run(self) -> MonitorResult:
        try:
            proc = subprocess.Popen(self.argv, cwd=self.cwd, stdin=subprocess.DEVNULL,
                                    stdout=subprocess.PIPE, stderr=subprocess.STDOUT)
        except FileNotFoundError:
            raise FatalBackendError(f"'{self.argv[0]}' not found") from None
        out_q: "queue.Queue[Optional[str]]" = queue.Queue()
        t = threading.Thread(target=_reader, args=(proc.stdout, out_q), daemon=True)
        t.start()

        pbar = tqdm(total=100, desc=self.desc, unit="%", dynamic_ncols=True,
                    bar_format="{l_bar}{bar}| {n:.0f}%", disable=self.disable)
        matched = 0
        lines: List[str] = []
        eof = False
        while not eof:
            try:
                line = out_q.get(timeout=self.poll_interval)
            except queue.Empty:
                if proc.poll() is not None and not t.is_alive():
                    break
                continue
            if line is None:
                eof = True
                continue
            lines.append(line)
            logger.debug("backend: %s", line)
            if self.marker.search(line):
                matched += 1
                pbar.n = estimate_percent(matched, self.expected)
                pbar.refresh()

        returncode = proc.wait()
        t.join(timeout=self.poll_interval)
        pbar.n = 100
        pbar.set_postfix({"status": "ok" if returncode == 0 else f"failed ({returncode})"})
        pbar.close()
        if proc.stdout is not None:
            proc.stdout.close()
        return MonitorResult(returncode, matched, 100.0, lines)
