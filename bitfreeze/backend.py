# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors
"""The archive engine, driven through the ``rar`` command line.

Methods return the raw numeric status; ``errors.check_status`` turns it into
an exception where the caller needs one.
"""

import logging
import os
import subprocess
import tempfile
from pathlib import Path
from typing import List, Optional, Sequence

from .config import COMPRESSION_LEVEL, RECOVERY_RECORD_SIZE
from .errors import AUTH_STATUS_CODES, FatalBackendError
from .progress import ProgressMonitor

logger = logging.getLogger(__name__)


class RarBackend:
    def __init__(self, archive: Path, password: Optional[str] = None, rar: str = "rar",
                 recovery_percent: int = RECOVERY_RECORD_SIZE, show_progress: bool = True):
        self.archive = Path(os.path.abspath(archive))
        self.password = password
        self.rar = rar
        self.recovery_percent = recovery_percent
        self.show_progress = show_progress

    def __repr__(self) -> str:
        return f"RarBackend({str(self.archive)!r}, encrypted={self.password is not None})"

    def exists(self) -> bool:
        return self.archive.exists()

    def _missing_binary(self) -> FatalBackendError:
        return FatalBackendError(f"'{self.rar}' not found; install rar or set BITFREEZE_RAR")

    def _pw(self, password: Optional[str] = None) -> List[str]:
        password = self.password if password is None else password
        # -p- : never stop and ask for a password on stdin
        return [f"-hp{password}"] if password else ["-p-"]

    def _run(self, argv: Sequence[str], cwd: Optional[str] = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(list(argv), cwd=cwd, stdin=subprocess.DEVNULL,
                                  capture_output=True, text=True, errors="surrogateescape")
        except FileNotFoundError:
            raise self._missing_binary() from None

    # ===============================
    # Operations
    # ===============================

    def list(self, pattern: str = "") -> List[str]:
        if not self.exists():
            return []
        argv = [self.rar, "lb", *self._pw(), str(self.archive)] + ([pattern] if pattern else [])
        res = self._run(argv)
        if res.returncode != 0:
            logger.debug("rar lb %s exited %d", pattern or "*", res.returncode)
            return []
        return [line for line in res.stdout.splitlines() if line.strip()]

    def probe(self) -> int:
        """Status of a bare listing; tells "wrong/missing password" apart from success."""
        if not self.exists():
            return 0
        return self._run([self.rar, "lb", *self._pw(), str(self.archive)]).returncode

    def add(self, paths: Sequence[str], cwd: str, expected: int = 0) -> int:
        argv = [self.rar, "a", "-r", f"-rr{self.recovery_percent}%", f"-m{COMPRESSION_LEVEL}",
                *self._pw(), str(self.archive), *paths]
        mon = ProgressMonitor(argv, expected=max(expected, 1), desc="Recording to archive",
                              cwd=cwd, disable=not self.show_progress)
        return mon.run().returncode

    def extract(self, names: Sequence[str], dest: str) -> int:
        if not names:
            return 0
        with tempfile.NamedTemporaryFile("w", prefix="bitfreeze_", suffix=".lst",
                                         delete=False, encoding="utf-8", errors="surrogateescape") as lst:
            lst.write("\n".join(names) + "\n")
            listfile = lst.name
        try:
            argv = [self.rar, "e", "-o+", *self._pw(), str(self.archive),
                    f"@{listfile}", os.path.join(dest, "")]
            mon = ProgressMonitor(argv, expected=len(names), desc="Extracting",
                                  disable=not self.show_progress or len(names) < 2)
            return mon.run().returncode
        finally:
            os.unlink(listfile)

    def repair(self) -> int:
        argv = [self.rar, "r", *self._pw(), str(self.archive)]
        try:
            return subprocess.run(argv, stdin=subprocess.DEVNULL).returncode
        except FileNotFoundError:
            raise self._missing_binary() from None

    def test_password(self, password: str) -> bool:
        if not self.exists():
            return True
        return self._run([self.rar, "lb", *self._pw(password), str(self.archive)]).returncode == 0

    def is_encrypted(self) -> bool:
        if not self.exists():
            return False
        code = self._run([self.rar, "lb", "-p-", str(self.archive)]).returncode
        return code in AUTH_STATUS_CODES
