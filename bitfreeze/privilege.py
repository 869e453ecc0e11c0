# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors
"""Privilege broker.

Every elevatable operation follows the same policy (see ``attempt``): run it
unprivileged, on ``PermissionError`` retry once through the elevation
context if there is one, and if that fails too record a skip and move on.
The elevation password lives only inside an ``ElevationContext`` object that
callers pass around explicitly.
"""

import getpass
import logging
import os
import stat
import subprocess
import sys
from typing import Any, Callable, List, Optional, Sequence, Tuple

from .config import ELEVATED_TIMEOUT, PROBE_LIMIT
from .errors import AuthenticationError, ElevationFailed
from .manifest import EntryKind, Metadata
from . import report

logger = logging.getLogger(__name__)

_FIND_KINDS = {"f": EntryKind.FILE, "d": EntryKind.DIRECTORY, "l": EntryKind.SYMLINK}


def is_privileged() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


class ElevationContext:
    __slots__ = ["_password", "sudo", "timeout"]

    def __init__(self, password: str, sudo: str = "sudo", timeout: float = ELEVATED_TIMEOUT):
        self._password = password
        self.sudo = sudo
        self.timeout = timeout

    def __repr__(self) -> str:
        return f"ElevationContext(sudo={self.sudo!r}, password=***)"

    def run(self, argv: Sequence[str], op: str, path: str,
            timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        # -k: never lean on a cached sudo timestamp, the password goes in on stdin every time
        cmd = [self.sudo, "-S", "-k", "-p", "", "--", *argv]
        try:
            res = subprocess.run(
                cmd,
                input=(self._password + "\n").encode(),
                capture_output=True,
                timeout=self.timeout if timeout is None else timeout,
            )
        except subprocess.TimeoutExpired:
            raise ElevationFailed(op, path, report.ELEVATION_TIMEOUT, f"no result after {self.timeout}s")
        except FileNotFoundError as e:
            raise ElevationFailed(op, path, report.ELEVATION_FAILED, str(e))
        if res.returncode != 0:
            detail = res.stderr.decode(errors="replace").strip().splitlines()
            raise ElevationFailed(op, path, report.ELEVATION_FAILED,
                                  detail[-1] if detail else f"exit code {res.returncode}")
        return res

    def validate(self) -> bool:
        try:
            self.run(["true"], "validate", "-", timeout=30)
            return True
        except ElevationFailed:
            return False


# ===============================
# Detection & credential
# ===============================

def needs_elevation(root: str, limit: int = PROBE_LIMIT) -> bool:
    """True if root, or anything met within ``limit`` entries below it, is unreadable."""
    if is_privileged():
        return False
    if not os.access(root, os.R_OK | os.X_OK):
        return True
    from .fsmeta import list_dir

    seen = 0
    stack = [root]
    while stack and seen < limit:
        d = stack.pop()
        try:
            names = list_dir(d)
        except PermissionError:
            return True
        except OSError:
            continue
        for name in names:
            seen += 1
            p = os.path.join(d, name)
            try:
                st = os.lstat(p)
            except PermissionError:
                return True
            except OSError:
                continue
            if stat.S_ISDIR(st.st_mode):
                if not os.access(p, os.R_OK | os.X_OK):
                    return True
                stack.append(p)
            elif stat.S_ISREG(st.st_mode) and not os.access(p, os.R_OK):
                return True
            if seen >= limit:
                break
    return False


def obtain_credential(prompt: Callable[[str], str] = getpass.getpass, attempts: int = 3,
                      sudo: str = "sudo", timeout: float = ELEVATED_TIMEOUT) -> ElevationContext:
    for _ in range(attempts):
        password = prompt("[sudo] password for elevated access: ")
        if not password:
            break
        ctx = ElevationContext(password, sudo=sudo, timeout=timeout)
        if ctx.validate():
            return ctx
        print("Sorry, try again.", file=sys.stderr)
    raise AuthenticationError("could not obtain elevated access")


# ===============================
# Elevated operations
# ===============================

def elevated_list(ctx: ElevationContext, path: str) -> List[Tuple[str, EntryKind]]:
    res = ctx.run(["find", path, "-mindepth", "1",
                   "(", "-type", "f", "-o", "-type", "d", "-o", "-type", "l", ")",
                   "-printf", r"%y\t%p\0"], "list", path)
    out = []
    for rec in res.stdout.decode(errors="surrogateescape").split("\0"):
        if not rec:
            continue
        kind, _, p = rec.partition("\t")
        if kind in _FIND_KINDS:
            out.append((p, _FIND_KINDS[kind]))
    out.sort()
    return out


def elevated_hash(ctx: ElevationContext, path: str) -> str:
    res = ctx.run(["md5sum", "-z", "--", path], "hash", path)
    digest = res.stdout[:32].decode("ascii", errors="replace")
    if len(digest) != 32:
        raise ElevationFailed("hash", path, report.ELEVATION_FAILED, "unexpected md5sum output")
    return digest


def elevated_copy(ctx: ElevationContext, src: str, dest: str) -> None:
    # staged copy must end up owned by us so the backend can read it
    ctx.run(["install", "-m", "0600", "-o", str(os.getuid()), "-g", str(os.getgid()),
             "--", src, dest], "copy", src)


def elevated_stat(ctx: ElevationContext, path: str) -> Metadata:
    res = ctx.run(["stat", "-c", r"%a\t%u\t%g\t%Y\t%X\t%Z\t%s", "--", path], "stat", path)
    parts = res.stdout.decode().strip().split("\t")
    if len(parts) != 7:
        raise ElevationFailed("stat", path, report.ELEVATION_FAILED, "unexpected stat output")
    from .fsmeta import group_name, owner_name

    return Metadata(
        permissions=int(parts[0], 8),
        owner=owner_name(int(parts[1])),
        group=group_name(int(parts[2])),
        mtime=int(parts[3]),
        atime=int(parts[4]),
        ctime=int(parts[5]),
        size=int(parts[6]),
    )


def elevated_readlink(ctx: ElevationContext, path: str) -> str:
    res = ctx.run(["readlink", "--", path], "readlink", path)
    return res.stdout.decode(errors="surrogateescape").rstrip("\n")


def elevated_chmod(ctx: ElevationContext, path: str, mode: int) -> None:
    ctx.run(["chmod", format(mode, "04o"), "--", path], "chmod", path)


def elevated_chown(ctx: ElevationContext, path: str, uid: int, gid: int, no_dereference: bool = False) -> None:
    argv = ["chown"] + (["-h"] if no_dereference else []) + [f"{uid}:{gid}", "--", path]
    ctx.run(argv, "chown", path)


def elevated_touch(ctx: ElevationContext, path: str, mtime: int, atime: int) -> None:
    ctx.run(["touch", "-c", "-m", "-d", f"@{mtime}", "--", path], "touch", path)
    ctx.run(["touch", "-c", "-a", "-d", f"@{atime}", "--", path], "touch", path)


# ===============================
# Retry policy
# ===============================

def attempt(op: str, path: str, action: Callable[[], Any],
            elevated: Optional[Callable[[ElevationContext], Any]],
            elevation: Optional[ElevationContext], skips: report.SkipLog,
            label: Optional[str] = None) -> Tuple[bool, Any]:
    """Run ``action``; on PermissionError retry once elevated; otherwise record a skip.

    Returns ``(ok, value)``. Only permission problems are handled here, any
    other OSError propagates to the caller.
    """
    label = label or path
    try:
        return True, action()
    except PermissionError as e:
        if elevation is None or elevated is None:
            skips.add(label, report.PERMISSION_DENIED, op, e.strerror or "")
            return False, None
    try:
        value = elevated(elevation)
        logger.debug("elevated %s succeeded for %s", op, path)
        return True, value
    except ElevationFailed as e:
        skips.add(label, e.reason, op, e.detail)
        return False, None
