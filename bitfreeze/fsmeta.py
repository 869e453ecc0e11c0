# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

import grp
import os
import pwd
import stat
from functools import lru_cache
from typing import BinaryIO, List, Optional

from . import report
from .manifest import Metadata
from .privilege import (ElevationContext, attempt, elevated_chmod, elevated_chown,
                        elevated_stat, elevated_touch)

_NOATIME = getattr(os, "O_NOATIME", 0)


# ===============================
# Reads that leave atime alone
# ===============================

def _open_fd(path: str, flags: int) -> int:
    if _NOATIME:
        try:
            return os.open(path, flags | _NOATIME)
        except PermissionError:
            # EPERM when we do not own the file; fall through to a plain open
            pass
    return os.open(path, flags)


def open_noatime(path: str) -> BinaryIO:
    return os.fdopen(_open_fd(path, os.O_RDONLY), "rb")


def list_dir(path: str) -> List[str]:
    fd = _open_fd(path, os.O_RDONLY | getattr(os, "O_DIRECTORY", 0))
    try:
        return os.listdir(fd)
    finally:
        os.close(fd)


# ===============================
# Owner / group names
# ===============================

@lru_cache(maxsize=None)
def owner_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


@lru_cache(maxsize=None)
def group_name(gid: int) -> str:
    try:
        return grp.getgrgid(gid).gr_name
    except KeyError:
        return str(gid)


@lru_cache(maxsize=None)
def resolve_uid(owner: str) -> Optional[int]:
    try:
        return pwd.getpwnam(owner).pw_uid
    except KeyError:
        return int(owner) if owner.isdigit() else None


@lru_cache(maxsize=None)
def resolve_gid(group: str) -> Optional[int]:
    try:
        return grp.getgrnam(group).gr_gid
    except KeyError:
        return int(group) if group.isdigit() else None


# ===============================
# Capture
# ===============================

def metadata_from_stat(st: os.stat_result) -> Metadata:
    return Metadata(
        permissions=stat.S_IMODE(st.st_mode),
        owner=owner_name(st.st_uid),
        group=group_name(st.st_gid),
        mtime=int(st.st_mtime),
        atime=int(st.st_atime),
        ctime=int(st.st_ctime),
        size=st.st_size,
    )


def read_metadata(path: str, elevation: Optional[ElevationContext], skips: report.SkipLog,
                  label: Optional[str] = None) -> Optional[Metadata]:
    ok, meta = attempt("stat", path,
                       lambda: metadata_from_stat(os.lstat(path)),
                       lambda ctx: elevated_stat(ctx, path),
                       elevation, skips, label)
    return meta if ok else None


# ===============================
# Restore
# ===============================

def restore_ownership(path: str, meta: Metadata, elevation: Optional[ElevationContext],
                      skips: report.SkipLog, label: str, symlink: bool = False) -> bool:
    uid, gid = resolve_uid(meta.owner), resolve_gid(meta.group)
    if uid is None or gid is None:
        skips.add(label, report.UNKNOWN_OWNER, "chown", f"{meta.owner}:{meta.group}")
        return False
    ok, _ = attempt("chown", path,
                    lambda: os.chown(path, uid, gid, follow_symlinks=not symlink),
                    lambda ctx: elevated_chown(ctx, path, uid, gid, no_dereference=symlink),
                    elevation, skips, label)
    return ok


def restore_metadata(path: str, meta: Optional[Metadata], elevation: Optional[ElevationContext],
                     skips: report.SkipLog, label: str, ownership: bool) -> bool:
    """chmod, then chown/chgrp (only when allowed), then atime/mtime last."""
    if meta is None:
        return True
    ok, _ = attempt("chmod", path,
                    lambda: os.chmod(path, meta.permissions),
                    lambda ctx: elevated_chmod(ctx, path, meta.permissions),
                    elevation, skips, label)
    if ownership:
        ok = restore_ownership(path, meta, elevation, skips, label) and ok
    touched, _ = attempt("touch", path,
                         lambda: os.utime(path, (meta.atime, meta.mtime)),
                         lambda ctx: elevated_touch(ctx, path, meta.mtime, meta.atime),
                         elevation, skips, label)
    return ok and touched
