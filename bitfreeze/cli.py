# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

import argparse
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import Callable, List, Optional

import psutil
from pydantic import ValidationError

from . import __version__, report
from .backend import RarBackend
from .checkout import checkout
from .commit import CommitRun
from .config import DEFAULT_COMMENT, Settings, load_settings
from .diff import diff
from .errors import AuthenticationError, BitfreezeError, PartialFailure, check_status
from .privilege import ElevationContext, is_privileged, needs_elevation, obtain_credential
from .repository import Repository
from .status import status

logger = logging.getLogger("bitfreeze")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 3


# ===============================
# Helpers
# ===============================

def lower_priority() -> None:
    proc = psutil.Process()
    try:
        proc.nice(19)
    except (psutil.AccessDenied, OSError) as e:
        logger.debug("could not lower CPU priority: %s", e)
    if hasattr(proc, "ionice") and hasattr(psutil, "IOPRIO_CLASS_IDLE"):
        try:
            proc.ionice(psutil.IOPRIO_CLASS_IDLE)
        except (psutil.AccessDenied, OSError) as e:
            logger.debug("could not lower I/O priority: %s", e)


def _yes(answer: str) -> bool:
    return answer.strip().lower() in ("y", "yes")


def resolve_password(args, backend: RarBackend, settings: Settings, creating: bool = False,
                     prompt: Callable[[str], str] = getpass.getpass,
                     ask: Callable[[str], str] = input) -> Optional[str]:
    if args.password:
        return args.password
    env_password = os.environ.get(settings.password_env)
    if not backend.exists():
        if creating and env_password:
            print(f"Creating new archive: {backend.archive}")
            print(f"{settings.password_env} environment variable is set.")
            if _yes(ask("Do you want to encrypt this new archive with this password? (y/N): ")):
                return env_password
            print("Proceeding without password encryption.")
        return None
    if env_password:
        return env_password
    if backend.is_encrypted():
        password = prompt(f"Archive '{backend.archive.name}' is password protected.\nEnter password: ")
        if not password:
            raise AuthenticationError("No password provided.")
        return password
    return None


def maybe_elevate(root: str, settings: Settings, force: bool = False) -> Optional[ElevationContext]:
    if is_privileged():
        return None
    if not force and not needs_elevation(root):
        return None
    if not sys.stdin.isatty():
        print("WARNING: some items are unreadable and no terminal is available to ask for elevation; "
              "they will be skipped.", file=sys.stderr)
        return None
    print("Some items need elevated access to be read or restored.")
    try:
        return obtain_credential(sudo=settings.sudo, timeout=settings.elevated_timeout)
    except AuthenticationError:
        print("WARNING: continuing without elevation; unreadable items will be skipped.", file=sys.stderr)
        return None


def show_progress(args) -> bool:
    return not args.quiet and sys.stderr.isatty()


def open_repository(args, settings: Settings, creating: bool = False) -> Repository:
    backend = RarBackend(args.archive, rar=settings.rar, recovery_percent=settings.recovery_percent,
                         show_progress=show_progress(args))
    backend.password = resolve_password(args, backend, settings, creating=creating)
    repo = Repository(backend)
    if not creating:
        repo.require()
    repo.check_access()
    return repo


# ===============================
# Commands
# ===============================

def cmd_commit(args, settings: Settings) -> int:
    root = os.path.realpath(args.folder)
    repo = open_repository(args, settings, creating=True)
    elevation = maybe_elevate(root, settings) if os.path.isdir(root) else None
    print(f"Scanning files in '{root}'...")
    result = CommitRun(repo, root, args.comment or DEFAULT_COMMENT, args.follow_symlinks, elevation,
                       show_progress=show_progress(args)).run()
    s = result.stats
    print("Scan complete.")
    if not result.changed:
        print(f"Last commit:      {result.previous}")
        print(f"Comment:          {result.comment}\n")
        print("NOTE: No changes detected since last commit. Skipping commit creation.")
    else:
        print("Commit complete.")
        print(f"Commit:   {result.name}")
        print(f"Comment:  {result.comment}")
        if repo.backend.password:
            print("Password protection: Enabled")
        print(f"Time taken: {result.elapsed} sec")
    report.print_summary([
        ("Total files scanned", s.scanned),
        ("Unique files added", s.added),
        ("Already present", s.duplicate),
        ("Directories recorded", s.directories),
        ("Symlinks recorded", s.symlinks),
        ("Skipped", s.skipped),
        ("Total size", report.format_bytes(s.total_bytes)),
        ("Added size", report.format_bytes(s.added_bytes)),
    ])
    report.print_skips(result.skips)
    if len(result.skips):
        raise PartialFailure("Commit", len(result.skips))
    return EXIT_OK


def cmd_list(args, settings: Settings) -> int:
    repo = open_repository(args, settings)
    refs = repo.commits()
    if not refs:
        print("No commits found.")
        return EXIT_OK
    print("Available commits (most recent first):")
    print("ID    Date/Time            Comment")
    print("----------------------------------------")
    for ref in refs:
        comment = report.truncate(repo.read_comment(ref))
        print(f"{str(ref.commit_id).ljust(4)}  {ref.timestamp.ljust(19)}  {comment}")
    return EXIT_OK


def cmd_checkout(args, settings: Settings) -> int:
    repo = open_repository(args, settings)
    elevation = maybe_elevate(args.dest, settings, force=True) if args.sudo else None
    print(f"Restoring commit {args.commit_id} ...")
    result = checkout(repo, args.commit_id, args.dest, args.force_directory, elevation,
                      show_progress=show_progress(args))
    s = result.stats
    print(f"Restore of {result.commit} complete.")
    report.print_summary([
        ("Files restored", f"{s.files_restored:,} / {s.files_total:,}"),
        ("Unique contents", s.unique_contents),
        ("Directories", s.directories),
        ("Symlinks", s.symlinks),
        ("Symlink fallbacks", s.link_fallbacks),
        ("Behind symlinks", s.behind_link),
        ("Errors", s.errors),
    ])
    report.print_skips(result.skips)
    if len(result.skips):
        raise PartialFailure("Checkout", len(result.skips))
    return EXIT_OK


def cmd_diff(args, settings: Settings) -> int:
    repo = open_repository(args, settings)
    ref1, ref2 = repo.find(args.commit1), repo.find(args.commit2)
    print(f"Comparing commit {args.commit1}: {ref1.name} with commit {args.commit2}: {ref2.name}...")
    d = diff(repo.read_manifest(ref1), repo.read_manifest(ref2))
    print("\nFile differences between commits:")
    print("========================================")
    if d.empty:
        print("No differences found between commits.")
        return EXIT_OK
    for title, paths in ((f"ADDED files in commit {args.commit2}", d.added),
                         (f"REMOVED files from commit {args.commit1}", d.removed),
                         ("CHANGED files", d.changed)):
        if paths:
            print(f"\n{title}:")
            print("----------------------------------------")
            for p in paths:
                print(f"  {p}")
    print("\nSummary:")
    print(f"  Added:   {len(d.added)} files")
    print(f"  Removed: {len(d.removed)} files")
    print(f"  Changed: {len(d.changed)} files")
    return EXIT_OK


def cmd_status(args, settings: Settings) -> int:
    root = os.path.realpath(args.folder)
    repo = open_repository(args, settings)
    elevation = maybe_elevate(root, settings) if os.path.isdir(root) else None
    ref, rep = status(repo, root, args.include_meta, args.checksum, args.follow_symlinks, elevation,
                      show_progress=show_progress(args))
    print(f"Comparing '{root}' with commit {ref.name}")
    if rep.clean:
        print("Working tree matches the latest commit.")
    for title, paths in (("NEW", rep.new), ("MODIFIED", rep.modified), ("DELETED", rep.deleted),
                         ("METADATA CHANGED", rep.metadata_changed),
                         ("CHECKSUM SUSPECT (content changed, mtime did not)", rep.checksum_suspect)):
        if paths:
            print(f"\n== {title} ({len(paths)}) ==")
            for p in paths:
                print(f" {p}")
    report.print_skips(rep.skips)
    if len(rep.skips):
        raise PartialFailure("Status", len(rep.skips))
    return EXIT_OK


def cmd_repair(args, settings: Settings) -> int:
    repo = open_repository(args, settings)
    print(f"Attempting to repair archive: {args.archive}...")
    code = repo.backend.repair()
    check_status(code, "Repair")
    print("Repair completed successfully.")
    print("Note: If the archive was severely damaged, some files may have been lost.")
    print("Check the archive contents with 'list' command to verify integrity.")
    return EXIT_OK


# ===============================
# CLI
# ===============================

def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("-p", "--password", help="Archive password (default: $RAR_PASSWORD)")
    common.add_argument("--low-priority", action="store_true", help="Run with idle CPU/IO priority")
    common.add_argument("-q", "--quiet", action="store_true", help="No progress bars")
    common.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    ap = argparse.ArgumentParser(prog="bitfreeze", description="Versioned, deduplicating backups in a RAR archive")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sp = ap.add_subparsers(dest="cmd", required=True)

    p_commit = sp.add_parser("commit", parents=[common], help="Record a new commit of a folder")
    p_commit.add_argument("folder")
    p_commit.add_argument("archive", type=Path)
    p_commit.add_argument("comment", nargs="?", default=DEFAULT_COMMENT)
    p_commit.add_argument("-L", "--follow-symlinks", action="store_true",
                          help="Also record the targets of links that stay inside the folder")

    p_list = sp.add_parser("list", parents=[common], help="List commits, most recent first")
    p_list.add_argument("archive", type=Path)

    p_checkout = sp.add_parser("checkout", parents=[common], help="Restore a commit into a folder")
    p_checkout.add_argument("commit_id", type=int)
    p_checkout.add_argument("archive", type=Path)
    p_checkout.add_argument("dest")
    p_checkout.add_argument("-D", "--force-directory", action="store_true",
                            help="Create directories instead of symlinks")
    p_checkout.add_argument("--sudo", action="store_true",
                            help="Ask for elevation up front to restore ownership")

    p_diff = sp.add_parser("diff", parents=[common], help="Compare the files of two commits")
    p_diff.add_argument("commit1", type=int)
    p_diff.add_argument("commit2", type=int)
    p_diff.add_argument("archive", type=Path)

    p_status = sp.add_parser("status", parents=[common], help="Compare a folder with the latest commit")
    p_status.add_argument("folder")
    p_status.add_argument("archive", type=Path)
    p_status.add_argument("-m", "--include-meta", action="store_true",
                          help="Also report permission/owner/group changes")
    p_status.add_argument("-c", "--checksum", action="store_true",
                          help="Flag content changes that kept the same mtime")
    p_status.add_argument("-L", "--follow-symlinks", action="store_true")

    p_repair = sp.add_parser("repair", parents=[common], help="Repair a damaged archive")
    p_repair.add_argument("archive", type=Path)
    return ap


COMMANDS = {
    "commit": cmd_commit,
    "list": cmd_list,
    "checkout": cmd_checkout,
    "diff": cmd_diff,
    "status": cmd_status,
    "repair": cmd_repair,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)
    try:
        settings = load_settings()
    except ValidationError as e:
        print(f"ERROR: invalid BITFREEZE_* setting:\n{e}", file=sys.stderr)
        return EXIT_FATAL
    if args.low_priority:
        lower_priority()
    try:
        return COMMANDS[args.cmd](args, settings)
    except PartialFailure as e:
        print(f"\nWARNING: {e}", file=sys.stderr)
        return EXIT_PARTIAL
    except BitfreezeError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FATAL
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_FATAL


if __name__ == "__main__":
    sys.exit(main())
