"""Detect image files that another process is holding open."""

import os
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import IO, NamedTuple

import psutil
from loguru import logger

if os.name == "nt":
    import msvcrt
else:
    import fcntl

log = logger.bind(component="file_lock")

# Viewers and editors that keep a file open for reading without an exclusive lock.
IMAGE_VIEWER_PROCESSES = frozenset(
    {
        "photos",
        "microsoft.photos",
        "photosapp",
        "photoviewer",
        "dllhost",
        "mspaint",
        "paintdotnet",
        "i_view32",
        "i_view64",
        "xnview",
        "xnviewmp",
        "nomacs",
        "imageglass",
        "photoshop",
        "lightroom",
        "gimp",
        "gimp-2.10",
        "krita",
        "darktable",
        "rawtherapee",
        "digikam",
        "shotwell",
        "eog",
        "eom",
        "gwenview",
        "feh",
        "sxiv",
        "nsxiv",
        "ristretto",
        "gthumb",
        "preview",
    },
)


class LockStatus(NamedTuple):
    is_locked: bool
    reason: str


UNLOCKED = LockStatus(is_locked=False, reason="")


def _normalize_process_name(name: str) -> str:
    """
    Lowercase a process name and drop a Windows ``.exe`` suffix.

    Examples:
        >>> _normalize_process_name("Photoshop.EXE")
        'photoshop'

    """
    lowered = name.strip().lower()
    return lowered.removesuffix(".exe")


def _probe_exclusive(handle: IO[bytes]) -> None:
    """Take and immediately release a non-blocking exclusive lock on an open file."""
    if os.name == "nt":
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)


class FileLockChecker:
    """
    Decide whether a file is safe to move.

    Two checks run in order: a momentary exclusive-write probe, then a scan of running image
    viewers whose command line or executable path mentions the file or its folder.

    Args:
        viewer_names: Process names (without ``.exe``) treated as image viewers
        process_iter: Replacement for ``psutil.process_iter`` (tests)

    """

    def __init__(
        self,
        viewer_names: Iterable[str] = IMAGE_VIEWER_PROCESSES,
        *,
        process_iter: Callable[..., Iterable[psutil.Process]] = psutil.process_iter,
    ) -> None:
        self.viewer_names = frozenset(_normalize_process_name(name) for name in viewer_names)
        self._process_iter = process_iter

    def check_lock(self, path: Path) -> LockStatus:
        if not path.exists():
            return LockStatus(is_locked=True, reason="File does not exist")

        status = self._probe(path)
        if status.is_locked:
            log.info("file_locked", file=path.name, reason=status.reason)
            return status

        status = self._scan_viewers(path)
        if status.is_locked:
            log.info("file_open_in_viewer", file=path.name, reason=status.reason)
        return status

    def _probe(self, path: Path) -> LockStatus:
        try:
            with path.open("r+b") as handle:
                _probe_exclusive(handle)
        except PermissionError as exc:
            return LockStatus(is_locked=True, reason=f"Access Denied: {exc}")
        except BlockingIOError as exc:
            return LockStatus(is_locked=True, reason=f"Locked by another process: {exc}")
        except OSError as exc:
            return LockStatus(is_locked=True, reason=f"Unknown error: {exc}")
        return UNLOCKED

    def _scan_viewers(self, path: Path) -> LockStatus:
        needles = [name.casefold() for name in (path.name, path.parent.name) if name]
        for proc in self._process_iter(["name", "exe", "cmdline"]):
            try:
                info = proc.info
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
            name = info.get("name") or ""
            if _normalize_process_name(name) not in self.viewer_names:
                continue
            haystack = " ".join([info.get("exe") or "", *(info.get("cmdline") or [])]).casefold()
            if any(needle in haystack for needle in needles):
                return LockStatus(is_locked=True, reason=f"Open in {name}")
        return UNLOCKED
