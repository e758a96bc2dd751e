"""Enumerate files currently open for writing beneath a directory."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, List, Set

import psutil

LOGGER = logging.getLogger("vaultsnap.storage.openfiles")

_WRITE_MODES = {"w", "a", "r+", "a+", "w+"}


def _is_writer(mode: str | None, flags: int | None) -> bool:
    if mode:
        return mode in _WRITE_MODES
    if flags is None:
        return False
    return bool(flags & (os.O_WRONLY | os.O_RDWR))


def _within(path: Path, root: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def list_open_writers(root: Path, *, processes: Iterable[psutil.Process] | None = None) -> List[Path]:
    """Return the files under *root* that some process holds open for writing."""

    base = Path(root).resolve()
    found: Set[Path] = set()
    iterator = processes if processes is not None else psutil.process_iter()
    for proc in iterator:
        try:
            entries = proc.open_files()
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        for entry in entries:
            mode = getattr(entry, "mode", None)
            flags = getattr(entry, "flags", None)
            if not _is_writer(mode, flags):
                continue
            candidate = Path(entry.path)
            if _within(candidate, base):
                found.add(candidate)
    if found:
        LOGGER.debug("open writers under %s: %d", base, len(found))
    return sorted(found)


__all__ = ["list_open_writers"]
