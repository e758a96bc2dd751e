"""Plain directory-copy backend for hosts without a copy-on-write filesystem."""
from __future__ import annotations

import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Set, Tuple

from .base import StorageBackend
from .errors import BackendUnavailableError, SnapshotExistsError

LOGGER = logging.getLogger("vaultsnap.storage.local")

_WRITE_BITS = stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH


def _walk(root: Path):
    yield root
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in dirnames:
            yield base / name
        for name in filenames:
            yield base / name


class LocalCopyBackend(StorageBackend):
    """Full copies with write bits stripped for immutability.

    Usage is the allocated size of each distinct inode, so hard links are
    counted once.
    """

    name = "local"

    def probe(self) -> None:
        if not hasattr(os, "sync"):  # pragma: no cover - non-posix platforms
            raise BackendUnavailableError("os.sync unavailable on this platform")

    def snapshot(self, src: Path, dst: Path, snapshot_id: str) -> None:
        target = Path(dst)
        if target.exists():
            raise SnapshotExistsError(f"Snapshot {snapshot_id} already exists at {target}")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(src, target, symlinks=True)
        LOGGER.debug("copied %s -> %s", src, target)

    def set_read_only(self, path: Path, read_only: bool) -> None:
        root = Path(path)
        entries = list(_walk(root))
        if not read_only:
            # directories must become writable before their children can be touched
            entries.sort(key=lambda item: len(item.parts))
        else:
            entries.sort(key=lambda item: len(item.parts), reverse=True)
        for entry in entries:
            if entry.is_symlink():
                continue
            mode = entry.stat().st_mode
            if read_only:
                os.chmod(entry, mode & ~_WRITE_BITS)
            else:
                os.chmod(entry, mode | stat.S_IWUSR)

    def is_read_only(self, path: Path) -> bool:
        return not (Path(path).stat().st_mode & _WRITE_BITS)

    def usage_bytes(self, path: Path) -> int:
        root = Path(path)
        if not root.exists():
            return 0
        seen: Set[Tuple[int, int]] = set()
        total = 0
        for entry in _walk(root):
            try:
                info = entry.lstat()
            except FileNotFoundError:
                continue
            key = (info.st_dev, info.st_ino)
            if key in seen:
                continue
            seen.add(key)
            blocks = getattr(info, "st_blocks", None)
            total += int(blocks) * 512 if blocks is not None else int(info.st_size)
        return total

    def delete(self, path: Path) -> None:
        target = Path(path)
        if not target.exists():
            return
        self.set_read_only(target, False)
        shutil.rmtree(target)


__all__ = ["LocalCopyBackend"]
