"""Abstract copy-on-write storage contract consumed by the snapshot engine."""
from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import List

from .errors import StorageError
from .openfiles import list_open_writers

LOGGER = logging.getLogger("vaultsnap.storage")


class StorageBackend(ABC):
    """Point-in-time copies, immutability flags and space accounting.

    Implementations must make :meth:`delete` work on sealed (read-only)
    objects; callers never clear the flag themselves.
    """

    name = "abstract"

    @abstractmethod
    def snapshot(self, src: Path, dst: Path, snapshot_id: str) -> None:
        """Create an independent point-in-time copy of *src* at *dst*.

        Raises :class:`SnapshotExistsError` when *dst* already exists.
        """

    @abstractmethod
    def set_read_only(self, path: Path, read_only: bool) -> None:
        """Toggle immutability of a snapshot object."""

    @abstractmethod
    def is_read_only(self, path: Path) -> bool:
        ...

    @abstractmethod
    def usage_bytes(self, path: Path) -> int:
        """Space really consumed by *path*, counting shared extents once."""

    @abstractmethod
    def delete(self, path: Path) -> None:
        """Irreversibly remove a snapshot object, sealed or not."""

    @abstractmethod
    def probe(self) -> None:
        """Raise :class:`BackendUnavailableError` if the backend is unusable."""

    # ------------------------------------------------------------------
    def list_open_writers(self, path: Path) -> List[Path]:
        if not Path(path).exists():
            return []
        return list_open_writers(Path(path))

    def rename(self, src: Path, dst: Path) -> None:
        if Path(dst).exists():
            raise StorageError(f"Refusing to overwrite existing object {dst}")
        os.rename(src, dst)

    def flush(self) -> None:
        os.sync()

    def is_empty(self, path: Path) -> bool:
        target = Path(path)
        if not target.is_dir():
            return True
        with os.scandir(target) as entries:
            for _ in entries:
                return False
        return True


__all__ = ["StorageBackend"]
