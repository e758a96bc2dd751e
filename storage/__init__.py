"""Copy-on-write storage backends used by the snapshot engine."""
from __future__ import annotations

from .base import StorageBackend
from .btrfs import BtrfsBackend
from .errors import BackendUnavailableError, SnapshotExistsError, StorageError
from .factory import create_backend
from .local import LocalCopyBackend

__all__ = [
    "BackendUnavailableError",
    "BtrfsBackend",
    "LocalCopyBackend",
    "SnapshotExistsError",
    "StorageBackend",
    "StorageError",
    "create_backend",
]
