"""Error hierarchy for storage backend operations."""
from __future__ import annotations


class StorageError(RuntimeError):
    """Base exception for storage backend failures."""


class SnapshotExistsError(StorageError):
    """Raised when a snapshot destination already exists."""


class BackendUnavailableError(StorageError):
    """Raised when the backend tooling or filesystem cannot be reached at all."""


__all__ = ["BackendUnavailableError", "SnapshotExistsError", "StorageError"]
