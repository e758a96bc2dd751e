"""Error hierarchy for snapshot orchestration."""
from __future__ import annotations


class SnapshotError(RuntimeError):
    """Base exception for snapshot engine failures."""


class AccountNotFoundError(SnapshotError):
    """Raised when an account name cannot be resolved."""


class ConfigurationError(SnapshotError):
    """Raised when a configuration value cannot be interpreted."""


__all__ = ["AccountNotFoundError", "ConfigurationError", "SnapshotError"]
