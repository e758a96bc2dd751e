"""Backend selection from settings."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .base import StorageBackend
from .btrfs import BtrfsBackend
from .local import LocalCopyBackend

LOGGER = logging.getLogger("vaultsnap.storage")


def create_backend(settings: Optional[Dict[str, Any]] = None) -> StorageBackend:
    """Build the configured backend (``storage.backend``: btrfs or local)."""

    section = (settings or {}).get("storage")
    section = section if isinstance(section, dict) else {}
    kind = str(section.get("backend") or "btrfs").strip().lower()
    try:
        timeout = float(section.get("command_timeout_s", 120))
    except (TypeError, ValueError):
        timeout = 120.0
    if kind == "local":
        return LocalCopyBackend()
    if kind != "btrfs":
        LOGGER.warning("unknown storage backend %r, falling back to btrfs", kind)
    return BtrfsBackend(timeout_s=timeout)


__all__ = ["create_backend"]
