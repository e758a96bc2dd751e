"""Btrfs subvolume backend driven through the ``btrfs`` command line tool."""
from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import List

from .base import StorageBackend
from .errors import BackendUnavailableError, SnapshotExistsError, StorageError

LOGGER = logging.getLogger("vaultsnap.storage.btrfs")


def btrfs_available(binary: str = "btrfs") -> bool:
    """Return True when the btrfs tool is available on PATH."""

    return shutil.which(binary) is not None


def parse_du_output(output: str) -> int:
    """Return Exclusive + Set shared from ``btrfs filesystem du -s --raw``.

    The summary line looks like ``Total Exclusive Set-shared Filename``;
    ``-`` stands for zero.
    """

    for line in output.strip().splitlines():
        parts = line.split()
        if len(parts) < 4 or not parts[0].isdigit():
            continue
        try:
            exclusive = int(parts[1]) if parts[1] != "-" else 0
            shared = int(parts[2]) if parts[2] != "-" else 0
        except ValueError:
            continue
        return exclusive + shared
    raise StorageError(f"Unexpected btrfs du output: {output[:200]!r}")


class BtrfsBackend(StorageBackend):
    """Snapshots are btrfs subvolume snapshots; usage is extent-aware."""

    name = "btrfs"

    def __init__(self, *, binary: str = "btrfs", timeout_s: float = 120.0) -> None:
        self._binary = binary
        self._timeout = float(timeout_s)

    # ------------------------------------------------------------------
    def _run(self, args: List[str], *, check: bool = True) -> subprocess.CompletedProcess:
        command = [self._binary, *args]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except FileNotFoundError as exc:
            raise BackendUnavailableError(f"{self._binary} not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise StorageError(f"{' '.join(command)} timed out after {self._timeout:.0f}s") from exc
        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()
            raise StorageError(f"{' '.join(command)} failed ({result.returncode}): {detail}")
        return result

    # ------------------------------------------------------------------
    def probe(self) -> None:
        if not btrfs_available(self._binary):
            raise BackendUnavailableError(f"{self._binary} is not installed")
        self._run(["--version"])

    def snapshot(self, src: Path, dst: Path, snapshot_id: str) -> None:
        if Path(dst).exists():
            raise SnapshotExistsError(f"Snapshot {snapshot_id} already exists at {dst}")
        Path(dst).parent.mkdir(parents=True, exist_ok=True)
        self._run(["subvolume", "snapshot", str(src), str(dst)])
        LOGGER.debug("btrfs snapshot %s -> %s", src, dst)

    def set_read_only(self, path: Path, read_only: bool) -> None:
        self._run(["property", "set", "-ts", str(path), "ro", "true" if read_only else "false"])

    def is_read_only(self, path: Path) -> bool:
        result = self._run(["property", "get", "-ts", str(path), "ro"])
        return result.stdout.strip().lower() == "ro=true"

    def usage_bytes(self, path: Path) -> int:
        if not Path(path).exists():
            return 0
        result = self._run(["filesystem", "du", "-s", "--raw", str(path)])
        return parse_du_output(result.stdout)

    def delete(self, path: Path) -> None:
        target = Path(path)
        if not target.exists():
            return
        if not self._is_subvolume(target):
            shutil.rmtree(target)
            return
        self.set_read_only(target, False)
        self._run(["subvolume", "delete", str(target)])

    def _is_subvolume(self, path: Path) -> bool:
        return self._run(["subvolume", "show", str(path)], check=False).returncode == 0


__all__ = ["BtrfsBackend", "btrfs_available", "parse_du_output"]
