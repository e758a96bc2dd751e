"""Structured logging helpers for snapshot and retention decisions."""
from __future__ import annotations

import json
import logging
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List

from core.paths import get_logs_dir

from .types import AdmissionDecision, AdmissionResult

LOGGER = logging.getLogger("vaultsnap.snapshots")

_ADMISSION_LEVELS = {
    AdmissionDecision.ALLOW: logging.INFO,
    AdmissionDecision.WARN: logging.WARNING,
    AdmissionDecision.DENY: logging.WARNING,
}


class SnapshotLogger:
    """Append one JSON record per engine decision to ``logs/snapshots.jsonl``."""

    def __init__(self, working_dir: Path) -> None:
        self._working_dir = Path(working_dir)
        self._log_path = get_logs_dir(self._working_dir) / "snapshots.jsonl"
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()

    @property
    def path(self) -> Path:
        return self._log_path

    # ------------------------------------------------------------------
    def _write(self, payload: Dict[str, Any], *, level: int) -> None:
        payload.setdefault("ts", datetime.now(timezone.utc).isoformat())
        line = json.dumps(payload, sort_keys=True, default=str)
        with self._lock:
            with self._log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        LOGGER.log(level, "%s", line)

    def event(self, *, event: str, account: str | None, ok: bool, **extra: Any) -> None:
        payload: Dict[str, Any] = {
            "event": event,
            "account": account,
            "ok": bool(ok),
        }
        if extra:
            payload.update(extra)
        level = logging.INFO if ok else logging.ERROR
        self._write(payload, level=level)

    def info(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": True}, level=logging.INFO)

    def warning(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": False}, level=logging.WARNING)

    def error(self, event: str, **extra: Any) -> None:
        self._write({"event": event, **extra, "ok": False}, level=logging.ERROR)

    # ------------------------------------------------------------------
    def admission(self, account: str, result: AdmissionResult) -> None:
        ratio = result.ratio
        self._write(
            {
                "event": "admission",
                "account": account,
                "decision": result.decision.value,
                "usage_bytes": result.usage_bytes,
                "limit_bytes": result.limit_bytes,
                "ratio": round(ratio, 6) if ratio is not None else None,
                "reason": result.reason,
                "ok": result.admitted,
            },
            level=_ADMISSION_LEVELS[result.decision],
        )

    def retention_delete(self, account: str, snapshot_id: str, *, reason: str, ok: bool, err: str | None = None) -> None:
        payload: Dict[str, Any] = {
            "event": "retention_delete",
            "account": account,
            "snapshot": snapshot_id,
            "reason": reason,
            "ok": ok,
        }
        if err:
            payload["err"] = err
        self._write(payload, level=logging.INFO if ok else logging.ERROR)

    # ------------------------------------------------------------------
    def tail(self, limit: int = 100) -> List[Dict[str, Any]]:
        if limit <= 0 or not self._log_path.exists():
            return []
        window: deque = deque(maxlen=int(limit))
        with self._lock:
            with self._log_path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    line = line.strip()
                    if line:
                        window.append(line)
        records: List[Dict[str, Any]] = []
        for line in window:
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return records


__all__ = ["SnapshotLogger"]
