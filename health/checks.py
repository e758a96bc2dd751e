from __future__ import annotations

import json
import os
import shutil
import sqlite3
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from core import db as core_db
from core.paths import get_logs_dir, get_state_db_path, resolve_working_dir
from core.settings import load_settings
from snapshots.state import Marker, owner_process_alive
from storage import StorageBackend, create_backend
from storage.errors import BackendUnavailableError, StorageError

LOG_SAMPLE_COUNT = 200
_SNAPSHOT_LOG_FILE = "snapshots.jsonl"


class HealthSeverity(str, Enum):
    MAJOR = "MAJOR"
    MINOR = "MINOR"


@dataclass(slots=True)
class HealthItem:
    severity: HealthSeverity
    code: str
    where: str
    hint: str
    details: Optional[str] = None


@dataclass(slots=True)
class HealthSummary:
    major: int = 0
    minor: int = 0

    @classmethod
    def from_items(cls, items: Sequence[HealthItem]) -> "HealthSummary":
        major = sum(1 for item in items if item.severity is HealthSeverity.MAJOR)
        minor = sum(1 for item in items if item.severity is HealthSeverity.MINOR)
        return cls(major=major, minor=minor)


@dataclass(slots=True)
class HealthReport:
    ts: float
    items: List[HealthItem]

    @property
    def summary(self) -> HealthSummary:
        return HealthSummary.from_items(self.items)

    @property
    def degraded(self) -> bool:
        return self.summary.major > 0


@dataclass(slots=True)
class HealthContext:
    working_dir: Path
    settings: Dict[str, Any]
    backend: Optional[StorageBackend] = None
    degraded_reason: Optional[str] = None
    events_error: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


CheckFunc = Callable[[HealthContext], Iterator[HealthItem]]


def _iter_jsonl(path: Path) -> Iterator[dict]:
    if not path.exists():
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    continue
    except FileNotFoundError:
        return


def _section(settings: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = settings.get(key)
    return value if isinstance(value, dict) else {}


def _check_backend(ctx: HealthContext) -> Iterator[HealthItem]:
    items: list[HealthItem] = []
    backend = ctx.backend or create_backend(ctx.settings)
    try:
        backend.probe()
    except BackendUnavailableError as exc:
        items.append(
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="BACKEND_UNAVAILABLE",
                where=f"storage/{backend.name}",
                hint="Install btrfs-progs or switch storage.backend to local",
                details=str(exc),
            )
        )
        return iter(items)
    except StorageError as exc:
        items.append(
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="BACKEND_PROBE_FAIL",
                where=f"storage/{backend.name}",
                hint="Check that home_root lives on the configured filesystem",
                details=str(exc),
            )
        )
    if ctx.degraded_reason:
        items.append(
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="BACKEND_UNAVAILABLE",
                where="snapshots/orchestrator.py",
                hint="Snapshots are failing; inspect logs/snapshots.jsonl",
                details=ctx.degraded_reason,
            )
        )
    return iter(items)


def _check_event_feed(ctx: HealthContext) -> Iterator[HealthItem]:
    if not ctx.events_error:
        return iter(())
    return iter(
        [
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="EVENT_FEED_DOWN",
                where="snapshots/events.py",
                hint="Write events are not arriving; restart the daemon once inotifywait runs again",
                details=ctx.events_error,
            )
        ]
    )


def _check_home_root(ctx: HealthContext) -> Iterator[HealthItem]:
    home_root = Path(str(_section(ctx.settings, "storage").get("home_root") or "/home"))
    if home_root.is_dir():
        return iter(())
    return iter(
        [
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="HOME_ROOT_MISSING",
                where="core/settings.py",
                hint="Set storage.home_root to the directory holding account homes",
                details=str(home_root),
            )
        ]
    )


def _check_tooling(ctx: HealthContext) -> Iterator[HealthItem]:
    missing: list[HealthItem] = []
    storage = _section(ctx.settings, "storage")
    events = _section(ctx.settings, "events")
    if str(storage.get("backend") or "btrfs").lower() == "btrfs" and shutil.which("btrfs") is None:
        missing.append(
            HealthItem(
                severity=HealthSeverity.MAJOR,
                code="TOOL_BTRFS_MISSING",
                where="storage/btrfs.py",
                hint="Install btrfs-progs",
            )
        )
    if events.get("enable", True):
        binary = str(events.get("inotifywait_path") or "inotifywait")
        if not Path(binary).exists() and shutil.which(binary) is None:
            missing.append(
                HealthItem(
                    severity=HealthSeverity.MAJOR,
                    code="TOOL_INOTIFYWAIT_MISSING",
                    where="snapshots/events.py",
                    hint="Install inotify-tools or set events.inotifywait_path",
                )
            )
    return iter(missing)


def _check_state_db(ctx: HealthContext) -> Iterator[HealthItem]:
    db_path = get_state_db_path(ctx.working_dir)
    if not db_path.exists():
        return iter(())
    try:
        conn = core_db.connect(db_path, read_only=True, timeout=2.0)
    except sqlite3.Error as exc:  # pragma: no cover
        return iter(
            [
                HealthItem(
                    severity=HealthSeverity.MAJOR,
                    code="DB_OPEN_FAIL",
                    where="core/db.py",
                    hint="Ensure data/state.db is accessible",
                    details=str(exc),
                )
            ]
        )
    items: list[HealthItem] = []
    try:
        journal_mode = conn.execute("PRAGMA journal_mode").fetchone()
        if not journal_mode or str(journal_mode[0]).lower() != "wal":
            items.append(
                HealthItem(
                    severity=HealthSeverity.MINOR,
                    code="DB_WAL_OFF",
                    where="core/db.py",
                    hint="Enable WAL & busy_timeout",
                )
            )
        try:
            rows = conn.execute("SELECT account, pid, started_utc FROM snapshot_markers").fetchall()
        except sqlite3.Error:
            rows = []
        for account, pid, started_utc in rows:
            marker = Marker(account=account, owner="", pid=int(pid), started_utc=str(started_utc))
            # markers of this process are judged by its own orchestrator
            if marker.pid == os.getpid() or owner_process_alive(marker):
                continue
            items.append(
                HealthItem(
                    severity=HealthSeverity.MINOR,
                    code="STALE_MARKER",
                    where=f"account:{account}",
                    hint="Restart the daemon to recover the orphaned snapshot marker",
                    details=f"pid {pid} since {started_utc}",
                )
            )
        try:
            denied = conn.execute(
                "SELECT account, updated_utc FROM account_outcomes WHERE last_reason='quota_denied'"
            ).fetchall()
        except sqlite3.Error:
            denied = []
        for account, updated_utc in denied:
            items.append(
                HealthItem(
                    severity=HealthSeverity.MINOR,
                    code="QUOTA_DENIED",
                    where=f"account:{account}",
                    hint="Raise the quota or free space; snapshots are being skipped",
                    details=f"since {updated_utc}",
                )
            )
    finally:
        conn.close()
    return iter(items)


def _check_snapshot_failures(ctx: HealthContext) -> Iterator[HealthItem]:
    entries = list(_iter_jsonl(get_logs_dir(ctx.working_dir) / _SNAPSHOT_LOG_FILE))
    latest: Dict[str, dict] = {}
    for entry in entries[-LOG_SAMPLE_COUNT:]:
        if entry.get("event") in {"snapshot_created", "snapshot_failed"} and entry.get("account"):
            latest[str(entry["account"])] = entry
    offenders: list[HealthItem] = []
    for account, entry in sorted(latest.items()):
        if entry.get("event") != "snapshot_failed":
            continue
        offenders.append(
            HealthItem(
                severity=HealthSeverity.MINOR,
                code="SNAPSHOT_FAILED",
                where=f"account:{account}",
                hint="Last snapshot attempt failed; inspect logs/snapshots.jsonl",
                details=str(entry.get("err_msg") or entry.get("err") or "")[:120] or None,
            )
        )
    return iter(offenders)


def _check_settings_schema(ctx: HealthContext) -> Iterator[HealthItem]:
    from core.settings_schema import SETTINGS_VALIDATOR

    unknown_keys = SETTINGS_VALIDATOR.unknown_keys(ctx.settings)
    items: list[HealthItem] = []
    if unknown_keys:
        items.append(
            HealthItem(
                severity=HealthSeverity.MINOR,
                code="SETTINGS_UNKNOWN",
                where="core/settings.py",
                hint="Remove unknown keys or update schema",
                details=", ".join(sorted(unknown_keys))[:120],
            )
        )
    return iter(items)


CHECKS: Sequence[CheckFunc] = (
    _check_backend,
    _check_event_feed,
    _check_home_root,
    _check_tooling,
    _check_state_db,
    _check_snapshot_failures,
    _check_settings_schema,
)


def run_checks(
    working_dir: Optional[Path] = None,
    *,
    settings: Optional[Dict[str, Any]] = None,
    backend: Optional[StorageBackend] = None,
    degraded_reason: Optional[str] = None,
    events_error: Optional[str] = None,
) -> HealthReport:
    base = working_dir or resolve_working_dir()
    ctx = HealthContext(
        working_dir=base,
        settings=settings if settings is not None else load_settings(base),
        backend=backend,
        degraded_reason=degraded_reason,
        events_error=events_error,
    )
    items: list[HealthItem] = []
    for check in CHECKS:
        try:
            items.extend(list(check(ctx)))
        except Exception as exc:  # pragma: no cover
            items.append(
                HealthItem(
                    severity=HealthSeverity.MAJOR,
                    code="CHECK_FAIL",
                    where=getattr(check, "__name__", "health.check"),
                    hint="Check raised unexpectedly; inspect logs",
                    details=str(exc),
                )
            )
    return HealthReport(ts=time.time(), items=items)
