"""Persisted in-progress markers and per-account outcome records."""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from core import db as core_db

from .types import SnapshotOutcome

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS snapshot_markers (
    account TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    pid INTEGER NOT NULL,
    started_utc TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS account_outcomes (
    account TEXT PRIMARY KEY,
    last_snapshot_id TEXT,
    first_snapshot_utc TEXT,
    last_outcome TEXT,
    last_reason TEXT,
    updated_utc TEXT NOT NULL
);
"""


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(slots=True, frozen=True)
class Marker:
    account: str
    owner: str
    pid: int
    started_utc: str


@dataclass(slots=True, frozen=True)
class MarkerAcquisition:
    acquired: bool
    holder: Optional[Marker] = None
    stale: Optional[Marker] = None


LivenessProbe = Callable[[Marker], bool]


def owner_process_alive(marker: Marker) -> bool:
    """True when the marker's pid still runs the process that wrote it."""

    try:
        created = psutil.Process(marker.pid).create_time()
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True
    try:
        started = datetime.fromisoformat(marker.started_utc).timestamp()
    except ValueError:
        return True
    # a process born after the marker was written is a recycled pid
    return created <= started + 1.0


class SnapshotStateStore:
    """SQLite-backed state shared by every watcher of this host.

    The in-progress marker names its owner (pid plus watcher token) so a
    marker left behind by a crash can be told apart from a running watcher.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        return core_db.connect(self._db_path)

    def _ensure_schema(self) -> None:
        core_db.ensure_schema(self._db_path, _SCHEMA_SQL)

    @staticmethod
    def _row_to_marker(row: sqlite3.Row) -> Marker:
        return Marker(
            account=row["account"],
            owner=row["owner"],
            pid=int(row["pid"]),
            started_utc=row["started_utc"],
        )

    # ------------------------------------------------------------------
    def acquire(self, account: str, owner: str, pid: int, *, is_alive: LivenessProbe) -> MarkerAcquisition:
        """Take the account's marker unless a live owner holds it.

        A marker whose owner fails *is_alive* is replaced and reported as
        ``stale``.
        """

        conn = self._connect()
        try:
            with core_db.transaction(conn):
                row = conn.execute(
                    "SELECT account, owner, pid, started_utc FROM snapshot_markers WHERE account=?",
                    (account,),
                ).fetchone()
                stale: Optional[Marker] = None
                if row is not None:
                    current = self._row_to_marker(row)
                    if is_alive(current):
                        return MarkerAcquisition(acquired=False, holder=current)
                    stale = current
                    conn.execute("DELETE FROM snapshot_markers WHERE account=?", (account,))
                marker = Marker(account=account, owner=owner, pid=int(pid), started_utc=_utcnow())
                conn.execute(
                    "INSERT INTO snapshot_markers (account, owner, pid, started_utc) VALUES (?, ?, ?, ?)",
                    (marker.account, marker.owner, marker.pid, marker.started_utc),
                )
                return MarkerAcquisition(acquired=True, holder=marker, stale=stale)
        finally:
            conn.close()

    def release(self, account: str, owner: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "DELETE FROM snapshot_markers WHERE account=? AND owner=?",
                (account, owner),
            )
            return cursor.rowcount > 0
        finally:
            conn.close()

    def get_marker(self, account: str) -> Optional[Marker]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT account, owner, pid, started_utc FROM snapshot_markers WHERE account=?",
                (account,),
            ).fetchone()
            return self._row_to_marker(row) if row else None
        finally:
            conn.close()

    def markers(self) -> List[Marker]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT account, owner, pid, started_utc FROM snapshot_markers ORDER BY account"
            ).fetchall()
            return [self._row_to_marker(row) for row in rows]
        finally:
            conn.close()

    def discard_stale(self, *, is_alive: LivenessProbe) -> List[Marker]:
        removed: List[Marker] = []
        for marker in self.markers():
            if is_alive(marker):
                continue
            if self.release(marker.account, marker.owner):
                removed.append(marker)
        return removed

    # ------------------------------------------------------------------
    def record_outcome(self, outcome: SnapshotOutcome) -> None:
        now = _utcnow()
        conn = self._connect()
        try:
            with core_db.transaction(conn):
                row = conn.execute(
                    "SELECT last_snapshot_id, first_snapshot_utc FROM account_outcomes WHERE account=?",
                    (outcome.account,),
                ).fetchone()
                last_id = row["last_snapshot_id"] if row else None
                first_utc = row["first_snapshot_utc"] if row else None
                if outcome.created and outcome.snapshot_id:
                    last_id = outcome.snapshot_id
                    first_utc = first_utc or now
                conn.execute(
                    """
                    INSERT INTO account_outcomes (account, last_snapshot_id, first_snapshot_utc, last_outcome, last_reason, updated_utc)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(account) DO UPDATE SET
                        last_snapshot_id=excluded.last_snapshot_id,
                        first_snapshot_utc=excluded.first_snapshot_utc,
                        last_outcome=excluded.last_outcome,
                        last_reason=excluded.last_reason,
                        updated_utc=excluded.updated_utc
                    """,
                    (outcome.account, last_id, first_utc, outcome.status, outcome.reason, now),
                )
        finally:
            conn.close()

    def outcome(self, account: str) -> Optional[Dict[str, Any]]:
        conn = self._connect()
        try:
            row = conn.execute(
                """
                SELECT last_snapshot_id, first_snapshot_utc, last_outcome, last_reason, updated_utc
                FROM account_outcomes WHERE account=?
                """,
                (account,),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def last_snapshot_id(self, account: str) -> Optional[str]:
        record = self.outcome(account)
        return record.get("last_snapshot_id") if record else None


__all__ = ["LivenessProbe", "Marker", "MarkerAcquisition", "SnapshotStateStore", "owner_process_alive"]
