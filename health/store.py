from __future__ import annotations

import json
from pathlib import Path
from typing import List

from core import db as core_db
from core.paths import get_state_db_path, resolve_working_dir

from .checks import HealthItem, HealthReport, HealthSeverity

_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS health_reports (
  ts REAL PRIMARY KEY,
  degraded INTEGER NOT NULL,
  major INTEGER NOT NULL,
  minor INTEGER NOT NULL,
  items_json TEXT NOT NULL
);
"""

KEEP_REPORTS = 500


class HealthStore:
    """Keep a bounded history of health reports next to the snapshot state."""

    def __init__(self, working_dir: Path | None = None) -> None:
        self._working_dir = working_dir or resolve_working_dir()
        self._db_path = get_state_db_path(self._working_dir)
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        core_db.ensure_schema(self._db_path, _TABLE_SQL)

    def save(self, report: HealthReport) -> None:
        summary = report.summary
        items_json = json.dumps([_item_to_json(item) for item in report.items])
        conn = core_db.connect(self._db_path)
        try:
            with core_db.transaction(conn):
                conn.execute(
                    "REPLACE INTO health_reports (ts, degraded, major, minor, items_json) VALUES (?, ?, ?, ?, ?)",
                    (float(report.ts), int(report.degraded), summary.major, summary.minor, items_json),
                )
                conn.execute(
                    "DELETE FROM health_reports WHERE ts NOT IN (SELECT ts FROM health_reports ORDER BY ts DESC LIMIT ?)",
                    (KEEP_REPORTS,),
                )
        finally:
            conn.close()

    def recent(self, limit: int = 10) -> List[HealthReport]:
        conn = core_db.connect(self._db_path, read_only=True)
        try:
            rows = conn.execute(
                "SELECT ts, items_json FROM health_reports ORDER BY ts DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        finally:
            conn.close()
        return [
            HealthReport(ts=float(ts), items=[_item_from_json(payload) for payload in json.loads(items_json)])
            for ts, items_json in rows
        ]

    def latest(self) -> HealthReport | None:
        reports = self.recent(1)
        return reports[0] if reports else None


def _item_to_json(item: HealthItem) -> dict:
    return {
        "severity": item.severity.value,
        "code": item.code,
        "where": item.where,
        "hint": item.hint,
        "details": item.details,
    }


def _item_from_json(payload: dict) -> HealthItem:
    return HealthItem(
        severity=HealthSeverity(payload.get("severity", "MINOR")),
        code=payload.get("code", "UNKNOWN"),
        where=payload.get("where", ""),
        hint=payload.get("hint", ""),
        details=payload.get("details"),
    )
