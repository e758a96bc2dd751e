"""Common dataclasses shared across snapshot modules."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

SNAPSHOT_ID_FORMAT = "%Y-%m-%d_%H-%M-%S"
STAGING_PREFIX = ".inflight-"


def format_snapshot_id(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime(SNAPSHOT_ID_FORMAT)


def parse_snapshot_id(snapshot_id: str) -> Optional[datetime]:
    try:
        return datetime.strptime(snapshot_id, SNAPSHOT_ID_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class RetentionMode(str, Enum):
    AGE = "age"
    GFS = "gfs"


@dataclass(slots=True, frozen=True)
class RetentionPolicy:
    """Either age based (``max_age_days``) or generational (daily/weekly/monthly)."""

    mode: RetentionMode = RetentionMode.GFS
    max_age_days: int = 30
    keep_daily: int = 7
    keep_weekly: int = 4
    keep_monthly: int = 6

    @classmethod
    def age(cls, max_age_days: int) -> "RetentionPolicy":
        return cls(mode=RetentionMode.AGE, max_age_days=max_age_days)

    @classmethod
    def gfs(cls, keep_daily: int, keep_weekly: int, keep_monthly: int) -> "RetentionPolicy":
        return cls(
            mode=RetentionMode.GFS,
            keep_daily=keep_daily,
            keep_weekly=keep_weekly,
            keep_monthly=keep_monthly,
        )

    def as_dict(self) -> dict:
        if self.mode is RetentionMode.AGE:
            return {"mode": self.mode.value, "max_age_days": self.max_age_days}
        return {
            "mode": self.mode.value,
            "keep_daily": self.keep_daily,
            "keep_weekly": self.keep_weekly,
            "keep_monthly": self.keep_monthly,
        }


@dataclass(slots=True, frozen=True)
class Account:
    """One backup identity: a writable workspace and a sealed history."""

    name: str
    workspace: Path
    history: Path
    quota_bytes: Optional[int] = None
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)


@dataclass(slots=True, frozen=True)
class SnapshotInfo:
    snapshot_id: str
    created: datetime
    path: Path


class AdmissionDecision(str, Enum):
    ALLOW = "allow"
    WARN = "warn"
    DENY = "deny"


@dataclass(slots=True, frozen=True)
class AdmissionResult:
    decision: AdmissionDecision
    usage_bytes: int
    limit_bytes: Optional[int]
    reason: str

    @property
    def ratio(self) -> Optional[float]:
        if not self.limit_bytes:
            return None
        return self.usage_bytes / self.limit_bytes

    @property
    def admitted(self) -> bool:
        return self.decision is not AdmissionDecision.DENY


class SnapshotPhase(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    ADMITTING = "admitting"
    FINALIZING = "finalizing"
    SKIPPED = "skipped"


@dataclass(slots=True)
class SnapshotOutcome:
    account: str
    status: str
    reason: str
    snapshot_id: Optional[str] = None
    excluded: List[str] = field(default_factory=list)
    admission: Optional[AdmissionResult] = None

    @property
    def created(self) -> bool:
        return self.status == "created"


@dataclass(slots=True)
class RetentionSummary:
    account: str
    removed: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    error: Optional[str] = None


__all__ = [
    "Account",
    "AdmissionDecision",
    "AdmissionResult",
    "RetentionMode",
    "RetentionPolicy",
    "RetentionSummary",
    "SNAPSHOT_ID_FORMAT",
    "STAGING_PREFIX",
    "SnapshotInfo",
    "SnapshotOutcome",
    "SnapshotPhase",
    "format_snapshot_id",
    "parse_snapshot_id",
]
