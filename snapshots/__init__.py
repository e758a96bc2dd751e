"""Real-time snapshot orchestration and retention for backup accounts."""
from __future__ import annotations

from .accounts import AccountRegistry
from .activity import ActivityTracker
from .errors import AccountNotFoundError, ConfigurationError, SnapshotError
from .orchestrator import SnapshotOrchestrator
from .quota import QuotaAdmissionController
from .retention import RetentionEngine
from .service import SnapshotService
from .types import (
    Account,
    AdmissionDecision,
    AdmissionResult,
    RetentionMode,
    RetentionPolicy,
    RetentionSummary,
    SnapshotOutcome,
)

__all__ = [
    "Account",
    "AccountNotFoundError",
    "AccountRegistry",
    "ActivityTracker",
    "AdmissionDecision",
    "AdmissionResult",
    "ConfigurationError",
    "QuotaAdmissionController",
    "RetentionEngine",
    "RetentionMode",
    "RetentionPolicy",
    "RetentionSummary",
    "SnapshotError",
    "SnapshotOrchestrator",
    "SnapshotOutcome",
    "SnapshotService",
]
