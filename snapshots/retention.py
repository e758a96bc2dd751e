"""Retention policy enforcement for sealed snapshots."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Set

from storage.base import StorageBackend
from storage.errors import BackendUnavailableError

from .accounts import AccountRegistry
from .errors import AccountNotFoundError
from .logs import SnapshotLogger
from .types import (
    STAGING_PREFIX,
    Account,
    RetentionMode,
    RetentionPolicy,
    RetentionSummary,
    SnapshotInfo,
    parse_snapshot_id,
)

LOGGER = logging.getLogger("vaultsnap.retention")


def list_snapshots(history: Path) -> List[SnapshotInfo]:
    """Sealed snapshots under *history*, newest first.

    Staging objects and entries whose name is not a snapshot id are skipped.
    """

    items: List[SnapshotInfo] = []
    base = Path(history)
    if not base.is_dir():
        return items
    for child in base.iterdir():
        name = child.name
        if name.startswith(".") or name.startswith(STAGING_PREFIX) or not child.is_dir():
            continue
        created = parse_snapshot_id(name)
        if created is None:
            continue
        items.append(SnapshotInfo(snapshot_id=name, created=created, path=child))
    items.sort(key=lambda info: (info.created, info.snapshot_id), reverse=True)
    return items


def _bucket_walk(
    items: Sequence[SnapshotInfo],
    limit: int,
    key: Callable[[SnapshotInfo], tuple],
) -> List[SnapshotInfo]:
    kept: List[SnapshotInfo] = []
    if limit <= 0:
        return kept
    last_key: Optional[tuple] = None
    for info in items:
        if len(kept) >= limit:
            break
        bucket = key(info)
        if bucket == last_key:
            continue
        kept.append(info)
        last_key = bucket
    return kept


def select_gfs(items: Sequence[SnapshotInfo], policy: RetentionPolicy) -> Dict[str, Set[str]]:
    """Return ``{snapshot_id: reasons}`` for every snapshot the policy keeps.

    *items* must be newest first; the first snapshot met in a bucket is its
    representative, so the latest timestamp wins ties.
    """

    keep: Dict[str, Set[str]] = {}
    for info in items[: max(policy.keep_daily, 0)]:
        keep.setdefault(info.snapshot_id, set()).add("daily")
    for info in _bucket_walk(items, policy.keep_weekly, lambda meta: tuple(meta.created.isocalendar()[:2])):
        keep.setdefault(info.snapshot_id, set()).add("weekly")
    for info in _bucket_walk(items, policy.keep_monthly, lambda meta: (meta.created.year, meta.created.month)):
        keep.setdefault(info.snapshot_id, set()).add("monthly")
    return keep


def select_expired(items: Iterable[SnapshotInfo], policy: RetentionPolicy, now: datetime) -> List[SnapshotInfo]:
    cutoff = now - timedelta(days=max(policy.max_age_days, 0))
    return [info for info in items if info.created < cutoff]


class RetentionEngine:
    """Reduce each account's history to what its policy requires."""

    def __init__(
        self,
        registry: AccountRegistry,
        backend: StorageBackend,
        *,
        logger: SnapshotLogger,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._backend = backend
        self._logger = logger
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def plan(self, account: Account) -> tuple[List[SnapshotInfo], Dict[str, str]]:
        """Return (snapshots, ``{snapshot_id: reason}`` of those to delete)."""

        items = list_snapshots(account.history)
        policy = account.retention
        doomed: Dict[str, str] = {}
        if policy.mode is RetentionMode.AGE:
            for info in select_expired(items, policy, self._now()):
                doomed[info.snapshot_id] = f"older_than_{policy.max_age_days}d"
        else:
            keep = select_gfs(items, policy)
            for info in items:
                if info.snapshot_id not in keep:
                    doomed[info.snapshot_id] = "outside_gfs_buckets"
        return items, doomed

    def apply(self, account: Account) -> RetentionSummary:
        items, doomed = self.plan(account)
        summary = RetentionSummary(account=account.name)
        for info in items:
            reason = doomed.get(info.snapshot_id)
            if reason is None:
                summary.kept.append(info.snapshot_id)
                continue
            try:
                self._backend.delete(info.path)
            except BackendUnavailableError:
                raise
            except Exception as exc:
                summary.failed.append(info.snapshot_id)
                self._logger.retention_delete(account.name, info.snapshot_id, reason=reason, ok=False, err=str(exc))
                continue
            summary.removed.append(info.snapshot_id)
            self._logger.retention_delete(account.name, info.snapshot_id, reason=reason, ok=True)
        self._logger.event(
            event="retention_applied",
            account=account.name,
            ok=not summary.failed,
            mode=account.retention.mode.value,
            removed=len(summary.removed),
            kept=len(summary.kept),
            failed=len(summary.failed),
        )
        return summary

    def sweep(self, names: Optional[Iterable[str]] = None) -> List[RetentionSummary]:
        """Apply retention to every (or the named) account, one at a time."""

        summaries: List[RetentionSummary] = []
        targets = list(names) if names is not None else self._registry.names()
        for name in targets:
            try:
                account = self._registry.get(name)
                summaries.append(self.apply(account))
            except BackendUnavailableError as exc:
                self._logger.error("retention_aborted", account=name, reason="backend_unavailable", err=str(exc))
                summaries.append(RetentionSummary(account=name, error=str(exc)))
                break
            except AccountNotFoundError as exc:
                self._logger.warning("retention_skipped", account=name, reason="unknown_account", err=str(exc))
                summaries.append(RetentionSummary(account=name, error=str(exc)))
            except Exception as exc:
                LOGGER.exception("retention failed for %s", name)
                self._logger.error("retention_failed", account=name, err=str(exc))
                summaries.append(RetentionSummary(account=name, error=str(exc)))
        return summaries


__all__ = ["RetentionEngine", "list_snapshots", "select_expired", "select_gfs"]
