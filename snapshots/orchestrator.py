"""Debounced, single-flight snapshot orchestration per account."""
from __future__ import annotations

import logging
import os
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from storage.base import StorageBackend
from storage.errors import BackendUnavailableError

from .accounts import AccountRegistry
from .activity import ActivityTracker
from .errors import AccountNotFoundError
from .logs import SnapshotLogger
from .quota import QuotaAdmissionController
from .retention import list_snapshots
from .state import Marker, SnapshotStateStore, owner_process_alive
from .types import (
    STAGING_PREFIX,
    Account,
    AdmissionResult,
    SnapshotOutcome,
    SnapshotPhase,
    format_snapshot_id,
    parse_snapshot_id,
)

LOGGER = logging.getLogger("vaultsnap.orchestrator")

DEFAULT_POLL_INTERVAL_S = 5.0
DEFAULT_INACTIVITY_WINDOW_S = 60.0
DEFAULT_MAX_WAIT_S = 1800.0


def watch_decision(
    now: float,
    started: float,
    last_activity: Optional[float],
    *,
    inactivity_window: float,
    max_wait: float,
) -> Optional[str]:
    """Return ``"quiesced"``, ``"forced"`` or None (keep watching).

    The forced bound counts from the start of monitoring so continuous
    writes cannot postpone a snapshot indefinitely.
    """

    reference = last_activity if last_activity is not None else started
    if now - reference >= inactivity_window:
        return "quiesced"
    if now - started >= max_wait:
        return "forced"
    return None


def _positive_float(section: Mapping[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError):
        LOGGER.warning("snapshots.%s=%r is not a number; using %s", key, value, default)
        return default
    if number <= 0:
        LOGGER.warning("snapshots.%s=%r must be positive; using %s", key, value, default)
        return default
    return number


@dataclass(slots=True)
class _WatcherHandle:
    account: str
    token: str
    started: float
    active: bool = True
    thread: Optional[threading.Thread] = field(default=None)


class SnapshotOrchestrator:
    """Turn bursts of workspace activity into at most one snapshot at a time.

    Each account moves idle -> monitoring -> admitting -> finalizing -> idle
    (or -> skipped -> idle). Single flight is enforced by a per-account lock
    together with a persisted marker that records the owning pid and watcher
    token, so markers orphaned by a crash are recognised and discarded.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        backend: StorageBackend,
        *,
        tracker: ActivityTracker,
        state: SnapshotStateStore,
        quota: QuotaAdmissionController,
        logger: SnapshotLogger,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        inactivity_window_s: float = DEFAULT_INACTIVITY_WINDOW_S,
        max_wait_s: float = DEFAULT_MAX_WAIT_S,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], None]] = None,
        threaded: bool = True,
    ) -> None:
        self._registry = registry
        self._backend = backend
        self._tracker = tracker
        self._state = state
        self._quota = quota
        self._logger = logger
        self._poll_interval = float(poll_interval_s)
        self._inactivity_window = float(inactivity_window_s)
        self._max_wait = float(max_wait_s)
        self._clock = clock
        self._sleep = sleep
        self._threaded = threaded
        self._pid = os.getpid()
        self._owner_id = f"orch-{uuid.uuid4().hex[:12]}"
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._stop_event = threading.Event()
        self._watchers: Dict[str, _WatcherHandle] = {}
        self._phases: Dict[str, SnapshotPhase] = {}
        self._account_locks: Dict[str, threading.Lock] = {}
        self._finalize_locks: Dict[str, threading.Lock] = {}
        self._degraded_reason: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Any],
        registry: AccountRegistry,
        backend: StorageBackend,
        **kwargs: Any,
    ) -> "SnapshotOrchestrator":
        section = settings.get("snapshots") if isinstance(settings, Mapping) else None
        section = section if isinstance(section, Mapping) else {}
        return cls(
            registry,
            backend,
            poll_interval_s=_positive_float(section, "poll_interval_s", DEFAULT_POLL_INTERVAL_S),
            inactivity_window_s=_positive_float(section, "inactivity_window_s", DEFAULT_INACTIVITY_WINDOW_S),
            max_wait_s=_positive_float(section, "max_wait_s", DEFAULT_MAX_WAIT_S),
            **kwargs,
        )

    # ------------------------------------------------------------------
    @property
    def degraded_reason(self) -> Optional[str]:
        return self._degraded_reason

    def phase(self, account: str) -> SnapshotPhase:
        with self._lock:
            return self._phases.get(account, SnapshotPhase.IDLE)

    def in_progress(self, account: str) -> bool:
        marker = self._state.get_marker(account)
        return marker is not None and self._is_alive(marker)

    # ------------------------------------------------------------------
    def start(self) -> List[Marker]:
        self._stop_event.clear()
        return self.recover_stale()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        with self._lock:
            threads = [handle.thread for handle in self._watchers.values() if handle.thread is not None]
        for thread in threads:
            thread.join(timeout=timeout)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._idle:
            while any(handle.active for handle in self._watchers.values()):
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._idle.wait(remaining)
        return True

    # ------------------------------------------------------------------
    def _account_lock(self, account: str) -> threading.Lock:
        with self._lock:
            return self._account_locks.setdefault(account, threading.Lock())

    def _finalize_lock(self, account: str) -> threading.Lock:
        with self._lock:
            return self._finalize_locks.setdefault(account, threading.Lock())

    def _set_phase(self, account: str, phase: SnapshotPhase) -> None:
        with self._lock:
            if phase is SnapshotPhase.IDLE:
                self._phases.pop(account, None)
            else:
                self._phases[account] = phase

    def _is_alive(self, marker: Marker) -> bool:
        if marker.pid == self._pid:
            with self._lock:
                handle = self._watchers.get(marker.account)
                return handle is not None and handle.active and handle.token == marker.owner
        return owner_process_alive(marker)

    # ------------------------------------------------------------------
    def recover_stale(self) -> List[Marker]:
        removed = self._state.discard_stale(is_alive=self._is_alive)
        for marker in removed:
            self._logger.warning(
                "stale_marker_recovered",
                account=marker.account,
                owner=marker.owner,
                pid=marker.pid,
                started_utc=marker.started_utc,
            )
            self._discard_staging_for(marker.account)
        return removed

    def _discard_staging_for(self, name: str) -> None:
        try:
            account = self._registry.get(name)
        except AccountNotFoundError:
            return
        self._discard_staging(account)

    def _discard_staging(self, account: Account) -> None:
        if not account.history.is_dir():
            return
        for child in account.history.iterdir():
            if not child.name.startswith(STAGING_PREFIX):
                continue
            try:
                self._backend.delete(child)
            except Exception as exc:
                self._logger.error("staging_cleanup_failed", account=account.name, path=str(child), err=str(exc))
                continue
            self._logger.info("staging_removed", account=account.name, path=str(child))

    def _claim(self, account: Account) -> Optional[_WatcherHandle]:
        token = f"{self._owner_id}:{account.name}:{uuid.uuid4().hex[:8]}"
        handle = _WatcherHandle(account=account.name, token=token, started=self._clock())
        acquisition = self._state.acquire(account.name, token, self._pid, is_alive=self._is_alive)
        if not acquisition.acquired:
            return None
        if acquisition.stale is not None:
            stale = acquisition.stale
            self._logger.warning(
                "stale_marker_recovered",
                account=account.name,
                owner=stale.owner,
                pid=stale.pid,
                started_utc=stale.started_utc,
            )
            self._discard_staging(account)
        with self._lock:
            self._watchers[account.name] = handle
        return handle

    def _release(self, handle: _WatcherHandle) -> None:
        try:
            self._state.release(handle.account, handle.token)
        finally:
            with self._idle:
                handle.active = False
                if self._watchers.get(handle.account) is handle:
                    del self._watchers[handle.account]
                self._phases.pop(handle.account, None)
                self._idle.notify_all()

    # ------------------------------------------------------------------
    def notify(self, account_name: str, timestamp: Optional[float] = None) -> bool:
        """Record a write event; returns True when a new watcher was started."""

        account = self._registry.get(account_name)
        self._tracker.record_activity(account.name, timestamp)
        return self._ensure_watcher(account)

    def _ensure_watcher(self, account: Account) -> bool:
        if self._stop_event.is_set():
            return False
        with self._account_lock(account.name):
            handle = self._claim(account)
            if handle is None:
                return False
            self._set_phase(account.name, SnapshotPhase.MONITORING)
            if self._threaded:
                thread = threading.Thread(
                    target=self._run_watcher,
                    args=(account, handle),
                    name=f"snapshot-watch-{account.name}",
                    daemon=True,
                )
                handle.thread = thread
                thread.start()
        if not self._threaded:
            self._run_watcher(account, handle)
        return True

    def _pause(self, seconds: float) -> bool:
        if self._sleep is not None:
            self._sleep(seconds)
            return self._stop_event.is_set()
        return self._stop_event.wait(seconds)

    def _watch(self, account: Account, handle: _WatcherHandle) -> Optional[tuple[str, float]]:
        while True:
            if self._pause(self._poll_interval):
                return None
            now = self._clock()
            trigger = watch_decision(
                now,
                handle.started,
                self._tracker.last_activity(account.name),
                inactivity_window=self._inactivity_window,
                max_wait=self._max_wait,
            )
            if trigger is not None:
                if trigger == "forced":
                    self._logger.info("snapshot_forced", account=account.name, waited_s=round(now - handle.started, 3))
                return trigger, now

    def _run_watcher(self, account: Account, handle: _WatcherHandle) -> None:
        seen: Optional[int] = None
        try:
            decision = self._watch(account, handle)
            if decision is None:
                self._logger.info("watch_cancelled", account=account.name)
                return
            trigger, _ = decision
            seen = self._tracker.generation(account.name)
            self._attempt(account, trigger)
        except Exception as exc:  # pragma: no cover - last resort, _attempt handles its own failures
            LOGGER.exception("watcher for %s crashed", account.name)
            self._logger.error("watcher_failed", account=account.name, err=str(exc))
        finally:
            self._release(handle)
            if seen is not None:
                self._rearm(account, seen)

    def _rearm(self, account: Account, seen: int) -> None:
        if not self._tracker.clear(account.name, generation=seen):
            # writes landed while finalizing; they need their own snapshot
            self._ensure_watcher(account)

    # ------------------------------------------------------------------
    def snapshot_now(self, account_name: str, reason: str = "manual") -> SnapshotOutcome:
        """Run admission and finalize immediately, outside the debounce loop."""

        account = self._registry.get(account_name)
        with self._account_lock(account.name):
            handle = self._claim(account)
        if handle is None:
            return SnapshotOutcome(account.name, "skipped", "in_progress")
        seen = self._tracker.generation(account.name)
        try:
            return self._attempt(account, reason)
        finally:
            self._release(handle)
            self._rearm(account, seen)

    def _attempt(self, account: Account, trigger: str) -> SnapshotOutcome:
        name = account.name
        self._set_phase(name, SnapshotPhase.ADMITTING)
        try:
            if self._backend.is_empty(account.workspace):
                self._set_phase(name, SnapshotPhase.SKIPPED)
                self._logger.info("snapshot_skipped", account=name, reason="empty_workspace", trigger=trigger)
                outcome = SnapshotOutcome(name, "skipped", "empty_workspace")
            else:
                admission = self._quota.admit(account)
                if not admission.admitted:
                    self._set_phase(name, SnapshotPhase.SKIPPED)
                    self._logger.warning(
                        "snapshot_skipped",
                        account=name,
                        reason="quota_denied",
                        trigger=trigger,
                        usage_bytes=admission.usage_bytes,
                        limit_bytes=admission.limit_bytes,
                    )
                    outcome = SnapshotOutcome(name, "skipped", "quota_denied", admission=admission)
                else:
                    with self._finalize_lock(name):
                        self._set_phase(name, SnapshotPhase.FINALIZING)
                        outcome = self._finalize(account, trigger, admission)
        except BackendUnavailableError as exc:
            self._degraded_reason = str(exc)
            self._logger.error("backend_unavailable", account=name, trigger=trigger, err=str(exc))
            outcome = SnapshotOutcome(name, "failed", "backend_unavailable")
        except Exception as exc:
            LOGGER.exception("snapshot for %s failed", name)
            self._logger.error("snapshot_failed", account=name, trigger=trigger, err=type(exc).__name__, err_msg=str(exc))
            outcome = SnapshotOutcome(name, "failed", f"{type(exc).__name__}: {exc}")
        try:
            self._state.record_outcome(outcome)
        except sqlite3.Error as exc:
            self._logger.error("outcome_not_recorded", account=name, err=str(exc))
        return outcome

    def _next_snapshot_id(self, account: Account) -> str:
        moment = datetime.fromtimestamp(self._clock(), tz=timezone.utc).replace(microsecond=0)
        floors = []
        recorded = self._state.last_snapshot_id(account.name)
        if recorded:
            floors.append(parse_snapshot_id(recorded))
        existing = list_snapshots(account.history)
        if existing:
            floors.append(existing[0].created)
        latest = max((value for value in floors if value is not None), default=None)
        if latest is not None and moment <= latest:
            moment = latest + timedelta(seconds=1)
        candidate = format_snapshot_id(moment)
        while (account.history / candidate).exists() or (account.history / f"{STAGING_PREFIX}{candidate}").exists():
            moment += timedelta(seconds=1)
            candidate = format_snapshot_id(moment)
        return candidate

    def _exclude_open_writers(self, account: Account, staging: Path) -> List[str]:
        workspace = account.workspace.resolve()
        excluded: List[str] = []
        for path in self._backend.list_open_writers(account.workspace):
            try:
                relative = Path(path).relative_to(workspace)
            except ValueError:
                continue
            counterpart = staging / relative
            if counterpart.is_symlink() or counterpart.is_file():
                counterpart.unlink()
                excluded.append(relative.as_posix())
        if excluded:
            self._logger.info("open_files_excluded", account=account.name, count=len(excluded), files=excluded[:50])
        return excluded

    def _finalize(self, account: Account, trigger: str, admission: AdmissionResult) -> SnapshotOutcome:
        self._backend.flush()
        account.history.mkdir(parents=True, exist_ok=True)
        snapshot_id = self._next_snapshot_id(account)
        staging = account.history / f"{STAGING_PREFIX}{snapshot_id}"
        final = account.history / snapshot_id
        try:
            self._backend.snapshot(account.workspace, staging, snapshot_id)
            excluded = self._exclude_open_writers(account, staging)
            self._backend.set_read_only(staging, True)
            self._backend.rename(staging, final)
        except Exception:
            if staging.exists():
                try:
                    self._backend.delete(staging)
                except Exception as cleanup_exc:
                    self._logger.error("staging_cleanup_failed", account=account.name, path=str(staging), err=str(cleanup_exc))
            raise
        self._degraded_reason = None
        self._logger.event(
            event="snapshot_created",
            account=account.name,
            ok=True,
            snapshot=snapshot_id,
            trigger=trigger,
            admission=admission.decision.value,
            excluded=len(excluded),
        )
        return SnapshotOutcome(
            account.name,
            "created",
            trigger,
            snapshot_id=snapshot_id,
            excluded=excluded,
            admission=admission,
        )


__all__ = ["SnapshotOrchestrator", "watch_decision"]
