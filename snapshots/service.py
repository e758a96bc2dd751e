"""Wiring of settings, backend and engines into one long-lived service."""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.paths import ensure_working_dir_structure, get_state_db_path, resolve_working_dir
from core.settings import load_settings
from storage import StorageBackend, create_backend
from storage.errors import BackendUnavailableError

from .accounts import AccountRegistry
from .activity import ActivityTracker
from .events import InotifyEventSource
from .logs import SnapshotLogger
from .orchestrator import SnapshotOrchestrator
from .quota import DEFAULT_WARN_RATIO, QuotaAdmissionController
from .retention import RetentionEngine, list_snapshots
from .state import SnapshotStateStore
from .types import AdmissionResult, RetentionSummary, SnapshotOutcome

LOGGER = logging.getLogger("vaultsnap.service")

DEFAULT_SCHEDULE_HOUR = 3


def next_run_after(moment: datetime, hour: int) -> datetime:
    """Next occurrence of ``hour:00`` strictly after *moment* (same tzinfo)."""

    candidate = moment.replace(hour=hour, minute=0, second=0, microsecond=0)
    if candidate <= moment:
        candidate += timedelta(days=1)
    return candidate


def _warn_ratio(settings: Dict[str, Any]) -> float:
    section = settings.get("quota") if isinstance(settings.get("quota"), dict) else {}
    value = section.get("warn_ratio", DEFAULT_WARN_RATIO)
    try:
        ratio = float(value)
    except (TypeError, ValueError):
        ratio = -1.0
    if not 0 < ratio <= 1:
        LOGGER.warning("quota.warn_ratio=%r is outside (0, 1]; using %s", value, DEFAULT_WARN_RATIO)
        return DEFAULT_WARN_RATIO
    return ratio


def _schedule_hour(settings: Dict[str, Any]) -> int:
    section = settings.get("retention") if isinstance(settings.get("retention"), dict) else {}
    value = section.get("schedule_hour", DEFAULT_SCHEDULE_HOUR)
    try:
        hour = int(value)
    except (TypeError, ValueError):
        hour = -1
    if not 0 <= hour <= 23:
        LOGGER.warning("retention.schedule_hour=%r is not an hour; using %s", value, DEFAULT_SCHEDULE_HOUR)
        return DEFAULT_SCHEDULE_HOUR
    return hour


class RetentionScheduler:
    """Run a retention sweep once a day at a fixed local hour."""

    def __init__(
        self,
        job: Callable[[], object],
        *,
        hour: int = DEFAULT_SCHEDULE_HOUR,
        clock: Callable[[], float] = time.time,
        check_interval_s: float = 30.0,
    ) -> None:
        self._job = job
        self._hour = hour
        self._clock = clock
        self._check_interval = check_interval_s
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._next_run: Optional[datetime] = None

    @property
    def next_run(self) -> Optional[datetime]:
        return self._next_run

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock()).astimezone()

    def start(self) -> None:
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._next_run = next_run_after(self._now(), self._hour)
            self._thread = threading.Thread(target=self._run_loop, name="retention-scheduler", daemon=True)
            self._thread.start()
        LOGGER.info("retention scheduled for %s", self._next_run.isoformat())

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            thread = self._thread
        if thread:
            thread.join(timeout=2)
        with self._lock:
            self._thread = None

    def tick(self) -> bool:
        """Run the job if it is due; returns True when it ran."""

        now = self._now()
        if self._next_run is None:
            self._next_run = next_run_after(now, self._hour)
        if now < self._next_run:
            return False
        try:
            self._job()
        except Exception:  # pragma: no cover - the sweep logs its own failures
            LOGGER.exception("scheduled retention sweep failed")
        self._next_run = next_run_after(now, self._hour)
        return True

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._check_interval):
            self.tick()


class SnapshotService:
    """Facade used by the daemon, the CLI and the HTTP router."""

    def __init__(
        self,
        settings: Dict[str, Any],
        working_dir: Path,
        *,
        backend: Optional[StorageBackend] = None,
        clock: Callable[[], float] = time.time,
        sleep: Optional[Callable[[float], None]] = None,
        threaded: bool = True,
        event_source: Optional[InotifyEventSource] = None,
    ) -> None:
        self.settings = settings
        self.working_dir = Path(working_dir)
        ensure_working_dir_structure(self.working_dir)
        self.backend = backend or create_backend(settings)
        self.registry = AccountRegistry(settings)
        self.logger = SnapshotLogger(self.working_dir)
        self.tracker = ActivityTracker(clock=clock)
        self.state = SnapshotStateStore(get_state_db_path(self.working_dir))
        self.quota = QuotaAdmissionController(self.backend, logger=self.logger, warn_ratio=_warn_ratio(settings))
        self.orchestrator = SnapshotOrchestrator.from_settings(
            settings,
            self.registry,
            self.backend,
            tracker=self.tracker,
            state=self.state,
            quota=self.quota,
            logger=self.logger,
            clock=clock,
            sleep=sleep,
            threaded=threaded,
        )
        self.retention = RetentionEngine(self.registry, self.backend, logger=self.logger, clock=clock)
        self.scheduler = RetentionScheduler(self.apply_retention, hour=_schedule_hour(settings), clock=clock)
        events_cfg = settings.get("events") if isinstance(settings.get("events"), dict) else {}
        self._events_enabled = bool(events_cfg.get("enable", True))
        self.events = event_source or InotifyEventSource(
            self.registry,
            self.notify,
            binary=str(events_cfg.get("inotifywait_path") or "inotifywait"),
            on_exit=self._event_feed_lost,
        )
        self._events_error: Optional[str] = None

    @classmethod
    def from_working_dir(cls, working_dir: Optional[Path] = None, **kwargs: Any) -> "SnapshotService":
        base = Path(working_dir) if working_dir else resolve_working_dir()
        return cls(load_settings(base), base, **kwargs)

    # ------------------------------------------------------------------
    @property
    def degraded_reason(self) -> Optional[str]:
        return self.orchestrator.degraded_reason or self.events_error

    @property
    def events_error(self) -> Optional[str]:
        return self._events_error or self.events.error

    def _event_feed_lost(self, reason: str) -> None:
        self.logger.error("event_feed_lost", account=None, err=reason)

    def start(self, *, events: Optional[bool] = None, scheduler: bool = True) -> None:
        recovered = self.orchestrator.start()
        if recovered:
            LOGGER.warning("recovered %d stale snapshot marker(s)", len(recovered))
        if events if events is not None else self._events_enabled:
            try:
                self.events.start()
                self._events_error = None
            except BackendUnavailableError as exc:
                self._events_error = str(exc)
                self.logger.error("event_feed_unavailable", account=None, err=str(exc))
        if scheduler:
            self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.events.stop()
        self.orchestrator.stop()

    # ------------------------------------------------------------------
    def accounts(self) -> List[str]:
        return self.registry.names()

    def notify(self, name: str, timestamp: Optional[float] = None) -> bool:
        return self.orchestrator.notify(name, timestamp)

    def handle_path_event(self, path: Path | str) -> Optional[str]:
        account = self.registry.account_for_path(Path(path))
        if account is None:
            LOGGER.debug("event outside any workspace ignored: %s", path)
            return None
        self.orchestrator.notify(account.name)
        return account.name

    def snapshot_now(self, name: str, reason: str = "manual") -> SnapshotOutcome:
        return self.orchestrator.snapshot_now(name, reason)

    def in_progress(self, name: str) -> bool:
        account = self.registry.get(name)
        return self.orchestrator.in_progress(account.name)

    def effective_policy(self, name: str) -> Dict[str, Any]:
        policy = self.registry.effective_policy(name)
        policy["warn_ratio"] = _warn_ratio(self.settings)
        return policy

    def admission(self, name: str) -> AdmissionResult:
        """Dry-run admission: nothing is written to the event log."""

        return self.quota.admit(self.registry.get(name), record=False)

    def account_status(self, name: str) -> Dict[str, Any]:
        account = self.registry.get(name)
        snapshots = list_snapshots(account.history)
        record = self.state.outcome(account.name) or {}
        if snapshots:
            history_state = "present"
        elif record.get("first_snapshot_utc"):
            history_state = "empty"
        else:
            history_state = "never_snapshotted"
        return {
            "account": account.name,
            "workspace": str(account.workspace),
            "history": str(account.history),
            "in_progress": self.orchestrator.in_progress(account.name),
            "phase": self.orchestrator.phase(account.name).value,
            "history_state": history_state,
            "snapshot_count": len(snapshots),
            "latest_snapshot": snapshots[0].snapshot_id if snapshots else None,
            "last_snapshot_id": record.get("last_snapshot_id"),
            "last_outcome": record.get("last_outcome"),
            "last_reason": record.get("last_reason"),
            "updated_utc": record.get("updated_utc"),
        }

    def apply_retention(self, name: Optional[str] = None) -> List[RetentionSummary]:
        if name is not None:
            self.registry.get(name)
            return self.retention.sweep([name])
        return self.retention.sweep()

    def recent_events(self, limit: int = 100) -> List[Dict[str, Any]]:
        return self.logger.tail(limit)

    def health(self, *, persist: bool = False):
        from health import run_health_checks

        return run_health_checks(
            self.working_dir,
            persist=persist,
            settings=self.settings,
            backend=self.backend,
            degraded_reason=self.orchestrator.degraded_reason,
            events_error=self.events_error,
        )


__all__ = ["RetentionScheduler", "SnapshotService", "next_run_after"]
