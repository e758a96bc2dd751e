"""In-memory record of the most recent write activity per account."""
from __future__ import annotations

import threading
import time
from typing import Callable, Dict, List, Optional


class ActivityTracker:
    """Cheap, thread-safe last-activity map.

    Recording never does I/O. The stored value only moves forward: an event
    that arrives late with an older timestamp leaves the newer one in place.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last: Dict[str, float] = {}
        self._writes: Dict[str, int] = {}
        self._lock = threading.Lock()

    def record_activity(self, account: str, timestamp: Optional[float] = None) -> float:
        value = float(timestamp if timestamp is not None else self._clock())
        with self._lock:
            self._writes[account] = self._writes.get(account, 0) + 1
            current = self._last.get(account)
            if current is None or value > current:
                self._last[account] = value
                return value
            return current

    def last_activity(self, account: str) -> Optional[float]:
        with self._lock:
            return self._last.get(account)

    def generation(self, account: str) -> int:
        """Number of writes recorded for *account* so far; never decreases."""

        with self._lock:
            return self._writes.get(account, 0)

    def clear(self, account: str, *, generation: Optional[int] = None) -> bool:
        """Forget the account's activity unless something newer arrived.

        *generation* is a value taken earlier from :meth:`generation`; any
        write recorded since then, even within the same second, keeps the
        activity. Returns False when newer activity was kept.
        """

        with self._lock:
            current = self._last.get(account)
            if current is None:
                return True
            if generation is not None and self._writes.get(account, 0) != generation:
                return False
            del self._last[account]
            return True

    def accounts(self) -> List[str]:
        with self._lock:
            return sorted(self._last)


__all__ = ["ActivityTracker"]
