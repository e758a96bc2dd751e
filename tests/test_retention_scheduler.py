from datetime import datetime, timezone

from conftest import FakeClock
from snapshots.service import RetentionScheduler, next_run_after


def test_next_run_after():
    moment = datetime(2024, 6, 1, 2, 30, tzinfo=timezone.utc)
    assert next_run_after(moment, 3) == datetime(2024, 6, 1, 3, 0, tzinfo=timezone.utc)
    assert next_run_after(moment.replace(hour=3, minute=0), 3) == datetime(2024, 6, 2, 3, 0, tzinfo=timezone.utc)
    assert next_run_after(moment.replace(hour=23), 3) == datetime(2024, 6, 2, 3, 0, tzinfo=timezone.utc)


def test_tick_runs_once_per_day():
    runs = []
    clock = FakeClock()
    scheduler = RetentionScheduler(lambda: runs.append(clock.now), hour=3, clock=clock)

    assert scheduler.tick() is False
    first = scheduler.next_run
    clock.now = first.timestamp()
    assert scheduler.tick() is True
    assert scheduler.tick() is False
    assert scheduler.next_run > first
    assert len(runs) == 1
