import threading

from conftest import FakeClock
from snapshots.activity import ActivityTracker


def test_newest_timestamp_wins():
    tracker = ActivityTracker(clock=FakeClock(100.0))

    tracker.record_activity("alice", 50.0)
    tracker.record_activity("alice", 40.0)

    assert tracker.last_activity("alice") == 50.0
    assert tracker.record_activity("alice") == 100.0
    assert tracker.last_activity("bob") is None


def test_clear_by_generation_sees_same_second_writes():
    tracker = ActivityTracker(clock=FakeClock(100.0))
    tracker.record_activity("alice")
    seen = tracker.generation("alice")
    tracker.record_activity("alice")

    assert tracker.generation("alice") == seen + 1
    assert tracker.clear("alice", generation=seen) is False
    assert tracker.last_activity("alice") == 100.0
    assert tracker.clear("alice", generation=seen + 1) is True
    assert tracker.last_activity("alice") is None
    assert tracker.generation("alice") == seen + 1
    assert tracker.clear("alice") is True


def test_concurrent_records_keep_maximum():
    tracker = ActivityTracker()

    def worker(offset):
        for index in range(200):
            tracker.record_activity("alice", float(offset * 1000 + index))

    threads = [threading.Thread(target=worker, args=(offset,)) for offset in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert tracker.last_activity("alice") == 3199.0
    assert tracker.accounts() == ["alice"]
