import json
from datetime import datetime, timedelta, timezone

from conftest import QuietLocalBackend, build_settings, make_account
from snapshots.accounts import AccountRegistry
from snapshots.logs import SnapshotLogger
from snapshots.retention import RetentionEngine, list_snapshots, select_expired, select_gfs
from snapshots.types import STAGING_PREFIX, RetentionPolicy, format_snapshot_id
from storage.errors import BackendUnavailableError, StorageError


def _seed(history, moments):
    ids = []
    for moment in moments:
        snapshot_id = format_snapshot_id(moment)
        (history / snapshot_id).mkdir(parents=True)
        (history / snapshot_id / "file.txt").write_text(snapshot_id, encoding="utf-8")
        ids.append(snapshot_id)
    return ids


def _daily(start, count, hour=12):
    return [start + timedelta(days=offset, hours=hour) for offset in range(count)]


def _engine(home_root, working_dir, backend, *, clock=None, **sections):
    registry = AccountRegistry(build_settings(home_root, **sections))
    kwargs = {"clock": clock} if clock else {}
    return RetentionEngine(registry, backend, logger=SnapshotLogger(working_dir), **kwargs), registry


def test_list_snapshots_hides_staging_and_foreign_names(tmp_path):
    history = tmp_path / "versions"
    ids = _seed(history, _daily(datetime(2024, 1, 1, tzinfo=timezone.utc), 3))
    (history / f"{STAGING_PREFIX}2024-01-09_00-00-00").mkdir()
    (history / "notes").mkdir()
    (history / "2024-01-10_00-00-00.txt").write_text("not a snapshot", encoding="utf-8")

    listed = [info.snapshot_id for info in list_snapshots(history)]

    assert listed == list(reversed(ids))
    assert list_snapshots(tmp_path / "missing") == []


def test_gfs_union_over_two_months(tmp_path):
    # 2024-01-26 .. 2024-02-04: ten daily snapshots across a month boundary
    history = tmp_path / "versions"
    moments = _daily(datetime(2024, 1, 26, tzinfo=timezone.utc), 10)
    ids = _seed(history, moments)
    items = list_snapshots(history)

    keep = select_gfs(items, RetentionPolicy.gfs(keep_daily=2, keep_weekly=1, keep_monthly=1))
    assert keep == {
        ids[-1]: {"daily", "weekly", "monthly"},
        ids[-2]: {"daily"},
    }

    keep = select_gfs(items, RetentionPolicy.gfs(keep_daily=2, keep_weekly=2, keep_monthly=2))
    # 2024-01-28 is the Sunday closing ISO week 4; 2024-01-31 closes January
    assert set(keep) == {ids[-1], ids[-2], "2024-01-28_12-00-00", "2024-01-31_12-00-00"}
    assert keep["2024-01-28_12-00-00"] == {"weekly"}
    assert keep["2024-01-31_12-00-00"] == {"monthly"}


def test_gfs_union_over_a_quarter(tmp_path):
    history = tmp_path / "versions"
    _seed(history, _daily(datetime(2024, 1, 1, tzinfo=timezone.utc), 91))
    items = list_snapshots(history)

    keep = select_gfs(items, RetentionPolicy.gfs(keep_daily=7, keep_weekly=4, keep_monthly=3))

    daily = {f"2024-03-{day:02d}_12-00-00" for day in range(25, 32)}
    weekly = {"2024-03-31_12-00-00", "2024-03-24_12-00-00", "2024-03-17_12-00-00", "2024-03-10_12-00-00"}
    monthly = {"2024-03-31_12-00-00", "2024-02-29_12-00-00", "2024-01-31_12-00-00"}
    assert set(keep) == daily | weekly | monthly
    assert keep["2024-03-31_12-00-00"] == {"daily", "weekly", "monthly"}


def test_select_expired_age_mode(tmp_path):
    history = tmp_path / "versions"
    _seed(history, _daily(datetime(2024, 1, 1, tzinfo=timezone.utc), 91))
    now = datetime(2024, 4, 1, tzinfo=timezone.utc)

    expired = select_expired(list_snapshots(history), RetentionPolicy.age(30), now)

    assert len(expired) == 61
    assert max(info.snapshot_id for info in expired) == "2024-03-01_12-00-00"


def test_apply_is_idempotent_and_logged(home_root, working_dir):
    make_account(home_root, "alice", {"a.txt": "x"})
    history = home_root / "alice" / "versions"
    _seed(history, _daily(datetime(2024, 1, 1, tzinfo=timezone.utc), 40))
    backend = QuietLocalBackend()
    for info in list_snapshots(history):
        backend.set_read_only(info.path, True)
    engine, registry = _engine(
        home_root,
        working_dir,
        backend,
        retention={"keep_daily": 3, "keep_weekly": 2, "keep_monthly": 2},
    )
    account = registry.get("alice")

    first = engine.apply(account)
    second = engine.apply(account)

    assert first.removed
    assert second.removed == []
    assert sorted(second.kept) == sorted(first.kept)
    assert sorted(info.snapshot_id for info in list_snapshots(history)) == sorted(first.kept)

    records = [json.loads(line) for line in (working_dir / "logs" / "snapshots.jsonl").read_text().splitlines()]
    deletions = [record for record in records if record["event"] == "retention_delete"]
    assert len(deletions) == len(first.removed)
    assert all(record["account"] == "alice" and record["reason"] == "outside_gfs_buckets" for record in deletions)


def test_account_override_switches_to_age_mode(home_root, working_dir):
    make_account(home_root, "alice", {"a.txt": "x"})
    history = home_root / "alice" / "versions"
    _seed(history, _daily(datetime(2024, 1, 1, tzinfo=timezone.utc), 10))
    now = datetime(2024, 1, 11, tzinfo=timezone.utc).timestamp()
    engine, registry = _engine(
        home_root,
        working_dir,
        QuietLocalBackend(),
        clock=lambda: now,
        accounts={"alice": {"retention": {"mode": "age", "max_age_days": 5}}},
    )

    summary = engine.apply(registry.get("alice"))

    assert sorted(summary.removed) == [f"2024-01-{day:02d}_12-00-00" for day in range(1, 6)]
    assert len(summary.kept) == 5


def test_failed_deletion_is_skipped(home_root, working_dir):
    make_account(home_root, "alice", {"a.txt": "x"})
    history = home_root / "alice" / "versions"
    ids = _seed(history, _daily(datetime(2024, 1, 1, tzinfo=timezone.utc), 5))

    class StubbornBackend(QuietLocalBackend):
        def delete(self, path):
            if path.name == ids[0]:
                raise StorageError("device busy")
            super().delete(path)

    engine, registry = _engine(
        home_root,
        working_dir,
        StubbornBackend(),
        retention={"keep_daily": 2, "keep_weekly": 0, "keep_monthly": 0},
    )

    summary = engine.apply(registry.get("alice"))

    assert summary.failed == [ids[0]]
    assert sorted(summary.removed) == sorted(ids[1:3])
    assert (history / ids[0]).exists()


def test_sweep_continues_past_account_errors(home_root, working_dir):
    make_account(home_root, "alice", {"a.txt": "x"})
    make_account(home_root, "bob", {"b.txt": "y"})
    _seed(home_root / "bob" / "versions", _daily(datetime(2024, 1, 1, tzinfo=timezone.utc), 4))
    engine, _ = _engine(
        home_root,
        working_dir,
        QuietLocalBackend(),
        retention={"keep_daily": 1, "keep_weekly": 0, "keep_monthly": 0},
    )

    summaries = engine.sweep(["ghost", "alice", "bob"])

    assert [item.account for item in summaries] == ["ghost", "alice", "bob"]
    assert summaries[0].error
    assert summaries[1].removed == []
    assert len(summaries[2].removed) == 3


def test_sweep_aborts_when_backend_is_unavailable(home_root, working_dir):
    for name in ("alice", "bob"):
        make_account(home_root, name, {"a.txt": "x"})
        _seed(home_root / name / "versions", _daily(datetime(2024, 1, 1, tzinfo=timezone.utc), 3))

    class GoneBackend(QuietLocalBackend):
        def delete(self, path):
            raise BackendUnavailableError("btrfs not found")

    engine, _ = _engine(
        home_root,
        working_dir,
        GoneBackend(),
        retention={"keep_daily": 1, "keep_weekly": 0, "keep_monthly": 0},
    )

    summaries = engine.sweep()

    assert len(summaries) == 1
    assert summaries[0].account == "alice"
    assert "btrfs not found" in summaries[0].error
    assert len(list_snapshots(home_root / "bob" / "versions")) == 3
