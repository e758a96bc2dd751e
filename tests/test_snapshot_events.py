import io
import os
from pathlib import Path

import pytest

from conftest import build_settings, make_account
from snapshots.accounts import AccountRegistry
from snapshots.events import InotifyEventSource, build_command, parse_event_line
from snapshots.service import SnapshotService
from storage.errors import BackendUnavailableError


class FakeProcess:
    def __init__(self, lines):
        self.stdout = io.BytesIO(b"".join(line if isinstance(line, bytes) else line.encode() for line in lines))
        self.terminated = False

    def poll(self):
        return 0

    def terminate(self):
        self.terminated = True

    def wait(self, timeout=None):
        return 0


def test_parse_event_line():
    assert parse_event_line("/home/alice/uploads/a b.txt\n") == Path("/home/alice/uploads/a b.txt")
    assert parse_event_line("\n") is None
    assert parse_event_line("relative/path") is None


def test_build_command_watches_close_write():
    command = build_command("inotifywait", Path("/home"))
    assert command[0] == "inotifywait"
    assert "/home" in command
    assert command[command.index("-e") + 1] == "close_write"
    assert command[command.index("--format") + 1] == "%w%f"


def test_handle_line_maps_to_workspace_owner(home_root):
    make_account(home_root, "alice")
    seen = []
    source = InotifyEventSource(AccountRegistry(build_settings(home_root)), seen.append)

    assert source.handle_line(f"{home_root}/alice/uploads/docs/a.pdf\n") == "alice"
    assert source.handle_line(f"{home_root}/alice/versions/2024-01-01_00-00-00/a.pdf\n") is None
    assert source.handle_line("/etc/passwd\n") is None
    assert seen == ["alice"]


def test_reader_thread_forwards_events(home_root):
    make_account(home_root, "alice")
    make_account(home_root, "bob")
    seen = []
    lines = [
        f"{home_root}/alice/uploads/a.txt\n",
        f"{home_root}/bob/uploads/b.txt\n",
        f"{home_root}/carol/uploads/c.txt\n",
    ]
    captured = {}

    def popen(command, **kwargs):
        captured["command"] = command
        return FakeProcess(lines)

    source = InotifyEventSource(AccountRegistry(build_settings(home_root)), seen.append, popen=popen)
    source.start()
    source._thread.join(timeout=5)
    source.stop()

    assert seen == ["alice", "bob"]
    assert str(home_root) in captured["command"]
    assert not source.running


def test_missing_inotifywait_is_reported(home_root, tmp_path):
    source = InotifyEventSource(
        AccountRegistry(build_settings(home_root)),
        lambda name: None,
        binary=str(tmp_path / "no-inotifywait"),
    )
    with pytest.raises(BackendUnavailableError):
        source.start()


def test_undecodable_name_does_not_stop_the_feed(home_root):
    make_account(home_root, "alice")
    make_account(home_root, "bob")
    seen = []
    lines = [
        os.fsencode(f"{home_root}/alice/uploads/") + b"bad\xff.bin\n",
        f"{home_root}/bob/uploads/good.txt\n".encode(),
    ]
    source = InotifyEventSource(
        AccountRegistry(build_settings(home_root)),
        seen.append,
        popen=lambda command, **kwargs: FakeProcess(lines),
    )
    source.start()
    source._thread.join(timeout=5)

    assert seen == ["alice", "bob"]
    source.stop()


def test_parse_event_line_keeps_raw_bytes():
    path = parse_event_line(b"/home/alice/uploads/caf\xe9.txt\n")
    assert os.fsencode(str(path)) == b"/home/alice/uploads/caf\xe9.txt"


def test_feed_exit_is_reported(home_root, working_dir, backend):
    make_account(home_root, "alice")
    settings = build_settings(home_root, events={"enable": True})
    service = SnapshotService(settings, working_dir, backend=backend, threaded=False)
    service.events = InotifyEventSource(
        service.registry,
        service.notify,
        popen=lambda command, **kwargs: FakeProcess([]),
        on_exit=service._event_feed_lost,
    )
    service.start(scheduler=False)
    service.events._thread.join(timeout=5)

    assert "inotifywait exited" in service.events_error
    assert service.degraded_reason == service.events_error
    codes = {item.code for item in service.health().items}
    assert "EVENT_FEED_DOWN" in codes
    assert [record["event"] for record in service.recent_events(10)] == ["event_feed_lost"]
    service.stop()
