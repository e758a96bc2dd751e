import os
import sys
from pathlib import Path

import pytest

from storage import BtrfsBackend, LocalCopyBackend, create_backend
from storage.btrfs import parse_du_output
from storage.errors import BackendUnavailableError, SnapshotExistsError, StorageError
from storage.openfiles import list_open_writers


def _tree(root: Path) -> Path:
    (root / "sub").mkdir(parents=True)
    (root / "a.txt").write_text("alpha", encoding="utf-8")
    (root / "sub" / "b.txt").write_text("beta", encoding="utf-8")
    return root


def test_local_snapshot_is_an_independent_copy(tmp_path):
    src = _tree(tmp_path / "uploads")
    backend = LocalCopyBackend()

    backend.snapshot(src, tmp_path / "versions" / "s1", "s1")
    (src / "a.txt").write_text("changed", encoding="utf-8")

    assert (tmp_path / "versions" / "s1" / "a.txt").read_text(encoding="utf-8") == "alpha"
    with pytest.raises(SnapshotExistsError):
        backend.snapshot(src, tmp_path / "versions" / "s1", "s1")


def test_local_read_only_and_delete(tmp_path):
    snap = _tree(tmp_path / "snap")
    backend = LocalCopyBackend()

    backend.set_read_only(snap, True)
    assert backend.is_read_only(snap)
    assert backend.is_read_only(snap / "sub" / "b.txt")

    backend.delete(snap)
    assert not snap.exists()
    backend.delete(snap)


def test_local_usage_counts_hard_links_once(tmp_path):
    root = tmp_path / "data"
    root.mkdir()
    payload = root / "big.bin"
    payload.write_bytes(os.urandom(64 * 1024))
    backend = LocalCopyBackend()
    single = backend.usage_bytes(root)

    os.link(payload, root / "again.bin")

    assert backend.usage_bytes(root) == single
    assert single >= 64 * 1024
    assert backend.usage_bytes(tmp_path / "missing") == 0


def test_rename_refuses_to_overwrite_and_is_empty(tmp_path):
    backend = LocalCopyBackend()
    (tmp_path / "a").mkdir()
    (tmp_path / "b").mkdir()

    with pytest.raises(StorageError):
        backend.rename(tmp_path / "a", tmp_path / "b")
    assert backend.is_empty(tmp_path / "a")
    assert backend.is_empty(tmp_path / "missing")
    (tmp_path / "a" / "x").write_text("x", encoding="utf-8")
    assert not backend.is_empty(tmp_path / "a")


def test_parse_du_output():
    output = "     Total   Exclusive  Set shared  Filename\n 1048576      4096   1044480  /home/alice/versions\n"
    assert parse_du_output(output) == 1048576
    assert parse_du_output("Total Exclusive Set shared Filename\n0 - - /x\n") == 0
    with pytest.raises(StorageError):
        parse_du_output("ERROR: not a btrfs filesystem")


def test_btrfs_missing_binary_is_unavailable(tmp_path):
    backend = BtrfsBackend(binary=str(tmp_path / "no-btrfs"))

    with pytest.raises(BackendUnavailableError):
        backend.probe()
    with pytest.raises(BackendUnavailableError):
        backend.usage_bytes(tmp_path)


def test_create_backend_from_settings():
    assert isinstance(create_backend({"storage": {"backend": "local"}}), LocalCopyBackend)
    assert isinstance(create_backend({"storage": {"backend": "btrfs"}}), BtrfsBackend)
    assert isinstance(create_backend({"storage": {"backend": "zfs"}}), BtrfsBackend)


@pytest.mark.skipif(not sys.platform.startswith("linux"), reason="open file modes are reported on Linux")
def test_open_writers_found_for_this_process(tmp_path):
    done = tmp_path / "done.txt"
    done.write_text("ok", encoding="utf-8")
    with open(tmp_path / "partial.bin", "w", encoding="utf-8") as handle:
        handle.write("x")
        handle.flush()
        with open(done, "r", encoding="utf-8"):
            found = list_open_writers(tmp_path)
    assert (tmp_path / "partial.bin").resolve() in found
    assert done.resolve() not in found
