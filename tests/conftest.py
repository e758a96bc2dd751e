from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core.settings import merge_defaults
from storage.local import LocalCopyBackend

START = 1_717_243_200.0  # 2024-06-01 12:00:00 UTC


class FakeClock:
    def __init__(self, start: float = START) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += float(seconds)


class QuietLocalBackend(LocalCopyBackend):
    """Local copies without the global sync and with scripted open writers."""

    def __init__(self) -> None:
        self.flushes = 0
        self.open_writers: list[Path] = []

    def flush(self) -> None:
        self.flushes += 1

    def list_open_writers(self, path: Path) -> list[Path]:
        return list(self.open_writers)


def build_settings(home_root: Path, **sections: Any) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "storage": {"backend": "local", "home_root": str(home_root)},
        "events": {"enable": False},
    }
    for key, value in sections.items():
        if isinstance(value, dict) and isinstance(payload.get(key), dict):
            payload[key].update(value)
        else:
            payload[key] = value
    return merge_defaults(payload)


def make_account(home_root: Path, name: str, files: Optional[Dict[str, str]] = None) -> Path:
    workspace = home_root / name / "uploads"
    workspace.mkdir(parents=True, exist_ok=True)
    (home_root / name / "versions").mkdir(parents=True, exist_ok=True)
    for relative, content in (files or {}).items():
        target = workspace / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return workspace


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def home_root(tmp_path: Path) -> Path:
    root = tmp_path / "home"
    root.mkdir()
    return root


@pytest.fixture
def working_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def backend() -> QuietLocalBackend:
    return QuietLocalBackend()
