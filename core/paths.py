from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

__all__ = [
    "ensure_working_dir_structure",
    "get_data_dir",
    "get_default_settings_paths",
    "get_logs_dir",
    "get_state_db_path",
    "resolve_working_dir",
]

_SYSTEM_WORKING_DIR = Path("/var/lib/vaultsnap")
_SYSTEM_SETTINGS_PATH = Path("/etc/vaultsnap/settings.json")


def _expand_path(value: str) -> Path:
    expanded = os.path.expandvars(os.path.expanduser(value))
    return Path(expanded).resolve()


def _ensure_writable_dir(path: Path) -> bool:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except Exception:
        return False
    test_file = path / f".write_test_{os.getpid()}"
    try:
        with open(test_file, "w", encoding="utf-8") as handle:
            handle.write("ok")
        test_file.unlink(missing_ok=True)
        return True
    except Exception:
        try:
            if test_file.exists():
                test_file.unlink()
        except OSError:  # pragma: no cover
            pass
        return False


def _prepare_working_dir(candidate: Path) -> Optional[Path]:
    if not _ensure_writable_dir(candidate):
        return None
    try:
        ensure_working_dir_structure(candidate)
        return candidate
    except Exception:
        return None


def resolve_working_dir() -> Path:
    """Resolve the vaultsnap working directory, creating it if required.

    Order: ``$VAULTSNAP_HOME``, ``/var/lib/vaultsnap`` when writable (the
    daemon normally runs as root), then ``~/.vaultsnap``.
    """

    env_home = os.environ.get("VAULTSNAP_HOME")
    if env_home:
        try:
            env_path = _expand_path(env_home)
        except Exception:
            env_path = None
        if env_path:
            prepared = _prepare_working_dir(env_path)
            if prepared is not None:
                return prepared

    prepared = _prepare_working_dir(_SYSTEM_WORKING_DIR)
    if prepared is not None:
        return prepared

    fallback = Path.home() / ".vaultsnap"
    ensure_working_dir_structure(fallback)
    return fallback


def get_data_dir(working_dir: Path) -> Path:
    return working_dir / "data"


def get_state_db_path(working_dir: Path) -> Path:
    return get_data_dir(working_dir) / "state.db"


def get_logs_dir(working_dir: Path) -> Path:
    return working_dir / "logs"


def ensure_working_dir_structure(working_dir: Path) -> None:
    for directory in (
        working_dir,
        get_data_dir(working_dir),
        get_logs_dir(working_dir),
    ):
        directory.mkdir(parents=True, exist_ok=True)


def get_default_settings_paths(working_dir: Path) -> list[Path]:
    """Return the search order for settings.json files."""

    paths: list[Path] = []
    env_settings = os.environ.get("VAULTSNAP_SETTINGS")
    if env_settings:
        try:
            paths.append(_expand_path(env_settings))
        except Exception:
            pass
    paths.append(working_dir / "settings.json")
    paths.append(_SYSTEM_SETTINGS_PATH)
    return paths
