"""Account discovery and effective policy resolution."""
from __future__ import annotations

import logging
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional

from .errors import AccountNotFoundError, ConfigurationError
from .types import Account, RetentionMode, RetentionPolicy

LOGGER = logging.getLogger("vaultsnap.accounts")

_GIB = 1024 ** 3


def _section(settings: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = settings.get(key) if isinstance(settings, Mapping) else None
    return dict(value) if isinstance(value, Mapping) else {}


def _contains(root: Path, path: Path) -> bool:
    try:
        path.relative_to(root)
    except ValueError:
        return False
    return True


def _non_negative_int(value: Any, *, field: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{field} must be an integer, got {value!r}") from exc
    if number < 0:
        raise ConfigurationError(f"{field} must be >= 0, got {number}")
    return number


def resolve_retention(global_section: Mapping[str, Any], override: Optional[Mapping[str, Any]] = None) -> RetentionPolicy:
    """Merge the per-account override keys over the global retention block.

    Raises :class:`ConfigurationError` for values that cannot be parsed.
    """

    merged: Dict[str, Any] = dict(global_section)
    if override:
        merged.update({key: value for key, value in override.items() if value is not None})
    mode_text = str(merged.get("mode") or RetentionMode.GFS.value).strip().lower()
    try:
        mode = RetentionMode(mode_text)
    except ValueError as exc:
        raise ConfigurationError(f"unknown retention mode {mode_text!r}") from exc
    defaults = RetentionPolicy()
    return RetentionPolicy(
        mode=mode,
        max_age_days=_non_negative_int(merged.get("max_age_days", defaults.max_age_days), field="max_age_days"),
        keep_daily=_non_negative_int(merged.get("keep_daily", defaults.keep_daily), field="keep_daily"),
        keep_weekly=_non_negative_int(merged.get("keep_weekly", defaults.keep_weekly), field="keep_weekly"),
        keep_monthly=_non_negative_int(merged.get("keep_monthly", defaults.keep_monthly), field="keep_monthly"),
    )


def resolve_quota(default_limit: Any, override: Optional[Mapping[str, Any]] = None) -> Optional[int]:
    """Return the quota in bytes, or ``None`` for unlimited (0 also means unlimited)."""

    value: Any = default_limit
    if override:
        if override.get("quota_bytes") is not None:
            value = override.get("quota_bytes")
        elif override.get("quota_gb") is not None:
            try:
                value = int(float(override["quota_gb"]) * _GIB)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"quota_gb must be numeric, got {override['quota_gb']!r}") from exc
    if value is None:
        return None
    limit = _non_negative_int(value, field="quota_bytes")
    return limit or None


class AccountRegistry:
    """Resolve accounts from explicit settings entries and the home root.

    Per-account values win over the global defaults; malformed values fall
    back to the defaults so one account cannot stall the whole engine.
    """

    def __init__(self, settings: Mapping[str, Any]) -> None:
        self._settings = settings
        storage = _section(settings, "storage")
        self._home_root = Path(str(storage.get("home_root") or "/home"))
        self._workspace_dirname = str(storage.get("workspace_dirname") or "uploads")
        self._history_dirname = str(storage.get("history_dirname") or "versions")
        self._retention_section = _section(settings, "retention")
        self._quota_section = _section(settings, "quota")
        self._overrides = {
            str(name): dict(value) if isinstance(value, Mapping) else {}
            for name, value in _section(settings, "accounts").items()
        }
        self._cache: Dict[str, Account] = {}
        self._lock = Lock()

    @property
    def home_root(self) -> Path:
        return self._home_root

    # ------------------------------------------------------------------
    def _default_quota(self) -> Optional[int]:
        try:
            return resolve_quota(self._quota_section.get("default_limit_bytes"))
        except ConfigurationError as exc:
            LOGGER.warning("quota.default_limit_bytes invalid (%s); treating as unlimited", exc)
            return None

    def _default_retention(self) -> RetentionPolicy:
        try:
            return resolve_retention(self._retention_section)
        except ConfigurationError as exc:
            LOGGER.warning("global retention settings invalid (%s); using built-in defaults", exc)
            return RetentionPolicy()

    def _build(self, name: str) -> Account:
        override = self._overrides.get(name, {})
        workspace = Path(str(override.get("workspace") or self._home_root / name / self._workspace_dirname))
        history = Path(str(override.get("history") or self._home_root / name / self._history_dirname))
        retention_override = override.get("retention")
        if retention_override is not None and not isinstance(retention_override, Mapping):
            LOGGER.warning("account %s: retention override must be an object; ignoring", name)
            retention_override = None
        try:
            retention = resolve_retention(self._retention_section, retention_override)
        except ConfigurationError as exc:
            LOGGER.warning("account %s: invalid retention override (%s); using defaults", name, exc)
            retention = self._default_retention()
        try:
            quota = resolve_quota(self._quota_section.get("default_limit_bytes"), override)
        except ConfigurationError as exc:
            LOGGER.warning("account %s: invalid quota (%s); using the default limit", name, exc)
            quota = self._default_quota()
        return Account(name=name, workspace=workspace, history=history, quota_bytes=quota, retention=retention)

    def names(self) -> List[str]:
        found = set(self._overrides)
        if self._home_root.is_dir():
            for child in self._home_root.iterdir():
                if (child / self._workspace_dirname).is_dir():
                    found.add(child.name)
        return sorted(found)

    def get(self, name: str) -> Account:
        with self._lock:
            cached = self._cache.get(name)
        if cached is not None:
            return cached
        if name not in self._overrides and not (self._home_root / name / self._workspace_dirname).is_dir():
            raise AccountNotFoundError(f"Unknown account {name!r}")
        account = self._build(name)
        with self._lock:
            self._cache[name] = account
        return account

    def all(self) -> List[Account]:
        return [self.get(name) for name in self.names()]

    def account_for_path(self, path: Path) -> Optional[Account]:
        """Return the account whose workspace contains *path*."""

        target = Path(path)
        try:
            relative = target.relative_to(self._home_root)
        except ValueError:
            relative = None
        if relative is not None and relative.parts:
            try:
                candidate = self.get(relative.parts[0])
            except AccountNotFoundError:
                candidate = None
            if candidate is not None and _contains(candidate.workspace, target):
                return candidate
        for account in self.all():
            if _contains(account.workspace, target):
                return account
        return None

    def effective_policy(self, name: str) -> Dict[str, Any]:
        account = self.get(name)
        return {
            "account": account.name,
            "workspace": str(account.workspace),
            "history": str(account.history),
            "quota_bytes": account.quota_bytes,
            "retention": account.retention.as_dict(),
        }


__all__ = ["AccountRegistry", "resolve_quota", "resolve_retention"]
