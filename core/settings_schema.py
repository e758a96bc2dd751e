from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping


_ACCOUNT_KEYS = {
    "workspace",
    "history",
    "quota_bytes",
    "quota_gb",
    "retention",
}


_ALLOWED_STRUCTURE: Dict[str, Any] = {
    "storage": {
        "backend",
        "home_root",
        "workspace_dirname",
        "history_dirname",
        "command_timeout_s",
    },
    "snapshots": {
        "poll_interval_s",
        "inactivity_window_s",
        "max_wait_s",
    },
    "quota": {
        "default_limit_bytes",
        "warn_ratio",
    },
    "retention": {
        "mode",
        "max_age_days",
        "keep_daily",
        "keep_weekly",
        "keep_monthly",
        "schedule_hour",
    },
    "accounts": {"*": _ACCOUNT_KEYS},
    "events": "*",
    "api": "*",
    "working_dir": None,
    "version": None,
}


@dataclass(slots=True)
class SettingsValidator:
    schema: Mapping[str, Any]

    def unknown_keys(self, payload: Mapping[str, Any]) -> Iterable[str]:
        return sorted(self._iter_unknown(payload, self.schema, path=""))

    def _iter_unknown(self, payload: Mapping[str, Any], schema: Mapping[str, Any], *, path: str) -> Iterable[str]:
        for key, value in payload.items():
            if key in schema:
                rule = schema[key]
            elif "*" in schema:
                rule = schema["*"]
            else:
                yield f"{path}{key}"
                continue
            if rule is None:
                continue
            if rule == "*":
                continue
            if isinstance(rule, set):
                if not isinstance(value, Mapping):
                    continue
                for sub in value.keys():
                    if sub not in rule:
                        yield f"{path}{key}.{sub}"
                continue
            if isinstance(rule, Mapping) and isinstance(value, Mapping):
                next_path = f"{path}{key}."
                yield from self._iter_unknown(value, rule, path=next_path)


SETTINGS_VALIDATOR = SettingsValidator(_ALLOWED_STRUCTURE)

__all__ = ["SETTINGS_VALIDATOR"]
