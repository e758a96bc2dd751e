"""Quota admission gate consulted before a snapshot is finalized."""
from __future__ import annotations

from fractions import Fraction
from typing import Optional

from storage.base import StorageBackend

from .logs import SnapshotLogger
from .types import Account, AdmissionDecision, AdmissionResult

DEFAULT_WARN_RATIO = 0.9


def _ratio_fraction(value: float) -> Fraction:
    fraction = Fraction(str(value)).limit_denominator(1_000_000)
    if fraction <= 0 or fraction > 1:
        return Fraction(str(DEFAULT_WARN_RATIO))
    return fraction


def classify_usage(usage_bytes: int, limit_bytes: Optional[int], *, warn_ratio: float = DEFAULT_WARN_RATIO) -> AdmissionResult:
    """Pure decision: ``deny`` at or above the limit, ``warn`` at or above
    ``warn_ratio`` of it, ``allow`` otherwise. Integer arithmetic only, so
    exact boundaries are stable."""

    if not limit_bytes:
        return AdmissionResult(AdmissionDecision.ALLOW, int(usage_bytes), None, "unlimited")
    usage = int(usage_bytes)
    limit = int(limit_bytes)
    ratio = _ratio_fraction(warn_ratio)
    if usage >= limit:
        return AdmissionResult(AdmissionDecision.DENY, usage, limit, "quota_exceeded")
    if usage * ratio.denominator >= limit * ratio.numerator:
        return AdmissionResult(AdmissionDecision.WARN, usage, limit, "quota_near_limit")
    return AdmissionResult(AdmissionDecision.ALLOW, usage, limit, "within_quota")


class QuotaAdmissionController:
    """Compare live usage (workspace + history) to the account's limit."""

    def __init__(
        self,
        backend: StorageBackend,
        *,
        logger: Optional[SnapshotLogger] = None,
        warn_ratio: float = DEFAULT_WARN_RATIO,
    ) -> None:
        self._backend = backend
        self._logger = logger
        self._warn_ratio = warn_ratio

    def usage(self, account: Account) -> int:
        return self._backend.usage_bytes(account.workspace) + self._backend.usage_bytes(account.history)

    def admit(self, account: Account, *, record: bool = True) -> AdmissionResult:
        if account.quota_bytes is None:
            result = AdmissionResult(AdmissionDecision.ALLOW, 0, None, "unlimited")
        else:
            result = classify_usage(self.usage(account), account.quota_bytes, warn_ratio=self._warn_ratio)
        if record and self._logger is not None:
            self._logger.admission(account.name, result)
        return result


__all__ = ["DEFAULT_WARN_RATIO", "QuotaAdmissionController", "classify_usage"]
