"""Health checks for the snapshot daemon."""

from .checks import HealthItem, HealthReport, HealthSeverity
from .run import format_report, report_to_dict, run_health_checks
from .store import HealthStore

__all__ = [
    "HealthItem",
    "HealthReport",
    "HealthSeverity",
    "HealthStore",
    "format_report",
    "report_to_dict",
    "run_health_checks",
]
