"""Data quality gate over the staging tables."""

from .gate import (
    DEFAULT_RULES,
    CheckOutcome,
    CheckResult,
    ForeignKey,
    QualityReport,
    TableRule,
    run_quality_checks,
)

__all__ = [
    "run_quality_checks",
    "QualityReport",
    "CheckResult",
    "CheckOutcome",
    "TableRule",
    "ForeignKey",
    "DEFAULT_RULES",
]
