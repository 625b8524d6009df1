"""SQL data quality checks over the staging tables.

Each check counts failing rows in DuckDB and grades them:

- critical checks (key not-null, key unique) fail on any violation;
- threshold checks compare the failing fraction with ``quality.warn_at`` /
  ``quality.stop_at``;
- warn-only checks never fail the run.

Example:
    >>> report = run_quality_checks(conn, settings)
    >>> if report.has_warnings():
    ...     print(report.warning_messages())
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import duckdb

from ..config import QualityConfig, Settings
from ..errors import CriticalQualityFailure
from ..storage.warehouse import quote_identifier, row_count, table_columns, table_exists

logger = logging.getLogger(__name__)


class CheckOutcome(str, Enum):
    """Outcome of a single check."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


class Severity(str, Enum):
    """How failing rows are graded."""

    CRITICAL = "critical"
    THRESHOLD = "threshold"
    WARN_ONLY = "warn_only"


@dataclass(frozen=True)
class ForeignKey:
    """Declared relationship ``column -> ref_table.ref_column``."""

    column: str
    ref_table: str
    ref_column: str = "No"


@dataclass(frozen=True)
class TableRule:
    """Checks applied to one staging table.

    Attributes:
        table: Staging table name
        label: Prefix for check names
        primary_key: Key columns (not-null and unique, critical)
        required_columns: Columns that should be populated (warn only)
        non_negative: Numeric columns that must be >= 0 (threshold)
        foreign_keys: Relationships checked for orphans (threshold)
    """

    table: str
    label: str
    primary_key: tuple[str, ...] = ("No",)
    required_columns: tuple[str, ...] = ()
    non_negative: tuple[str, ...] = ()
    foreign_keys: tuple[ForeignKey, ...] = ()


DEFAULT_RULES: tuple[TableRule, ...] = (
    TableRule(table="stg_tournaments", label="tournaments"),
    TableRule(
        table="stg_matches",
        label="matches",
        required_columns=("TeamNameA", "TeamNameB"),
        non_negative=("MatchPointsA", "MatchPointsB"),
        foreign_keys=(ForeignKey("NoTournament", "stg_tournaments", "No"),),
    ),
    TableRule(table="stg_match_details", label="match_details"),
)


@dataclass
class CheckResult:
    """Result of one check."""

    name: str
    table: str
    outcome: CheckOutcome
    failing_rows: int
    total_rows: int
    message: str
    severity: Severity = Severity.CRITICAL

    @property
    def failing_fraction(self) -> float:
        if self.total_rows == 0:
            return 0.0
        return self.failing_rows / self.total_rows

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "table": self.table,
            "outcome": self.outcome.value,
            "severity": self.severity.value,
            "failing_rows": self.failing_rows,
            "total_rows": self.total_rows,
            "message": self.message,
        }


@dataclass
class QualityReport:
    """All check results of one quality gate run."""

    results: list[CheckResult] = field(default_factory=list)

    @property
    def passed(self) -> list[CheckResult]:
        return [r for r in self.results if r.outcome == CheckOutcome.PASS]

    @property
    def warned(self) -> list[CheckResult]:
        return [r for r in self.results if r.outcome == CheckOutcome.WARN]

    @property
    def failed(self) -> list[CheckResult]:
        return [r for r in self.results if r.outcome == CheckOutcome.FAIL]

    @property
    def failed_names(self) -> list[str]:
        return [r.name for r in self.failed]

    def is_success(self) -> bool:
        """True if no check failed (warnings allowed)."""
        return not self.failed

    def has_warnings(self) -> bool:
        return bool(self.warned)

    def warning_messages(self) -> list[str]:
        return [r.message for r in self.warned]

    def to_dict(self) -> dict[str, Any]:
        return {
            "checks": len(self.results),
            "passed": len(self.passed),
            "warned": len(self.warned),
            "failed": len(self.failed),
            "results": [r.to_dict() for r in self.results],
        }

    def __str__(self) -> str:
        return (
            f"QualityReport(checks={len(self.results)}, passed={len(self.passed)}, "
            f"warnings={len(self.warned)}, failed={len(self.failed)})"
        )


def grade(failing_rows: int, total_rows: int, severity: Severity, thresholds: QualityConfig) -> CheckOutcome:
    """Map a failing-row count to an outcome."""
    if failing_rows == 0:
        return CheckOutcome.PASS
    if severity == Severity.CRITICAL:
        return CheckOutcome.FAIL
    if severity == Severity.WARN_ONLY:
        return CheckOutcome.WARN

    fraction = failing_rows / total_rows if total_rows else 0.0
    if fraction >= thresholds.stop_at:
        return CheckOutcome.FAIL
    if fraction >= thresholds.warn_at:
        return CheckOutcome.WARN
    return CheckOutcome.PASS


def run_quality_checks(
    conn: duckdb.DuckDBPyConnection,
    settings: Settings,
    rules: tuple[TableRule, ...] = DEFAULT_RULES,
) -> QualityReport:
    """Run every rule against the staging tables that exist.

    Args:
        conn: DuckDB connection
        settings: Pipeline settings (quality section is used)
        rules: Table rules to apply

    Returns:
        QualityReport with one result per executed check

    Raises:
        CriticalQualityFailure: If any check failed and fail_on_critical is set
    """
    logger.info("Running data quality checks...")
    thresholds = settings.quality
    report = QualityReport()

    for rule in rules:
        if not table_exists(conn, rule.table):
            logger.debug(f"Skipping checks for missing table {rule.table}")
            continue
        report.results.extend(_check_table(conn, rule, thresholds))

    for result in report.results:
        _log_result(result)

    logger.info(
        f"Quality checks complete: {len(report.results)} checks, "
        f"{len(report.failed)} failures, {len(report.warned)} warnings"
    )

    if report.failed:
        if thresholds.fail_on_critical:
            logger.error("Critical data quality failures detected!")
            raise CriticalQualityFailure(report.failed_names, report)
        logger.warning(
            f"Quality failures ignored (fail_on_critical=false): {', '.join(report.failed_names)}"
        )

    return report


def _log_result(result: CheckResult) -> None:
    if result.outcome == CheckOutcome.FAIL:
        logger.error(f"✗ {result.name}: {result.message}")
    elif result.outcome == CheckOutcome.WARN:
        logger.warning(f"⚠ {result.name}: {result.message}")
    elif result.failing_rows:
        logger.info(f"✓ {result.name} (below threshold): {result.message}")
    else:
        logger.info(f"✓ {result.name}")


# =============================================================================
# CHECKS
# =============================================================================


def _check_table(
    conn: duckdb.DuckDBPyConnection, rule: TableRule, thresholds: QualityConfig
) -> list[CheckResult]:
    table = quote_identifier(rule.table)
    columns = set(table_columns(conn, rule.table))
    total = row_count(conn, rule.table)
    results: list[CheckResult] = []

    def _result(name: str, failing: int, message: str, severity: Severity) -> CheckResult:
        return CheckResult(
            name=name,
            table=rule.table,
            outcome=grade(failing, total, severity, thresholds),
            failing_rows=failing,
            total_rows=total,
            message=message,
            severity=severity,
        )

    key_suffix = "_".join(c.lower() for c in rule.primary_key)
    missing_key = [c for c in rule.primary_key if c not in columns]

    if missing_key:
        for check in ("not_null", "unique"):
            results.append(
                _result(
                    f"{rule.label}_{key_suffix}_{check}",
                    total or 1,
                    f"key column(s) missing from {rule.table}: {', '.join(missing_key)}",
                    Severity.CRITICAL,
                )
            )
    elif rule.primary_key:
        keys = [quote_identifier(c) for c in rule.primary_key]
        any_null = " OR ".join(f"{k} IS NULL" for k in keys)
        null_keys = conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {any_null}").fetchone()[0]
        results.append(
            _result(
                f"{rule.label}_{key_suffix}_not_null",
                null_keys,
                f"{null_keys} of {total} rows have a null {'/'.join(rule.primary_key)}",
                Severity.CRITICAL,
            )
        )

        all_set = " AND ".join(f"{k} IS NOT NULL" for k in keys)
        duplicates = conn.execute(
            f"SELECT COALESCE(SUM(n - 1), 0) FROM ("
            f"SELECT COUNT(*) AS n FROM {table} WHERE {all_set} "
            f"GROUP BY {', '.join(keys)} HAVING COUNT(*) > 1)"
        ).fetchone()[0]
        results.append(
            _result(
                f"{rule.label}_{key_suffix}_unique",
                int(duplicates),
                f"{int(duplicates)} duplicate {'/'.join(rule.primary_key)} row(s) in {rule.table}",
                Severity.CRITICAL,
            )
        )

    if rule.required_columns:
        missing = [c for c in rule.required_columns if c not in columns]
        if missing:
            failing = total
            message = f"required column(s) missing from {rule.table}: {', '.join(missing)}"
        else:
            any_null = " OR ".join(f"{quote_identifier(c)} IS NULL" for c in rule.required_columns)
            failing = conn.execute(f"SELECT COUNT(*) FROM {table} WHERE {any_null}").fetchone()[0]
            message = f"{failing} of {total} rows missing {'/'.join(rule.required_columns)}"
        results.append(
            _result(f"{rule.label}_required_not_null", failing, message, Severity.WARN_ONLY)
        )

    for column in rule.non_negative:
        if column not in columns:
            continue
        negative = conn.execute(
            f"SELECT COUNT(*) FROM {table} WHERE {quote_identifier(column)} < 0"
        ).fetchone()[0]
        results.append(
            _result(
                f"{rule.label}_{column.lower()}_non_negative",
                negative,
                f"{negative} of {total} rows have negative {column}",
                Severity.THRESHOLD,
            )
        )

    for fk in rule.foreign_keys:
        if fk.column not in columns or not table_exists(conn, fk.ref_table):
            continue
        if fk.ref_column not in table_columns(conn, fk.ref_table):
            continue
        column = quote_identifier(fk.column)
        orphans = conn.execute(
            f"SELECT COUNT(*) FROM {table} c "
            f"ANTI JOIN {quote_identifier(fk.ref_table)} r "
            f"ON c.{column} = r.{quote_identifier(fk.ref_column)} "
            f"WHERE c.{column} IS NOT NULL"
        ).fetchone()[0]
        results.append(
            _result(
                f"{rule.label}_{fk.column.lower()}_references_{fk.ref_table}",
                orphans,
                f"{orphans} of {total} rows reference a missing {fk.ref_table}.{fk.ref_column}",
                Severity.THRESHOLD,
            )
        )

    return results
