"""
Post-Load Verification
======================

Compares per-table row counts between source and target after the data
reload. Mismatches are reported, never fatal: a source that keeps receiving
writes during the run will legitimately drift.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..clients.postgres import count_rows, list_tables

logger = logging.getLogger(__name__)

MAX_LOGGED_MISMATCHES = 20


@dataclass
class VerificationResult:
    """Result of one check (a table's row count, a sequence position)."""

    check_name: str
    passed: bool
    source_count: int = 0
    target_count: int = 0
    details: dict = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def summary(self) -> str:
        status = "✓" if self.passed else "✗"
        msg = f"{status} {self.check_name}"
        if self.error:
            msg += f" - error: {self.error}"
        elif not self.passed:
            msg += f" - source={self.source_count}, target={self.target_count}"
        return msg


@dataclass
class VerificationReport:
    """Collection of checks for one verification pass."""

    name: str
    checks: List[VerificationResult] = field(default_factory=list)
    passed: bool = True
    total_checks: int = 0
    failed_checks: int = 0

    def add_check(self, result: VerificationResult) -> None:
        self.checks.append(result)
        self.total_checks += 1
        if not result.passed:
            self.failed_checks += 1
            self.passed = False

    @property
    def failures(self) -> List[VerificationResult]:
        return [c for c in self.checks if not c.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "total_checks": self.total_checks,
            "failed_checks": self.failed_checks,
            "mismatches": [
                {
                    "check": c.check_name,
                    "source": c.source_count,
                    "target": c.target_count,
                    "error": c.error,
                }
                for c in self.failures
            ],
        }

    def log_report(self, max_logged: int = MAX_LOGGED_MISMATCHES) -> None:
        """Log the outcome, listing at most ``max_logged`` failures."""
        if self.passed:
            logger.info(f"{self.name}: all {self.total_checks} checks passed")
            return
        logger.warning(f"{self.name}: {self.failed_checks}/{self.total_checks} checks failed")
        for check in self.failures[:max_logged]:
            logger.warning(f"  {check.summary}")
        if self.failed_checks > max_logged:
            logger.warning(f"  ... and {self.failed_checks - max_logged} more")


class RowCountVerifier:
    """Compares row counts of every synced table on source and target."""

    def __init__(self, source_pool, target_pool, schemas: Iterable[str],
                 exclude_tables: Iterable[str] = ()):
        self.source_pool = source_pool
        self.target_pool = target_pool
        self.schemas = list(schemas)
        self.exclude_tables = set(exclude_tables)

    async def verify_row_counts(self) -> VerificationReport:
        report = VerificationReport(name="Row count verification")

        async with self.source_pool.acquire() as source_conn, \
                self.target_pool.acquire() as target_conn:
            tables = await list_tables(source_conn, self.schemas)
            for schema, table in tables:
                qualified = f"{schema}.{table}"
                if qualified in self.exclude_tables:
                    continue
                try:
                    source_count = await count_rows(source_conn, schema, table)
                    target_count = await count_rows(target_conn, schema, table)
                except Exception as e:
                    report.add_check(VerificationResult(
                        check_name=qualified, passed=False, error=str(e),
                    ))
                    continue
                report.add_check(VerificationResult(
                    check_name=qualified,
                    passed=source_count == target_count,
                    source_count=source_count,
                    target_count=target_count,
                ))

        report.log_report()
        return report
