"""
Sequence Reconciliation
=======================

A data-only reload copies rows but leaves sequences where they were on the
target, so the next insert would collide with an existing key. Every
sequence owned by a column (serial or identity) is moved to the column's
current maximum.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Tuple

from ..utils.sql import qualified_name, quote_ident
from .verify import VerificationReport, VerificationResult

logger = logging.getLogger(__name__)

FIND_SEQUENCES_QUERY = """
    SELECT
        ns.nspname AS schema_name,
        tab.relname AS table_name,
        attr.attname AS column_name,
        seq.relname AS sequence_name
    FROM pg_catalog.pg_class seq
    JOIN pg_catalog.pg_namespace ns ON ns.oid = seq.relnamespace
    JOIN pg_catalog.pg_depend dep
        ON dep.objid = seq.oid
        AND dep.classid = 'pg_catalog.pg_class'::regclass
        AND dep.refclassid = 'pg_catalog.pg_class'::regclass
        AND dep.deptype IN ('a', 'i')
    JOIN pg_catalog.pg_class tab ON tab.oid = dep.refobjid
    JOIN pg_catalog.pg_attribute attr
        ON attr.attrelid = tab.oid
        AND attr.attnum = dep.refobjsubid
    WHERE seq.relkind = 'S'
      AND ns.nspname = ANY($1::text[])
    ORDER BY ns.nspname, tab.relname, attr.attname
"""

SETVAL_QUERY = "SELECT pg_catalog.setval($1::text::regclass, $2, $3)"


@dataclass(frozen=True)
class SequenceInfo:
    schema_name: str
    table_name: str
    column_name: str
    sequence_name: str

    @property
    def sequence_ref(self) -> str:
        return qualified_name(self.schema_name, self.sequence_name)

    @property
    def label(self) -> str:
        return f"{self.schema_name}.{self.sequence_name}"


def reset_target(max_value: int) -> Tuple[int, bool]:
    """
    setval arguments for a column whose largest value is ``max_value``.

    ``(max, True)`` makes nextval return max + 1. An empty or non-positive
    column gets ``(1, False)`` so nextval returns 1.
    """
    if max_value is not None and max_value > 0:
        return max_value, True
    return 1, False


class SequenceSync:
    """Discovers owned sequences and aligns them with their columns."""

    def __init__(self, pool, schemas: Iterable[str], dry_run: bool = False):
        self.pool = pool
        self.schemas = list(schemas)
        self.dry_run = dry_run

    async def find_sequences(self, conn) -> List[SequenceInfo]:
        rows = await conn.fetch(FIND_SEQUENCES_QUERY, self.schemas)
        return [
            SequenceInfo(row["schema_name"], row["table_name"],
                         row["column_name"], row["sequence_name"])
            for row in rows
        ]

    async def _column_max(self, conn, info: SequenceInfo) -> int:
        return await conn.fetchval(
            f"SELECT COALESCE(MAX({quote_ident(info.column_name)}), 0) "
            f"FROM {qualified_name(info.schema_name, info.table_name)}"
        )

    async def reset_sequences(self) -> Dict[str, Any]:
        """Run setval for every owned sequence; per-sequence failures are collected."""
        reset = 0
        errors: List[str] = []
        async with self.pool.acquire() as conn:
            sequences = await self.find_sequences(conn)
            if self.dry_run:
                for info in sequences:
                    logger.info(f"[dry run] would reset {info.label} "
                                f"({info.table_name}.{info.column_name})")
                return {"dry_run": True, "sequences": [s.label for s in sequences]}

            for info in sequences:
                try:
                    max_value = await self._column_max(conn, info)
                    value, is_called = reset_target(max_value)
                    await conn.fetchval(SETVAL_QUERY, info.sequence_ref, value, is_called)
                    reset += 1
                    logger.debug(f"Sequence {info.label} set to {value} (is_called={is_called})")
                except Exception as e:
                    errors.append(f"{info.label}: {e}")
                    logger.warning(f"Could not reset sequence {info.label}: {e}")

        logger.info(f"Reset {reset}/{len(sequences)} sequences")
        return {"total": len(sequences), "reset": reset, "errors": errors}

    async def verify_sequences(self) -> VerificationReport:
        """Check that no sequence would hand out a value already in its column."""
        report = VerificationReport(name="Sequence verification")
        async with self.pool.acquire() as conn:
            for info in await self.find_sequences(conn):
                try:
                    max_value = await self._column_max(conn, info)
                    state = await conn.fetchrow(
                        f"SELECT last_value, is_called FROM {info.sequence_ref}"
                    )
                except Exception as e:
                    report.add_check(VerificationResult(info.label, passed=False, error=str(e)))
                    continue
                effective = state["last_value"] if state["is_called"] else state["last_value"] - 1
                report.add_check(VerificationResult(
                    check_name=info.label,
                    passed=effective >= max_value,
                    source_count=max_value,
                    target_count=effective,
                    details={"column": f"{info.table_name}.{info.column_name}"},
                ))
        report.log_report()
        return report
