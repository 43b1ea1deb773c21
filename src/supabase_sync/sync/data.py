"""
Data Transfer
=============

Full replacement of table contents on the target:

1. Dump source rows (one INSERT per row)
2. Pin one target connection and suspend triggers and FK checks on it
3. Truncate every synced target table on that connection
4. Replay the dump on that connection, tolerating per-row errors
5. Restore enforcement (or discard the connection)

Truncation and reload share the pinned session because the relaxed
``session_replication_role`` only exists on that one connection.
"""

import logging
from typing import Any, Dict, List, Tuple

from ..clients.postgres import BOOKKEEPING_TABLES, list_tables, suspended_enforcement
from ..config import SyncConfig
from ..utils.sql import apply_statements, qualified_name, split_sql_statements
from ..utils.temp_files import TempFileManager
from .dump import SESSION_TABLES, PgDumpRunner
from .verify import RowCountVerifier

logger = logging.getLogger(__name__)


class DataSync:
    """Truncate-and-reload of all rows in the included schemas."""

    def __init__(self, config: SyncConfig, source_pool, target_pool,
                 dumper: PgDumpRunner, temp_files: TempFileManager):
        self.config = config
        self.source_pool = source_pool
        self.target_pool = target_pool
        self.dumper = dumper
        self.temp_files = temp_files

    @property
    def schemas(self) -> List[str]:
        return self.config.options.database.schemas

    @property
    def excluded_tables(self) -> List[str]:
        return list(self.config.options.database.exclude_tables)

    async def tables_to_clear(self, conn) -> List[Tuple[str, str]]:
        excluded = set(self.excluded_tables)
        return [
            (schema, table)
            for schema, table in await list_tables(conn, self.schemas, BOOKKEEPING_TABLES)
            if f"{schema}.{table}" not in excluded
        ]

    async def clear_target_data(self, conn) -> Dict[str, Any]:
        """Truncate synced tables on ``conn``; failures are warnings."""
        tables = await self.tables_to_clear(conn)
        truncated = 0
        failures: List[str] = []
        for schema, table in tables:
            try:
                await conn.execute(f"TRUNCATE TABLE {qualified_name(schema, table)} CASCADE")
                truncated += 1
            except Exception as e:
                failures.append(f"{schema}.{table}: {e}")
                logger.warning(f"Could not truncate {schema}.{table}: {e}")
        logger.info(f"Truncated {truncated}/{len(tables)} target tables")
        return {"truncated": truncated, "truncate_failures": failures}

    async def preview(self) -> Dict[str, Any]:
        async with self.target_pool.acquire() as conn:
            tables = await self.tables_to_clear(conn)
        logger.info(f"[dry run] would truncate and reload {len(tables)} target tables")
        return {"dry_run": True, "tables": [f"{s}.{t}" for s, t in tables]}

    async def sync(self) -> Dict[str, Any]:
        if self.config.dry_run:
            return await self.preview()

        dump_file = self.temp_files.create_file("data")
        await self.dumper.dump_data(
            self.config.source.db_url, self.schemas, self.excluded_tables, dump_file
        )
        statements = split_sql_statements(self.temp_files.read_text(dump_file))
        logger.info(f"Data dump: {len(statements)} statements")

        async with suspended_enforcement(self.target_pool) as conn:
            cleared = await self.clear_target_data(conn)
            result = await apply_statements(conn, statements, label="data import")

        verifier = RowCountVerifier(
            self.source_pool, self.target_pool, self.schemas,
            exclude_tables=[*SESSION_TABLES, *self.excluded_tables],
        )
        report = await verifier.verify_row_counts()

        details = result.to_dict()
        details.update(cleared)
        details["verification"] = report.to_dict()
        return details
