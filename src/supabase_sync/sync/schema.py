"""
Schema Transfer
===============

Replays the source's DDL on the target. The dump is sanitized first:
ownership, privileges and extension management belong to the platform, and
policies on platform-reserved schemas are managed there too. The sanitized
statements run inside one transaction with a savepoint per statement, so
objects that already exist on the target are skipped without losing the rest.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Tuple

from ..clients.postgres import list_tables
from ..config import SyncConfig
from ..utils.sql import apply_statements, join_statements, split_sql_statements
from ..utils.temp_files import TempFileManager
from .dump import PgDumpRunner

logger = logging.getLogger(__name__)

PLATFORM_SCHEMAS = ("auth", "storage", "realtime")

_policy_schemas = "|".join(PLATFORM_SCHEMAS)

STRIP_PATTERNS = [
    re.compile(r"^CREATE\s+EXTENSION\b", re.IGNORECASE),
    re.compile(r"^COMMENT\s+ON\s+EXTENSION\b", re.IGNORECASE),
    re.compile(r"^ALTER\s+.*\s+OWNER\s+TO\s+", re.IGNORECASE | re.DOTALL),
    re.compile(r"^GRANT\b", re.IGNORECASE),
    re.compile(r"^REVOKE\b", re.IGNORECASE),
    re.compile(r"^ALTER\s+DEFAULT\s+PRIVILEGES\b", re.IGNORECASE),
    re.compile(
        rf'^CREATE\s+POLICY\s+(?:"(?:[^"]|"")+"|[^"\s]\S*)\s+ON\s+"?(?:{_policy_schemas})"?\s*\.',
        re.IGNORECASE,
    ),
]


def sanitize_schema_statements(statements: Iterable[str]) -> Tuple[List[str], int]:
    """Remove statements the target platform owns; returns (kept, removed count)."""
    kept = []
    removed = 0
    for statement in statements:
        if any(pattern.match(statement) for pattern in STRIP_PATTERNS):
            removed += 1
            continue
        kept.append(statement)
    return kept, removed


class SchemaSync:
    """Dump, sanitize and apply the source schema."""

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

    async def preview(self) -> Dict[str, Any]:
        async with self.source_pool.acquire() as conn:
            tables = await list_tables(conn, self.schemas, exclude=())
        by_schema: Dict[str, int] = {}
        for schema, _ in tables:
            by_schema[schema] = by_schema.get(schema, 0) + 1
        for schema in self.schemas:
            logger.info(f"[dry run] schema {schema}: {by_schema.get(schema, 0)} tables")
        return {"dry_run": True, "tables_per_schema": by_schema}

    async def sync(self) -> Dict[str, Any]:
        if self.config.dry_run:
            return await self.preview()

        dump_file = self.temp_files.create_file("schema")
        await self.dumper.dump_schema(self.config.source.db_url, self.schemas, dump_file)

        statements = split_sql_statements(self.temp_files.read_text(dump_file))
        kept, removed = sanitize_schema_statements(statements)
        logger.info(f"Schema dump: {len(statements)} statements, {removed} removed by sanitizer")

        sanitized_file = self.temp_files.create_file("schema-sanitized")
        self.temp_files.write_text(sanitized_file, join_statements(kept))

        async with self.target_pool.acquire() as conn:
            async with conn.transaction():
                result = await apply_statements(conn, kept, label="schema", use_savepoints=True)

        details = result.to_dict()
        details["sanitized"] = removed
        return details
