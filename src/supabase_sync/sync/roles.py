"""
Roles Transfer
==============

Copies custom database roles from source to target. Platform-managed roles
already exist on every instance and must not be recreated or altered, so the
``pg_dumpall --roles-only`` output is filtered before it is applied.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..config import SyncConfig
from ..utils.sql import apply_statements, join_statements, split_sql_statements
from ..utils.temp_files import TempFileManager
from .dump import PgDumpRunner

logger = logging.getLogger(__name__)

SYSTEM_ROLES = frozenset({
    "postgres",
    "supabase_admin",
    "supabase_auth_admin",
    "supabase_storage_admin",
    "supabase_functions_admin",
    "supabase_realtime_admin",
    "supabase_replication_admin",
    "supabase_read_only_user",
    "supabase_etl_admin",
    "authenticator",
    "anon",
    "authenticated",
    "service_role",
    "dashboard_user",
    "pgbouncer",
    "pgsodium_keyholder",
    "pgsodium_keyiduser",
    "pgsodium_keymaker",
})

_ROLE_STATEMENT = re.compile(
    r'^\s*(?:CREATE|ALTER)\s+ROLE\s+("(?:[^"]|"")+"|[^\s;]+)',
    re.IGNORECASE,
)

SOURCE_ROLES_QUERY = "SELECT rolname FROM pg_catalog.pg_roles ORDER BY rolname"


def is_reserved_role(name: str) -> bool:
    return name in SYSTEM_ROLES or name.startswith("pg_")


def role_subject(statement: str) -> Optional[str]:
    """
    Role a CREATE ROLE / ALTER ROLE statement is about, or None.

    Quoted names are taken verbatim; unquoted names fold to lower case the
    way the server folds them.
    """
    match = _ROLE_STATEMENT.match(statement)
    if not match:
        return None
    name = match.group(1)
    if name.startswith('"'):
        return name[1:-1].replace('""', '"')
    return name.lower()


def filter_role_statements(statements: Iterable[str]) -> Tuple[List[str], List[str]]:
    """
    Drop CREATE/ALTER ROLE statements whose subject is a reserved role.

    Returns:
        (kept statements, names of the roles whose statements were dropped)
    """
    kept: List[str] = []
    dropped: List[str] = []
    for statement in statements:
        subject = role_subject(statement)
        if subject is not None and is_reserved_role(subject):
            dropped.append(subject)
            continue
        kept.append(statement)
    return kept, dropped


class RolesSync:
    """Dump, filter and replay custom roles."""

    def __init__(self, config: SyncConfig, source_pool, target_pool,
                 dumper: PgDumpRunner, temp_files: TempFileManager):
        self.config = config
        self.source_pool = source_pool
        self.target_pool = target_pool
        self.dumper = dumper
        self.temp_files = temp_files

    async def preview(self) -> Dict[str, Any]:
        async with self.source_pool.acquire() as conn:
            rows = await conn.fetch(SOURCE_ROLES_QUERY)
        custom = [row["rolname"] for row in rows if not is_reserved_role(row["rolname"])]
        logger.info(f"[dry run] would sync {len(custom)} custom roles: {', '.join(custom) or 'none'}")
        return {"dry_run": True, "roles": custom}

    async def sync(self) -> Dict[str, Any]:
        if self.config.dry_run:
            return await self.preview()

        dump_file = self.temp_files.create_file("roles")
        await self.dumper.dump_roles(self.config.source.db_url, dump_file)

        statements = split_sql_statements(self.temp_files.read_text(dump_file))
        kept, dropped = filter_role_statements(statements)
        logger.info(
            f"Roles dump: {len(statements)} statements, "
            f"{len(dropped)} reserved-role statements removed"
        )
        filtered_file = self.temp_files.create_file("roles-filtered")
        self.temp_files.write_text(filtered_file, join_statements(kept))

        async with self.target_pool.acquire() as conn:
            result = await apply_statements(conn, kept, label="roles")

        details = result.to_dict()
        details["filtered"] = len(dropped)
        return details
