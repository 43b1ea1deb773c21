"""
Auth Identity Transfer
======================

Copies ``auth.users`` and ``auth.identities`` so users keep their ids,
metadata and (by default) their password hashes. The target's auth tables
are cleared and refilled on one pinned connection with triggers suspended,
because identity rows reference users and platform triggers on
``auth.users`` would otherwise fire for every insert.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

from ..clients.postgres import suspended_enforcement
from ..config import SyncConfig
from ..errors import ErrorCategory, SyncError
from ..utils.formatting import shorten

logger = logging.getLogger(__name__)

USER_COLUMNS = (
    "id", "email", "phone", "encrypted_password", "email_confirmed_at",
    "phone_confirmed_at", "raw_user_meta_data", "raw_app_meta_data",
    "created_at", "updated_at", "banned_until", "confirmation_token",
    "recovery_token", "email_change_token_new", "email_change",
)

IDENTITY_COLUMNS = (
    "id", "user_id", "identity_data", "provider", "provider_id",
    "last_sign_in_at", "created_at", "updated_at",
)

JSON_COLUMNS = frozenset({"raw_user_meta_data", "raw_app_meta_data", "identity_data"})

DEFAULT_INSTANCE_ID = "00000000-0000-0000-0000-000000000000"
AUTHENTICATED = "authenticated"

MAX_LOGGED_ERRORS = 10


def _upsert_statement(table: str, columns: Sequence[str], update_columns: Sequence[str],
                      fixed: Dict[str, str] = None) -> str:
    fixed = fixed or {}
    names = list(fixed) + list(columns)
    values = list(fixed.values()) + [f"${i}" for i in range(1, len(columns) + 1)]
    updates = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
    return (
        f"INSERT INTO {table} ({', '.join(names)}) VALUES ({', '.join(values)}) "
        f"ON CONFLICT (id) DO UPDATE SET {updates}"
    )


USER_UPSERT = _upsert_statement(
    "auth.users",
    USER_COLUMNS,
    [c for c in USER_COLUMNS if c != "id"],
    fixed={
        "instance_id": f"'{DEFAULT_INSTANCE_ID}'",
        "aud": f"'{AUTHENTICATED}'",
        "role": f"'{AUTHENTICATED}'",
    },
)

IDENTITY_UPSERT = _upsert_statement(
    "auth.identities",
    IDENTITY_COLUMNS,
    ("identity_data", "last_sign_in_at", "updated_at"),
)

EXPORT_USERS_QUERY = f"SELECT {', '.join(USER_COLUMNS)} FROM auth.users ORDER BY created_at"
EXPORT_IDENTITIES_QUERY = (
    f"SELECT {', '.join(IDENTITY_COLUMNS)} FROM auth.identities ORDER BY created_at"
)


@dataclass
class AuthSyncResult:
    users_total: int = 0
    users_imported: int = 0
    identities_total: int = 0
    identities_imported: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "users_total": self.users_total,
            "users_imported": self.users_imported,
            "identities_total": self.identities_total,
            "identities_imported": self.identities_imported,
            "errors": list(self.errors),
        }


def _param(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


class AuthSync:
    """Moves auth users and identities from source to target."""

    def __init__(self, config: SyncConfig, source_pool, target_pool):
        self.config = config
        self.options = config.options.auth
        self.source_pool = source_pool
        self.target_pool = target_pool

    async def preview(self) -> Dict[str, Any]:
        async with self.source_pool.acquire() as conn:
            users = await conn.fetchval("SELECT COUNT(*) FROM auth.users")
            identities = await conn.fetchval("SELECT COUNT(*) FROM auth.identities")
        logger.info(f"[dry run] would sync {users} users and {identities} identities")
        return {"dry_run": True, "users": users, "identities": identities}

    async def export(self):
        async with self.source_pool.acquire() as conn:
            users = await conn.fetch(EXPORT_USERS_QUERY)
            identities = []
            if self.options.migrate_identities:
                identities = await conn.fetch(EXPORT_IDENTITIES_QUERY)
        logger.info(f"Exported {len(users)} users and {len(identities)} identities")
        return users, identities

    async def clear_target(self, conn) -> None:
        tables = ["auth.identities", "auth.users"]
        if self.options.skip_sessions:
            tables = ["auth.refresh_tokens", "auth.sessions"] + tables
        for table in tables:
            try:
                await conn.execute(f"TRUNCATE TABLE {table} CASCADE")
            except Exception as e:
                raise SyncError(f"Could not clear {table} on target: {e}",
                                ErrorCategory.IMPORT, original=e) from e

    def _user_params(self, row) -> List[Any]:
        params = [_param(col, row[col]) for col in USER_COLUMNS]
        if not self.options.preserve_password_hashes:
            params[USER_COLUMNS.index("encrypted_password")] = None
        return params

    async def _import_rows(self, conn, statement: str, rows, columns: Sequence[str],
                           kind: str, result: AuthSyncResult) -> int:
        imported = 0
        for row in rows:
            if kind == "user":
                params = self._user_params(row)
            else:
                params = [_param(col, row[col]) for col in columns]
            try:
                await conn.execute(statement, *params)
                imported += 1
            except Exception as e:
                result.errors.append(f"{kind} {row['id']}: {e}")
                if len(result.errors) <= MAX_LOGGED_ERRORS:
                    logger.warning(f"Failed to import {kind} {row['id']}: {shorten(str(e))}")
        return imported

    async def sync(self) -> Dict[str, Any]:
        if self.config.dry_run:
            return await self.preview()

        users, identities = await self.export()
        result = AuthSyncResult(users_total=len(users), identities_total=len(identities))
        if not self.options.preserve_password_hashes:
            logger.warning("Password hashes are not carried over; users must reset passwords")

        async with suspended_enforcement(self.target_pool) as conn:
            await self.clear_target(conn)
            result.users_imported = await self._import_rows(
                conn, USER_UPSERT, users, USER_COLUMNS, "user", result)
            result.identities_imported = await self._import_rows(
                conn, IDENTITY_UPSERT, identities, IDENTITY_COLUMNS, "identity", result)

        if len(result.errors) > MAX_LOGGED_ERRORS:
            logger.warning(f"{len(result.errors) - MAX_LOGGED_ERRORS} more auth import errors")
        logger.info(
            f"Auth: {result.users_imported}/{result.users_total} users, "
            f"{result.identities_imported}/{result.identities_total} identities imported"
        )
        return result.to_dict()
