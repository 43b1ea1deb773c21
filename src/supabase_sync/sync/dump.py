"""
Dump Tool Runner
================

Runs ``pg_dump`` and ``pg_dumpall`` as subprocesses, writing plain SQL into
files owned by the TempFileManager. Any non-zero exit is an export failure
and aborts the step that asked for the dump.
"""

import asyncio
import logging
import os
import shutil
import urllib.parse
from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple

from ..errors import ErrorCategory, SyncError
from ..utils.formatting import shorten

logger = logging.getLogger(__name__)

# Session tables are never exported; tokens are only valid on the source
SESSION_TABLES = ("auth.sessions", "auth.refresh_tokens")

COMMON_DUMP_FLAGS = ("--no-owner", "--no-privileges", "--quote-all-identifiers")


def split_password(db_url: str) -> Tuple[str, Optional[str]]:
    """Remove the password from a database URL, returning it separately (decoded)."""
    parts = urllib.parse.urlsplit(db_url)
    if parts.password is None:
        return db_url, None
    userinfo, hostport = parts.netloc.rsplit("@", 1)
    user = userinfo.split(":", 1)[0]
    netloc = f"{user}@{hostport}" if user else hostport
    return parts._replace(netloc=netloc).geturl(), urllib.parse.unquote(parts.password)


class PgDumpRunner:
    """Invokes the PostgreSQL client dump tools."""

    def __init__(self, pg_dump: str = "pg_dump", pg_dumpall: str = "pg_dumpall",
                 timeout: Optional[float] = None):
        self.pg_dump = pg_dump
        self.pg_dumpall = pg_dumpall
        self.timeout = timeout

    def missing_tools(self) -> List[str]:
        """Names of required tools that are missing from PATH."""
        return [tool for tool in (self.pg_dump, self.pg_dumpall) if shutil.which(tool) is None]

    async def _run(self, args: Sequence[str], label: str, password: Optional[str] = None) -> None:
        logger.debug(f"Running {args[0]} for {label}")
        # The password is never put on the command line
        env = {**os.environ, "PGPASSWORD": password} if password else None
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as e:
            raise SyncError(f"{args[0]} not found on PATH; install the PostgreSQL client tools",
                            ErrorCategory.EXPORT, original=e) from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise SyncError(f"{label} timed out after {self.timeout}s",
                            ErrorCategory.TIMEOUT, original=e) from e

        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise SyncError(f"{label} failed (exit {process.returncode}): {shorten(detail, 500)}",
                            ErrorCategory.EXPORT)

    async def dump_schema(self, db_url: str, schemas: Iterable[str], output: Path) -> Path:
        db_url, password = split_password(db_url)
        args = [self.pg_dump, "--dbname", db_url, "--schema-only", *COMMON_DUMP_FLAGS,
                "--no-publications", "--no-subscriptions", "--file", str(output)]
        args += [f"--schema={schema}" for schema in schemas]
        await self._run(args, "Schema dump", password)
        return output

    async def dump_data(self, db_url: str, schemas: Iterable[str],
                        exclude_tables: Iterable[str], output: Path) -> Path:
        db_url, password = split_password(db_url)
        # --column-inserts makes every row its own statement so a bad row fails alone
        args = [self.pg_dump, "--dbname", db_url, "--data-only", "--column-inserts",
                *COMMON_DUMP_FLAGS, "--file", str(output)]
        args += [f"--schema={schema}" for schema in schemas]
        excluded = list(dict.fromkeys([*SESSION_TABLES, *exclude_tables]))
        args += [f"--exclude-table={table}" for table in excluded]
        await self._run(args, "Data dump", password)
        return output

    async def dump_roles(self, db_url: str, output: Path) -> Path:
        db_url, password = split_password(db_url)
        args = [self.pg_dumpall, "--dbname", db_url, "--roles-only", "--file", str(output)]
        await self._run(args, "Roles dump", password)
        return output
