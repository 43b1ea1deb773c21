"""
PostgreSQL Connection Layer
===========================

Opens asyncpg pools against source and target databases with SSL
negotiation: SSL is tried first for remote hosts, and a host that rejects it
is remembered in an SslPreferenceCache so later pools skip the failed
attempt. Also provides the pinned-connection helper used whenever a session
setting (``session_replication_role``) must cover several statements.

Usage:
    cache = SslPreferenceCache()
    connector = PostgresConnector(cache)
    pool = await connector.create_pool(config.target.db_url, label="target")
    async with suspended_enforcement(pool) as conn:
        ...
"""

import asyncio
import ipaddress
import logging
import ssl
import urllib.parse
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Tuple

import asyncpg

from ..errors import ErrorCategory, SyncError
from ..utils.sql import qualified_name

logger = logging.getLogger(__name__)

POOL_MAX_SIZE = 5
CONNECT_TIMEOUT = 10.0
IDLE_LIFETIME = 30.0

LOOPBACK_NAMES = ("localhost",)

_SSL_MARKERS = ("ssl", "tls", "certificate")

# Never treated as SSL failures, even when the server message mentions SSL
_CREDENTIAL_ERRORS = (
    asyncpg.exceptions.InvalidPasswordError,
    asyncpg.exceptions.InvalidAuthorizationSpecificationError,
    asyncpg.exceptions.InsufficientPrivilegeError,
)

# Tables holding migration history; never truncated or overwritten
BOOKKEEPING_TABLES = ("schema_migrations", "migrations")

LIST_TABLES_QUERY = """
    SELECT schemaname, tablename
    FROM pg_catalog.pg_tables
    WHERE schemaname = ANY($1::text[])
      AND tablename <> ALL($2::text[])
    ORDER BY schemaname, tablename
"""


def get_host(db_url: str) -> str:
    return urllib.parse.urlparse(db_url).hostname or ""


def is_loopback_host(host: str) -> bool:
    """True for ``localhost`` and any loopback address (127.0.0.0/8, ::1)."""
    if not host:
        return False
    if host.lower() in LOOPBACK_NAMES:
        return True
    try:
        return ipaddress.ip_address(host.strip("[]")).is_loopback
    except ValueError:
        return False


def is_ssl_error(error: BaseException) -> bool:
    """Whether a connect failure looks like an SSL negotiation problem."""
    if isinstance(error, _CREDENTIAL_ERRORS):
        return False
    if isinstance(error, ssl.SSLError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _SSL_MARKERS)


def classify_connection_error(
    error: BaseException, label: str = "database", step: Optional[str] = None
) -> SyncError:
    """Map a connect failure to a categorized SyncError with an actionable hint."""
    if isinstance(error, SyncError):
        return error

    message = str(error)
    lowered = message.lower()

    if isinstance(error, (asyncpg.exceptions.InvalidPasswordError,
                          asyncpg.exceptions.InvalidAuthorizationSpecificationError)):
        category = ErrorCategory.AUTHENTICATION
        hint = "check the user and password in the database URL"
    elif isinstance(error, asyncpg.exceptions.InsufficientPrivilegeError):
        category = ErrorCategory.PERMISSION
        hint = "the database user lacks the required privileges"
    elif isinstance(error, asyncpg.exceptions.InvalidCatalogNameError):
        category = ErrorCategory.CONNECTION
        hint = "the database named in the URL does not exist"
    elif isinstance(error, (asyncio.TimeoutError, TimeoutError)) or "timeout" in lowered:
        category = ErrorCategory.TIMEOUT
        hint = "the server did not answer in time; check network access and firewall rules"
    elif isinstance(error, ConnectionRefusedError) or "refused" in lowered:
        category = ErrorCategory.CONNECTION
        hint = "the server refused the connection; check host and port"
    elif "name or service not known" in lowered or "nodename nor servname" in lowered \
            or "getaddrinfo" in lowered:
        category = ErrorCategory.CONNECTION
        hint = "the host name could not be resolved"
    elif is_ssl_error(error):
        category = ErrorCategory.CONNECTION
        hint = "SSL negotiation failed"
    else:
        category = ErrorCategory.CONNECTION
        hint = "could not connect"

    return SyncError(
        f"{label} connection failed: {hint} ({message or type(error).__name__})",
        category,
        step=step,
        original=error,
    )


class SslPreferenceCache:
    """Per-host memory of whether SSL worked; one instance per process."""

    def __init__(self):
        self._preferences: Dict[str, bool] = {}

    def get(self, host: str) -> Optional[bool]:
        return self._preferences.get(host)

    def set(self, host: str, use_ssl: bool) -> None:
        previous = self._preferences.get(host)
        if previous is not None and previous != use_ssl:
            logger.debug(f"SSL preference for {host} changed: {previous} -> {use_ssl}")
        self._preferences[host] = use_ssl

    def __contains__(self, host: str) -> bool:
        return host in self._preferences

    def __len__(self) -> int:
        return len(self._preferences)


def _permissive_ssl_context() -> ssl.SSLContext:
    # Hosted Postgres certificates are frequently not verifiable from CI runners
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


class PostgresConnector:
    """Creates asyncpg pools, negotiating SSL and remembering the outcome."""

    def __init__(
        self,
        ssl_cache: Optional[SslPreferenceCache] = None,
        max_size: int = POOL_MAX_SIZE,
        connect_timeout: float = CONNECT_TIMEOUT,
        pool_factory: Optional[Callable[..., Any]] = None,
    ):
        self.ssl_cache = ssl_cache if ssl_cache is not None else SslPreferenceCache()
        self.max_size = max_size
        self.connect_timeout = connect_timeout
        self._pool_factory = pool_factory or asyncpg.create_pool

    def should_use_ssl(self, db_url: str) -> bool:
        host = get_host(db_url)
        if is_loopback_host(host):
            return False
        cached = self.ssl_cache.get(host)
        return True if cached is None else cached

    async def _open(self, db_url: str, use_ssl: bool):
        return await self._pool_factory(
            db_url,
            min_size=1,
            max_size=self.max_size,
            max_inactive_connection_lifetime=IDLE_LIFETIME,
            timeout=self.connect_timeout,
            ssl=_permissive_ssl_context() if use_ssl else False,
        )

    async def create_pool(self, db_url: str, label: str = "database"):
        """
        Open a pool, falling back to plaintext once if SSL is rejected.

        Args:
            db_url: PostgreSQL URL
            label: Name used in log lines and errors (``source``/``target``)

        Returns:
            An asyncpg pool (or a compatible object from ``pool_factory``)

        Raises:
            SyncError: Classified failure; only SSL failures are retried
        """
        host = get_host(db_url)
        use_ssl = self.should_use_ssl(db_url)
        try:
            pool = await self._open(db_url, use_ssl)
        except Exception as e:
            if not (use_ssl and is_ssl_error(e)):
                raise classify_connection_error(e, label) from e
            logger.warning(f"{label}: SSL connection to {host} failed ({e}), retrying without SSL")
            self.ssl_cache.set(host, False)
            try:
                pool = await self._open(db_url, False)
            except Exception as retry_error:
                raise classify_connection_error(retry_error, label) from retry_error
            logger.info(f"{label}: connected to {host} without SSL")
            return pool

        if not is_loopback_host(host):
            self.ssl_cache.set(host, use_ssl)
        logger.info(f"{label}: connected to {host} ({'SSL' if use_ssl else 'no SSL'})")
        return pool


async def check_connection(pool, label: str = "database") -> bool:
    """Run a trivial query; raises a classified SyncError on failure."""
    try:
        async with pool.acquire() as conn:
            value = await conn.fetchval("SELECT 1")
    except SyncError:
        raise
    except Exception as e:
        raise classify_connection_error(e, label) from e
    return value == 1


async def list_tables(
    conn,
    schemas: Iterable[str],
    exclude: Iterable[str] = BOOKKEEPING_TABLES,
) -> List[Tuple[str, str]]:
    """(schema, table) pairs for ordinary tables in ``schemas``."""
    rows = await conn.fetch(LIST_TABLES_QUERY, list(schemas), list(exclude))
    return [(row["schemaname"], row["tablename"]) for row in rows]


async def count_rows(conn, schema: str, table: str) -> int:
    return await conn.fetchval(f"SELECT COUNT(*) FROM {qualified_name(schema, table)}")


@asynccontextmanager
async def suspended_enforcement(pool) -> AsyncIterator[Any]:
    """
    Pin one pooled connection with triggers and FK checks switched off.

    ``session_replication_role = replica`` is a session setting, so every
    statement that relies on it must run on the yielded connection. The
    setting is restored on every exit path; if restoring fails the
    connection is terminated so it can never be handed out again in the
    relaxed state.
    """
    conn = await pool.acquire()
    try:
        # replica mode skips FK triggers along with user triggers
        await conn.execute("SET session_replication_role = replica")
        logger.debug("Constraint enforcement suspended on pinned connection")
        yield conn
    finally:
        restored = False
        try:
            await conn.execute("SET session_replication_role = DEFAULT")
            restored = True
        except Exception as e:
            logger.error(f"Could not restore constraint enforcement, discarding connection: {e}")
        if not restored:
            conn.terminate()
        await pool.release(conn)
