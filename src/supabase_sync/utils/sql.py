"""
SQL Script Handling
===================

Helpers for working with the plain-text SQL that pg_dump and pg_dumpall
produce: identifier quoting, statement splitting and a tolerant, statement by
statement applier that keeps going after individual failures.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Sequence

from ..errors import ErrorCategory, SyncError
from .formatting import shorten

logger = logging.getLogger(__name__)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_DOLLAR_TAG = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)?\$")

MAX_LOGGED_ERRORS = 10
ALREADY_EXISTS = "already exists"


def is_safe_identifier(name: str) -> bool:
    """True for plain identifiers that need no escaping beyond quoting."""
    return bool(name) and IDENTIFIER_PATTERN.match(name) is not None


def quote_ident(name: str) -> str:
    """Quote an identifier the way PostgreSQL's quote_ident does, always."""
    return '"' + name.replace('"', '""') + '"'


def qualified_name(schema: str, name: str) -> str:
    return f"{quote_ident(schema)}.{quote_ident(name)}"


def _is_word_char(ch: str) -> bool:
    return ch.isalnum() or ch == "_"


def _end_of_single_quoted(script: str, start: int, backslash_escapes: bool) -> int:
    """Index just past the closing quote of the literal opened at ``start``."""
    i = start + 1
    n = len(script)
    while i < n:
        ch = script[i]
        if backslash_escapes and ch == "\\":
            i += 2
            continue
        if ch == "'":
            if i + 1 < n and script[i + 1] == "'":
                i += 2
                continue
            return i + 1
        i += 1
    return n


def _end_of_block_comment(script: str, start: int) -> int:
    # PostgreSQL block comments nest
    depth = 0
    i = start
    n = len(script)
    while i < n:
        pair = script[i:i + 2]
        if pair == "/*":
            depth += 1
            i += 2
        elif pair == "*/":
            depth -= 1
            i += 2
            if depth == 0:
                return i
        else:
            i += 1
    return n


def split_sql_statements(script: str) -> List[str]:
    """
    Split a SQL script into individual statements.

    Semicolons inside single-quoted literals (including E'' strings),
    double-quoted identifiers, dollar-quoted bodies and comments do not end a
    statement. Comments outside statements are dropped, as are psql
    meta-command lines (``\\connect``, ``\\restrict`` ...) which only psql
    understands.

    Args:
        script: Full SQL text

    Returns:
        Statements without their trailing semicolon, whitespace-stripped,
        empty ones omitted
    """
    statements: List[str] = []
    chunks: List[str] = []
    i = 0
    n = len(script)

    def flush() -> None:
        statement = "".join(chunks).strip()
        chunks.clear()
        if statement:
            statements.append(statement)

    while i < n:
        ch = script[i]
        nxt = script[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            end = script.find("\n", i)
            i = n if end == -1 else end
            continue

        if ch == "/" and nxt == "*":
            i = _end_of_block_comment(script, i)
            chunks.append(" ")
            continue

        if ch == "\\" and (i == 0 or script[i - 1] == "\n") and not "".join(chunks).strip():
            end = script.find("\n", i)
            i = n if end == -1 else end
            continue

        if ch == "'":
            escaped = (
                i >= 1 and script[i - 1] in "Ee"
                and (i < 2 or not _is_word_char(script[i - 2]))
            )
            end = _end_of_single_quoted(script, i, escaped)
            chunks.append(script[i:end])
            i = end
            continue

        if ch == '"':
            end = i + 1
            while end < n:
                if script[end] == '"':
                    if end + 1 < n and script[end + 1] == '"':
                        end += 2
                        continue
                    break
                end += 1
            chunks.append(script[i:end + 1])
            i = end + 1
            continue

        if ch == "$" and (i == 0 or not _is_word_char(script[i - 1])):
            match = _DOLLAR_TAG.match(script, i)
            if match:
                tag = match.group(0)
                close = script.find(tag, match.end())
                end = n if close == -1 else close + len(tag)
                chunks.append(script[i:end])
                i = end
                continue

        if ch == ";":
            flush()
            i += 1
            continue

        chunks.append(ch)
        i += 1

    flush()
    return statements


def join_statements(statements: Iterable[str]) -> str:
    """Inverse of ``split_sql_statements`` for writing filtered scripts."""
    return "".join(f"{statement};\n" for statement in statements)


@dataclass
class ApplyResult:
    """Outcome of applying a batch of statements where failures are tolerated."""

    label: str
    total: int = 0
    applied: int = 0
    ignored: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def summary(self) -> str:
        msg = f"{self.label}: {self.applied}/{self.total} applied"
        if self.ignored:
            msg += f", {self.ignored} already present"
        if self.failed:
            msg += f", {self.failed} failed"
        return msg

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "applied": self.applied,
            "ignored": self.ignored,
            "failed": self.failed,
            "errors": list(self.errors),
        }


async def apply_statements(
    conn,
    statements: Sequence[str],
    label: str,
    use_savepoints: bool = False,
    max_logged_errors: int = MAX_LOGGED_ERRORS,
) -> ApplyResult:
    """
    Execute statements one at a time on ``conn``, never stopping on errors.

    "already exists" failures are counted as ignored. Other failures are
    recorded; the first ``max_logged_errors`` are logged and the rest only
    counted. With ``use_savepoints`` every statement runs in a nested
    transaction so the caller's enclosing transaction survives a failure.

    Raises:
        SyncError: Only when the connection itself is lost
    """
    result = ApplyResult(label=label, total=len(statements))

    for statement in statements:
        try:
            if use_savepoints:
                async with conn.transaction():
                    await conn.execute(statement)
            else:
                await conn.execute(statement)
            result.applied += 1
        except Exception as e:
            if conn.is_closed():
                raise SyncError(
                    f"{label}: connection lost after {result.applied} statements",
                    ErrorCategory.CONNECTION,
                    original=e,
                ) from e
            message = str(e)
            if ALREADY_EXISTS in message:
                result.ignored += 1
                continue
            result.failed += 1
            result.errors.append(message)
            if result.failed <= max_logged_errors:
                logger.warning(f"{label}: {shorten(message)} in: {shorten(statement, 120)}")

    if result.failed > max_logged_errors:
        logger.warning(
            f"{label}: {result.failed - max_logged_errors} more errors not shown"
        )
    logger.info(result.summary)
    return result
