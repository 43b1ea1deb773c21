"""Shared utilities: SQL handling, temp artifacts, logging and formatting."""

from .formatting import format_bytes, format_duration, shorten
from .sql import (
    ApplyResult,
    apply_statements,
    is_safe_identifier,
    join_statements,
    qualified_name,
    quote_ident,
    split_sql_statements,
)
from .sync_logging import (
    StepEvent,
    StepStatus,
    log_step_event,
    sanitize_config,
    set_run_id,
    setup_logging,
)
from .temp_files import TempFileManager

__all__ = [
    'format_bytes',
    'format_duration',
    'shorten',
    'ApplyResult',
    'apply_statements',
    'is_safe_identifier',
    'join_statements',
    'qualified_name',
    'quote_ident',
    'split_sql_statements',
    'StepEvent',
    'StepStatus',
    'log_step_event',
    'sanitize_config',
    'set_run_id',
    'setup_logging',
    'TempFileManager',
]
