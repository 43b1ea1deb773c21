"""
supabase-sync
=============

One-shot migration of a Supabase project to another: database roles,
schema, auth users, table data, sequences and storage objects.

Components:
    - SyncOrchestrator: Runs the ordered step pipeline and returns a SyncResult
    - SyncConfig / load_config: Configuration from file, environment and overrides
    - SyncError / ErrorCategory: Failure taxonomy shared by every step
"""

from .config import SyncConfig, load_config, validate_config
from .errors import ErrorCategory, SyncError
from .orchestrator import StepResult, SyncOrchestrator, SyncResult

__version__ = "0.1.0"

__all__ = [
    'SyncConfig',
    'load_config',
    'validate_config',
    'ErrorCategory',
    'SyncError',
    'StepResult',
    'SyncOrchestrator',
    'SyncResult',
]
