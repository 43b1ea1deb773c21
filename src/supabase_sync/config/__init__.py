"""Configuration for supabase-sync runs."""

from .sync_config import (
    AuthOptions,
    ComponentsConfig,
    ConnectionConfig,
    DatabaseOptions,
    StorageOptions,
    SyncConfig,
    SyncMode,
    SyncOptions,
)
from .loader import (
    ConfigError,
    apply_component_skips,
    config_from_env,
    deep_merge,
    find_config_file,
    is_ci_environment,
    load_config,
    validate_config,
)

__all__ = [
    'AuthOptions',
    'ComponentsConfig',
    'ConnectionConfig',
    'DatabaseOptions',
    'StorageOptions',
    'SyncConfig',
    'SyncMode',
    'SyncOptions',
    'ConfigError',
    'apply_component_skips',
    'config_from_env',
    'deep_merge',
    'find_config_file',
    'is_ci_environment',
    'load_config',
    'validate_config',
]
