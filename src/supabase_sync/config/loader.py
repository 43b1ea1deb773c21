"""
Configuration Loading
=====================

Builds a SyncConfig from three layers, lowest precedence first:

1. A YAML or JSON config file (explicit path or the first default that exists)
2. Environment variables (``.env`` is loaded with python-dotenv)
3. Explicit overrides, typically from CLI flags
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv

from .sync_config import SyncConfig, SyncMode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILES = (
    "sync-config.yaml",
    "sync-config.yml",
    "sync-config.json",
    ".supabase-sync.json",
)

CI_ENV_VARS = ("CI", "GITHUB_ACTIONS", "GITLAB_CI", "JENKINS_URL", "CIRCLECI", "TRAVIS")

_TRUE_VALUES = ("1", "true", "yes", "on")


class ConfigError(ValueError):
    """Raised when a config file cannot be read or parsed."""


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _parse_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


# env var -> (path into the config dict, parser)
ENV_MAPPING: Dict[str, tuple] = {}

for _side in ("source", "target"):
    _prefix = _side.upper()
    for _key in ("db_url", "api_url", "service_role_key", "anon_key",
                 "secret_key", "publishable_key"):
        ENV_MAPPING[f"{_prefix}_{_key.upper()}"] = ((_side, _key), str)

ENV_MAPPING.update({
    "SYNC_SCHEMA": (("options", "components", "schema"), _parse_bool),
    "SYNC_DATA": (("options", "components", "data"), _parse_bool),
    "SYNC_AUTH": (("options", "components", "auth"), _parse_bool),
    "SYNC_STORAGE": (("options", "components", "storage"), _parse_bool),
    "SYNC_ROLES": (("options", "components", "roles"), _parse_bool),
    "STORAGE_CONCURRENCY": (("options", "storage", "concurrency"), int),
    "STORAGE_MAX_FILE_SIZE_MB": (("options", "storage", "max_file_size_mb"), int),
    "STORAGE_EXCLUDE_BUCKETS": (("options", "storage", "exclude_buckets"), _parse_list),
    "DB_INCLUDE_SCHEMAS": (("options", "database", "include_schemas"), _parse_list),
    "DB_EXCLUDE_SCHEMAS": (("options", "database", "exclude_schemas"), _parse_list),
    "DB_EXCLUDE_TABLES": (("options", "database", "exclude_tables"), _parse_list),
    "AUTH_PRESERVE_PASSWORD_HASHES": (("options", "auth", "preserve_password_hashes"), _parse_bool),
    "AUTH_MIGRATE_IDENTITIES": (("options", "auth", "migrate_identities"), _parse_bool),
    "AUTH_SKIP_SESSIONS": (("options", "auth", "skip_sessions"), _parse_bool),
    "SYNC_MODE": (("mode",), str),
    "SYNC_DRY_RUN": (("dry_run",), _parse_bool),
    "SYNC_VERBOSE": (("verbose",), _parse_bool),
    "SYNC_TEMP_DIR": (("temp_dir",), str),
    "SYNC_LOG_FORMAT": (("log_format",), str),
})


def is_ci_environment(environ: Optional[Mapping[str, str]] = None) -> bool:
    """Detect whether we are running under a CI system."""
    environ = os.environ if environ is None else environ
    return any(environ.get(name) for name in CI_ENV_VARS)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _set_path(target: Dict[str, Any], path: tuple, value: Any) -> None:
    node = target
    for key in path[:-1]:
        node = node.setdefault(key, {})
    node[path[-1]] = value


def find_config_file(search_dir: Union[str, Path] = ".") -> Optional[Path]:
    """Return the first default config file present in ``search_dir``."""
    for name in DEFAULT_CONFIG_FILES:
        candidate = Path(search_dir) / name
        if candidate.is_file():
            return candidate
    return None


def load_config_file(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML or JSON config file into a dict.

    JSON is a subset of YAML, so both are read with ``yaml.safe_load``.

    Raises:
        ConfigError: If the file is missing, unreadable or not a mapping
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level")
    logger.debug(f"Loaded config file {path}")
    return data


def config_from_env(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Translate recognized environment variables into a config dict."""
    environ = os.environ if environ is None else environ
    result: Dict[str, Any] = {}
    for name, (path, parser) in ENV_MAPPING.items():
        raw = environ.get(name)
        if raw is None or raw == "":
            continue
        try:
            _set_path(result, path, parser(raw))
        except ValueError as e:
            raise ConfigError(f"Invalid value for {name}: {raw!r} ({e})") from e
    return result


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
) -> SyncConfig:
    """Load and merge configuration layers into a SyncConfig.

    Args:
        config_path: Explicit config file; when None the default names are searched
        overrides: Highest-precedence values (nested dict, same shape as the file)
        environ: Environment mapping, defaults to ``os.environ``
        use_dotenv: Load a ``.env`` file into the process environment first

    Returns:
        SyncConfig (not yet validated, see ``validate_config``)
    """
    if use_dotenv and environ is None:
        load_dotenv()
    environ = os.environ if environ is None else environ

    merged: Dict[str, Any] = {}
    path = Path(config_path) if config_path else find_config_file()
    if path is not None:
        merged = deep_merge(merged, load_config_file(path))
    elif config_path is None:
        logger.debug("No config file found, using environment only")

    merged = deep_merge(merged, config_from_env(environ))
    if "mode" not in merged and is_ci_environment(environ):
        merged["mode"] = SyncMode.CI.value
    if overrides:
        merged = deep_merge(merged, overrides)

    try:
        return SyncConfig.from_dict(merged)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def validate_config(config: SyncConfig) -> List[str]:
    """Check a SyncConfig before a run; returns human-readable problems."""
    errors = config.source.validate("source") + config.target.validate("target")

    if config.source.db_url and config.source.db_url == config.target.db_url:
        errors.append("source and target db_url must differ")

    database = config.options.database
    if not database.schemas:
        errors.append("options.database: no schemas left to sync after exclusions")
    for entry in database.exclude_tables:
        if "." not in entry:
            errors.append(
                f"options.database.exclude_tables: '{entry}' must be schema-qualified"
            )
    if not any(vars(config.options.components).values()):
        errors.append("options.components: every component is disabled")
    return errors


def apply_component_skips(overrides: Dict[str, Any], skips: Dict[str, bool]) -> Dict[str, Any]:
    """Turn ``--skip-<component>`` flags into component overrides."""
    for component, skipped in skips.items():
        if skipped:
            _set_path(overrides, ("options", "components", component), False)
    return overrides
