"""Configuration dataclasses for a source-to-target sync run.

A SyncConfig holds two ConnectionConfig endpoints plus the options that gate
and tune each pipeline step. Instances are built by ``load_config`` from a
config file, the environment and CLI overrides, and are treated as read-only
once a run starts.
"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional
import urllib.parse

LEGACY_KEY_SCHEME = "legacy"
NEW_KEY_SCHEME = "new"

SECRET_KEY_PREFIX = "sb_secret_"
PUBLISHABLE_KEY_PREFIX = "sb_publishable_"

DEFAULT_TEMP_DIR = "/tmp/supabase-sync"


class SyncMode(str, Enum):
    """How the run interacts with the operator."""

    CI = "ci"
    INTERACTIVE = "interactive"

    @classmethod
    def from_string(cls, value: str) -> "SyncMode":
        """Parse sync mode from string (case-insensitive)."""
        value_lower = value.lower().strip()
        for member in cls:
            if member.value == value_lower:
                return member
        raise ValueError(
            f"Invalid sync mode: {value}. Valid modes: {[m.value for m in cls]}"
        )


def _is_jwt(value: str) -> bool:
    parts = value.split(".")
    return len(parts) == 3 and all(parts)


def _mask_url_password(url: str) -> str:
    parsed = urllib.parse.urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.netloc.replace(f":{parsed.password}@", ":****@", 1)
    return urllib.parse.urlunparse(parsed._replace(netloc=netloc))


@dataclass
class ConnectionConfig:
    """One endpoint of a sync: a database URL, an API URL and credentials.

    Exactly one credential scheme may be used: legacy JWT keys
    (``service_role_key`` with optional ``anon_key``) or the newer opaque keys
    (``secret_key`` with optional ``publishable_key``).
    """

    db_url: str = ""
    api_url: str = ""
    service_role_key: Optional[str] = None
    anon_key: Optional[str] = None
    secret_key: Optional[str] = None
    publishable_key: Optional[str] = None

    @property
    def key_scheme(self) -> Optional[str]:
        """Return the credential scheme in use, or None if none is set."""
        legacy = bool(self.service_role_key or self.anon_key)
        new = bool(self.secret_key or self.publishable_key)
        if legacy and not new:
            return LEGACY_KEY_SCHEME
        if new and not legacy:
            return NEW_KEY_SCHEME
        return None

    @property
    def api_key(self) -> Optional[str]:
        """The privileged key used for storage API calls."""
        return self.service_role_key or self.secret_key

    @property
    def host(self) -> str:
        return urllib.parse.urlparse(self.db_url).hostname or ""

    def validate(self, label: str) -> List[str]:
        """Return a list of problems with this endpoint, empty when valid."""
        errors = []
        if not self.db_url:
            errors.append(f"{label}: db_url is required")
        elif not self.db_url.startswith(("postgresql://", "postgres://")):
            errors.append(f"{label}: db_url must start with postgresql:// or postgres://")

        if not self.api_url:
            errors.append(f"{label}: api_url is required")
        elif not self.api_url.startswith(("http://", "https://")):
            errors.append(f"{label}: api_url must start with http:// or https://")

        legacy = bool(self.service_role_key or self.anon_key)
        new = bool(self.secret_key or self.publishable_key)
        if legacy and new:
            errors.append(
                f"{label}: legacy keys (service_role_key/anon_key) and new keys "
                f"(secret_key/publishable_key) cannot be mixed"
            )
        elif not legacy and not new:
            errors.append(f"{label}: service_role_key or secret_key is required")
        elif legacy:
            if not self.service_role_key:
                errors.append(f"{label}: service_role_key is required with legacy keys")
            elif not _is_jwt(self.service_role_key):
                errors.append(f"{label}: service_role_key does not look like a JWT")
            if self.anon_key and not _is_jwt(self.anon_key):
                errors.append(f"{label}: anon_key does not look like a JWT")
        else:
            if not self.secret_key:
                errors.append(f"{label}: secret_key is required with new keys")
            elif not self.secret_key.startswith(SECRET_KEY_PREFIX):
                errors.append(f"{label}: secret_key must start with {SECRET_KEY_PREFIX}")
            if self.publishable_key and not self.publishable_key.startswith(PUBLISHABLE_KEY_PREFIX):
                errors.append(
                    f"{label}: publishable_key must start with {PUBLISHABLE_KEY_PREFIX}"
                )
        return errors

    def safe_display(self) -> str:
        """Database URL with the password masked, for logs and prompts."""
        return _mask_url_password(self.db_url)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConnectionConfig":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert to dictionary, leaving credentials out unless asked."""
        result = {"db_url": self.db_url if include_secrets else self.safe_display(),
                  "api_url": self.api_url}
        if include_secrets:
            result.update(
                service_role_key=self.service_role_key,
                anon_key=self.anon_key,
                secret_key=self.secret_key,
                publishable_key=self.publishable_key,
            )
        return result


@dataclass
class ComponentsConfig:
    """Which parts of the instance are migrated."""

    schema: bool = True
    data: bool = True
    auth: bool = True
    storage: bool = True
    roles: bool = True


@dataclass
class DatabaseOptions:
    include_schemas: List[str] = field(default_factory=lambda: ["public", "auth", "storage"])
    exclude_schemas: List[str] = field(
        default_factory=lambda: ["pg_catalog", "information_schema", "pg_toast"]
    )
    # "schema.table" entries, excluded from dump and from truncation
    exclude_tables: List[str] = field(default_factory=list)

    @property
    def schemas(self) -> List[str]:
        """Included schemas minus explicitly excluded ones."""
        return [s for s in self.include_schemas if s not in self.exclude_schemas]


@dataclass
class StorageOptions:
    exclude_buckets: List[str] = field(default_factory=list)
    max_file_size_mb: int = 50
    concurrency: int = 5

    def __post_init__(self) -> None:
        if self.concurrency < 1:
            raise ValueError(f"storage concurrency must be >= 1, got {self.concurrency}")
        if self.max_file_size_mb < 1:
            raise ValueError(
                f"storage max_file_size_mb must be >= 1, got {self.max_file_size_mb}"
            )


@dataclass
class AuthOptions:
    preserve_password_hashes: bool = True
    migrate_identities: bool = True
    skip_sessions: bool = True


@dataclass
class SyncOptions:
    components: ComponentsConfig = field(default_factory=ComponentsConfig)
    database: DatabaseOptions = field(default_factory=DatabaseOptions)
    storage: StorageOptions = field(default_factory=StorageOptions)
    auth: AuthOptions = field(default_factory=AuthOptions)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncOptions":
        return cls(
            components=ComponentsConfig(**data.get("components", {})),
            database=DatabaseOptions(**data.get("database", {})),
            storage=StorageOptions(**data.get("storage", {})),
            auth=AuthOptions(**data.get("auth", {})),
        )


@dataclass
class SyncConfig:
    """Complete configuration of one sync run.

    Attributes:
        source: Endpoint data is read from
        target: Endpoint that is overwritten
        options: Component gates and per-step tuning
        mode: ``ci`` runs unattended; ``interactive`` asks for confirmation
        dry_run: Report what would change without mutating the target
        verbose: Enable debug logging
        temp_dir: Directory for dump artifacts (created with mode 0700)
        log_format: ``text`` or ``json`` step events
    """

    source: ConnectionConfig = field(default_factory=ConnectionConfig)
    target: ConnectionConfig = field(default_factory=ConnectionConfig)
    options: SyncOptions = field(default_factory=SyncOptions)
    mode: SyncMode = SyncMode.INTERACTIVE
    dry_run: bool = False
    verbose: bool = False
    temp_dir: str = DEFAULT_TEMP_DIR
    log_format: str = "text"

    def __post_init__(self) -> None:
        if isinstance(self.mode, str):
            self.mode = SyncMode.from_string(self.mode)
        if self.log_format not in ("text", "json"):
            raise ValueError(f"log_format must be 'text' or 'json', got {self.log_format}")

    @property
    def is_ci(self) -> bool:
        return self.mode == SyncMode.CI

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        """Create SyncConfig from a nested dictionary (file or merged layers)."""
        return cls(
            source=ConnectionConfig.from_dict(data.get("source", {})),
            target=ConnectionConfig.from_dict(data.get("target", {})),
            options=SyncOptions.from_dict(data.get("options", {})),
            mode=data.get("mode", SyncMode.INTERACTIVE.value),
            dry_run=bool(data.get("dry_run", False)),
            verbose=bool(data.get("verbose", False)),
            temp_dir=data.get("temp_dir", DEFAULT_TEMP_DIR),
            log_format=data.get("log_format", "text"),
        )

    def to_dict(self, include_secrets: bool = False) -> Dict[str, Any]:
        """Convert to dictionary; credentials are excluded by default."""
        options = self.options
        return {
            "source": self.source.to_dict(include_secrets),
            "target": self.target.to_dict(include_secrets),
            "options": {
                "components": vars(options.components).copy(),
                "database": vars(options.database).copy(),
                "storage": vars(options.storage).copy(),
                "auth": vars(options.auth).copy(),
            },
            "mode": self.mode.value,
            "dry_run": self.dry_run,
            "verbose": self.verbose,
            "temp_dir": self.temp_dir,
            "log_format": self.log_format,
        }
