"""
Sync Orchestrator
=================

Runs the fixed migration pipeline against one source and one target:

    validate-connections -> sync-roles -> sync-schema -> sync-auth
    -> sync-data -> reset-sequences -> sync-storage

Auth runs before data so that the full data reload overwrites anything the
target's auth triggers produced. The first failing step aborts the run;
cleanup (pools, API sessions, temp artifacts) always runs.

Usage:
    orchestrator = SyncOrchestrator(config)
    result = await orchestrator.execute()
    sys.exit(0 if result.success else 1)
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .clients.postgres import PostgresConnector, SslPreferenceCache, check_connection
from .clients.storage import StorageClient
from .config import SyncConfig
from .errors import ErrorCategory, SyncError
from .sync.auth import AuthSync
from .sync.data import DataSync
from .sync.dump import PgDumpRunner
from .sync.roles import RolesSync
from .sync.schema import SchemaSync
from .sync.sequences import SequenceSync
from .sync.storage import StorageSync
from .utils.sync_logging import StepStatus, log_step_event, set_run_id
from .utils.temp_files import TempFileManager

logger = logging.getLogger(__name__)

STEP_VALIDATE = "validate-connections"
STEP_ROLES = "sync-roles"
STEP_SCHEMA = "sync-schema"
STEP_AUTH = "sync-auth"
STEP_DATA = "sync-data"
STEP_SEQUENCES = "reset-sequences"
STEP_STORAGE = "sync-storage"

STEP_ORDER = (
    STEP_VALIDATE, STEP_ROLES, STEP_SCHEMA, STEP_AUTH,
    STEP_DATA, STEP_SEQUENCES, STEP_STORAGE,
)


@dataclass
class PipelineStep:
    name: str
    enabled: bool
    action: Callable[[], Awaitable[Optional[Dict[str, Any]]]]


@dataclass(frozen=True)
class StepResult:
    """Outcome of one executed step."""

    name: str
    success: bool
    duration_seconds: float
    error: Optional[SyncError] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "duration_seconds": round(self.duration_seconds, 3),
            "error": self.error.to_dict() if self.error else None,
            "details": self.details,
        }


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a whole run, returned by ``SyncOrchestrator.execute``."""

    success: bool
    steps: List[StepResult]
    duration_seconds: float
    errors: List[SyncError] = field(default_factory=list)
    dry_run: bool = False

    @property
    def failed_step(self) -> Optional[str]:
        for step in self.steps:
            if not step.success:
                return step.name
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "dry_run": self.dry_run,
            "duration_seconds": round(self.duration_seconds, 3),
            "steps": [s.to_dict() for s in self.steps],
            "errors": [e.to_dict() for e in self.errors],
        }


class SyncOrchestrator:
    """
    Executes one sync run.

    Collaborators are injectable so the pipeline can be driven against
    in-memory fakes; by default real asyncpg pools, storage API clients and
    the pg_dump tools are used.
    """

    def __init__(
        self,
        config: SyncConfig,
        ssl_cache: Optional[SslPreferenceCache] = None,
        connector: Optional[PostgresConnector] = None,
        storage_factory: Optional[Callable[[str, str], Any]] = None,
        dumper: Optional[PgDumpRunner] = None,
        temp_files: Optional[TempFileManager] = None,
    ):
        self.config = config
        self.connector = connector or PostgresConnector(ssl_cache or SslPreferenceCache())
        self.storage_factory = storage_factory or StorageClient
        self.dumper = dumper or PgDumpRunner()
        self.temp_files = temp_files or TempFileManager(config.temp_dir)

        self.source_pool = None
        self.target_pool = None
        self.source_storage = None
        self.target_storage = None
        self._results: List[StepResult] = []

    # =========================================================================
    # PIPELINE
    # =========================================================================

    def build_steps(self) -> List[PipelineStep]:
        components = self.config.options.components
        return [
            PipelineStep(STEP_VALIDATE, True, self.validate_connections),
            PipelineStep(STEP_ROLES, components.roles, self._sync_roles),
            PipelineStep(STEP_SCHEMA, components.schema, self._sync_schema),
            PipelineStep(STEP_AUTH, components.auth, self._sync_auth),
            PipelineStep(STEP_DATA, components.data, self._sync_data),
            PipelineStep(STEP_SEQUENCES, components.data, self._reset_sequences),
            PipelineStep(STEP_STORAGE, components.storage, self._sync_storage),
        ]

    async def _run_step(self, step: PipelineStep) -> StepResult:
        log_step_event(step.name, StepStatus.STARTED)
        start = time.time()
        try:
            details = await step.action() or {}
        except Exception as e:
            duration = time.time() - start
            error = SyncError.wrap(e, step=step.name)
            log_step_event(step.name, StepStatus.FAILED, duration, str(error.message))
            result = StepResult(step.name, False, duration, error=error)
            self._results.append(result)
            if error is e:
                raise
            raise error from e

        duration = time.time() - start
        log_step_event(step.name, StepStatus.COMPLETED, duration)
        result = StepResult(step.name, True, duration, details=details)
        self._results.append(result)
        return result

    async def execute(self) -> SyncResult:
        """Run every enabled step once, in order. Never raises."""
        run_id = set_run_id()
        self._results = []
        errors: List[SyncError] = []
        start = time.time()
        mode = "dry run" if self.config.dry_run else "sync"
        logger.info(f"Starting {mode} {run_id}: {self.config.source.safe_display()} -> "
                    f"{self.config.target.safe_display()}")

        success = True
        try:
            for step in self.build_steps():
                if not step.enabled:
                    log_step_event(step.name, StepStatus.SKIPPED)
                    continue
                result = await self._run_step(step)
                errors.extend(self._collect_warnings(result))
        except SyncError as e:
            success = False
            errors.insert(0, e)
        except Exception as e:
            success = False
            errors.insert(0, SyncError.wrap(e, step="orchestrator"))
        finally:
            await self.cleanup()

        duration = time.time() - start
        if success:
            logger.info(f"Sync finished in {duration:.1f}s with {len(errors)} warnings")
        else:
            logger.error(f"Sync failed after {duration:.1f}s: {errors[0]}")
        return SyncResult(
            success=success,
            steps=list(self._results),
            duration_seconds=duration,
            errors=errors,
            dry_run=self.config.dry_run,
        )

    @staticmethod
    def _collect_warnings(result: StepResult) -> List[SyncError]:
        category = ErrorCategory.STORAGE if result.name == STEP_STORAGE else ErrorCategory.IMPORT
        return [
            SyncError(message, category, step=result.name, recoverable=True)
            for message in result.details.get("errors", [])
        ]

    # =========================================================================
    # STEPS
    # =========================================================================

    async def validate_connections(self) -> Dict[str, Any]:
        """Open both pools and both storage clients; any failure is fatal."""
        self.source_pool = await self.connector.create_pool(self.config.source.db_url, "source")
        self.target_pool = await self.connector.create_pool(self.config.target.db_url, "target")
        await check_connection(self.source_pool, "source")
        await check_connection(self.target_pool, "target")

        self.source_storage = self.storage_factory(
            self.config.source.api_url, self.config.source.api_key)
        self.target_storage = self.storage_factory(
            self.config.target.api_url, self.config.target.api_key)
        for label, client in (("source", self.source_storage), ("target", self.target_storage)):
            try:
                await asyncio.get_running_loop().run_in_executor(None, client.ping)
            except SyncError as e:
                if e.category == ErrorCategory.STORAGE:
                    e.category = ErrorCategory.CONNECTION
                e.message = f"{label} API: {e.message}"
                raise
        return {"source": self.config.source.host, "target": self.config.target.host}

    async def _sync_roles(self):
        return await RolesSync(self.config, self.source_pool, self.target_pool,
                               self.dumper, self.temp_files).sync()

    async def _sync_schema(self):
        return await SchemaSync(self.config, self.source_pool, self.target_pool,
                                self.dumper, self.temp_files).sync()

    async def _sync_auth(self):
        return await AuthSync(self.config, self.source_pool, self.target_pool).sync()

    async def _sync_data(self):
        return await DataSync(self.config, self.source_pool, self.target_pool,
                              self.dumper, self.temp_files).sync()

    async def _reset_sequences(self):
        sequences = SequenceSync(self.target_pool, self.config.options.database.schemas,
                                 dry_run=self.config.dry_run)
        details = await sequences.reset_sequences()
        if not self.config.dry_run:
            report = await sequences.verify_sequences()
            details["verification"] = report.to_dict()
        return details

    async def _sync_storage(self):
        return await StorageSync(self.config, self.source_storage, self.target_storage,
                                 self.target_pool).sync()

    # =========================================================================
    # CLEANUP
    # =========================================================================

    async def cleanup(self) -> None:
        """Release everything the run opened; failures here are only logged."""
        for label, pool in (("source", self.source_pool), ("target", self.target_pool)):
            if pool is None:
                continue
            try:
                await pool.close()
            except Exception as e:
                logger.warning(f"Error closing {label} pool: {e}")
        self.source_pool = None
        self.target_pool = None

        for label, client in (("source", self.source_storage), ("target", self.target_storage)):
            if client is None:
                continue
            try:
                client.close()
            except Exception as e:
                logger.warning(f"Error closing {label} storage client: {e}")
        self.source_storage = None
        self.target_storage = None

        errors = self.temp_files.cleanup()
        if errors:
            logger.warning(f"{len(errors)} temp artifacts could not be removed")
