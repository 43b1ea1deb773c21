"""
Logging Setup and Step Events
=============================

Every module logs through ``logging.getLogger(__name__)``. This module wires
the root handler for either human-readable text or JSON lines, and emits the
per-step events the orchestrator produces.

Usage:
    setup_logging(verbose=True, log_format="json")
    run_id = set_run_id()
    log_step_event("sync-data", StepStatus.COMPLETED, duration=12.4)
"""

import contextvars
import json
import logging
import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, TextIO

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

STEP_LOGGER_NAME = "supabase_sync.steps"

SENSITIVE_KEY_MARKERS = (
    "password", "service_role_key", "anon_key", "secret", "token", "publishable_key",
)
REDACTED = "[REDACTED]"

_run_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "run_id", default=None
)


def get_run_id() -> Optional[str]:
    return _run_id_var.get()


def set_run_id(run_id: Optional[str] = None) -> str:
    """Set (or generate) the id attached to every JSON log line of this run."""
    if run_id is None:
        run_id = uuid.uuid4().hex[:8]
    _run_id_var.set(run_id)
    return run_id


class StepStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepEvent:
    """
    Structured record of a pipeline step transition.

    Attributes:
        step: Step name, e.g. ``sync-schema``
        status: started, completed, failed or skipped
        duration: Seconds spent in the step (completed/failed only)
        message: Optional human-readable detail
        timestamp: ISO 8601 UTC
    """
    step: str
    status: StepStatus
    duration: Optional[float] = None
    message: Optional[str] = None
    timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "step": self.step,
            "status": self.status.value,
            "timestamp": self.timestamp,
        }
        if self.duration is not None:
            data["duration"] = round(self.duration, 3)
        if self.message:
            data["message"] = self.message
        return data

    def describe(self) -> str:
        text = f"Step {self.step} {self.status.value}"
        if self.duration is not None:
            text += f" in {self.duration:.2f}s"
        if self.message:
            text += f": {self.message}"
        return text


class JsonLineFormatter(logging.Formatter):
    """Render each record as a single JSON object for machine consumers."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "time": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        run_id = get_run_id()
        if run_id:
            payload["run_id"] = run_id
        event = getattr(record, "step_event", None)
        if event:
            payload["event"] = event
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(
    verbose: bool = False,
    log_format: str = "text",
    stream: Optional[TextIO] = None,
) -> logging.Handler:
    """
    Configure the root logger for a CLI run.

    Replaces existing root handlers so repeated calls (tests, re-entry from
    the CLI) do not duplicate output.

    Returns:
        The installed handler
    """
    handler = logging.StreamHandler(stream or sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonLineFormatter())
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    # asyncpg and urllib3 are chatty at debug level
    for noisy in ("asyncio", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return handler


def log_step_event(
    step: str,
    status: StepStatus,
    duration: Optional[float] = None,
    message: Optional[str] = None,
) -> StepEvent:
    """Emit a step event on the step logger and return it."""
    event = StepEvent(step=step, status=status, duration=duration, message=message)
    level = logging.ERROR if status == StepStatus.FAILED else logging.INFO
    logging.getLogger(STEP_LOGGER_NAME).log(
        level, event.describe(), extra={"step_event": event.to_dict()}
    )
    return event


def _is_sensitive(key: str) -> bool:
    key_lower = key.lower()
    return any(marker in key_lower for marker in SENSITIVE_KEY_MARKERS)


def sanitize_config(data: Any) -> Any:
    """
    Return a copy of a config structure safe to log.

    Credential keys are replaced with ``[REDACTED]`` and passwords embedded
    in connection URLs are masked.
    """
    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if _is_sensitive(str(key)) and value:
                result[key] = REDACTED
            else:
                result[key] = sanitize_config(value)
        return result
    if isinstance(data, list):
        return [sanitize_config(item) for item in data]
    if isinstance(data, str) and "://" in data and "@" in data:
        scheme, rest = data.split("://", 1)
        credentials, host = rest.rsplit("@", 1)
        if ":" in credentials:
            user = credentials.split(":", 1)[0]
            return f"{scheme}://{user}:****@{host}"
    return data
