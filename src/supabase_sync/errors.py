"""
Error Taxonomy
==============

Every failure that crosses a step boundary is expressed as a SyncError tagged
with one of the categories below. The orchestrator uses the category and the
``recoverable`` flag to decide between aborting the run and recording a
warning.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """Classification of sync failures."""
    CONNECTION = "connection"
    AUTHENTICATION = "authentication"
    PERMISSION = "permission"
    VALIDATION = "validation"
    EXPORT = "export"
    IMPORT = "import"
    STORAGE = "storage"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class SyncError(Exception):
    """A categorized failure raised or collected during a sync run."""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        step: Optional[str] = None,
        recoverable: bool = False,
        original: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category
        self.step = step
        self.recoverable = recoverable
        self.original = original

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "category": self.category.value,
            "step": self.step,
            "recoverable": self.recoverable,
            "original": repr(self.original) if self.original else None,
        }

    @classmethod
    def wrap(
        cls,
        error: BaseException,
        step: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
    ) -> "SyncError":
        """Return ``error`` as a SyncError, tagging the step if it has none."""
        if isinstance(error, SyncError):
            if error.step is None:
                error.step = step
            return error
        return cls(str(error) or type(error).__name__, category, step=step, original=error)
