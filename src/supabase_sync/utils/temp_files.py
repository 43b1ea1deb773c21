"""
Temporary Artifact Management
=============================

Dump files contain full copies of user data and password hashes, so they are
kept in a private directory (mode 0700), written with mode 0600, and
overwritten with zeros before being unlinked at cleanup.
"""

import logging
import os
import stat
import time
import uuid
from pathlib import Path
from typing import List, Optional, Union

logger = logging.getLogger(__name__)

DIR_MODE = 0o700
FILE_MODE = 0o600

# Larger files are unlinked without the zero pass
SECURE_DELETE_MAX_BYTES = 100 * 1024 * 1024
_CHUNK_SIZE = 1024 * 1024


class TempFileManager:
    """Creates, tracks and securely removes dump artifacts for one run."""

    def __init__(self, base_dir: Union[str, Path]):
        self.base_dir = Path(base_dir)
        self._files: List[Path] = []
        self._initialized = False

    def init(self) -> Path:
        """Create the base directory with owner-only permissions."""
        if not self._initialized:
            self.base_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(self.base_dir, DIR_MODE)
            self._initialized = True
        return self.base_dir

    def create_file(self, prefix: str, extension: str = ".sql") -> Path:
        """Reserve a new private file path and create it empty."""
        self.init()
        name = f"{prefix}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{extension}"
        path = self.base_dir / name
        fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, FILE_MODE)
        os.close(fd)
        self._files.append(path)
        return path

    def write_text(self, path: Path, content: str) -> None:
        with open(path, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(path, FILE_MODE)

    def read_text(self, path: Path) -> str:
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    @property
    def tracked_files(self) -> List[Path]:
        return list(self._files)

    @staticmethod
    def secure_delete(path: Path) -> None:
        """Zero-overwrite a file (when small enough) and unlink it."""
        try:
            size = path.stat().st_size
        except FileNotFoundError:
            return
        if stat.S_ISREG(path.stat().st_mode) and size <= SECURE_DELETE_MAX_BYTES:
            zeros = bytes(_CHUNK_SIZE)
            with open(path, "r+b") as f:
                remaining = size
                while remaining > 0:
                    count = min(remaining, _CHUNK_SIZE)
                    f.write(zeros[:count])
                    remaining -= count
                f.flush()
                os.fsync(f.fileno())
        path.unlink()

    def cleanup(self) -> Optional[List[str]]:
        """
        Delete every tracked file.

        Failures are logged and returned rather than raised; cleanup runs on
        error paths and must not mask the original failure.

        Returns:
            List of error messages, or None when everything was removed
        """
        errors = []
        for path in self._files:
            try:
                self.secure_delete(path)
            except OSError as e:
                errors.append(f"{path}: {e}")
                logger.warning(f"Could not delete temp file {path}: {e}")
        self._files.clear()

        if errors:
            return errors
        logger.debug(f"Temp artifacts under {self.base_dir} removed")
        return None
