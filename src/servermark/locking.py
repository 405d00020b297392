"""File-based locking that serialises registry mutations.

The registry documents are plain files shared by every servermark process.
All mutating operations run under :meth:`LockManager.registry_lock`, which
combines an in-process mutex with an ``fcntl`` advisory lock on
``<runtime_dir>/servermark.lock`` so concurrent CLI invocations cannot
interleave read-modify-write cycles.
"""
from __future__ import annotations

import fcntl
import json
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import ServermarkError
from .exit_codes import ExitCode

GLOBAL_LOCK_NAME = "servermark.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(ServermarkError):
    """Raised when a lock cannot be acquired before the timeout expires."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire the registry lock with a bounded wait."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Bind the manager to *runtime_dir* where lock files live."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout
        self._mutex = threading.Lock()

    @property
    def registry_lock_path(self) -> Path:
        """Return the path of the global registry lock file."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    @contextmanager
    def registry_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global registry lock for the duration of the block."""
        limit = self.default_timeout if timeout is None else timeout
        started = time.monotonic()
        if not self._mutex.acquire(timeout=limit):
            raise LockTimeoutError(
                f"Timed out after {limit:.1f}s waiting for the registry lock."
            )
        try:
            remaining = max(limit - (time.monotonic() - started), 0.0)
            with self._file_lock(self.registry_lock_path, remaining) as _:
                wait_ms = int((time.monotonic() - started) * 1000)
                yield LockHandle(path=self.registry_lock_path, wait_ms=wait_ms)
        finally:
            self._mutex.release()

    @contextmanager
    def _file_lock(self, path: Path, timeout: float) -> Iterator[int]:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            deadline = time.monotonic() + timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(
                            f"Timed out after {timeout:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            self._write_metadata(fd, path)
            try:
                yield fd
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = json.dumps(
            {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(UTC).isoformat(),
            }
        ).encode("utf-8")
        os.ftruncate(fd, 0)
        os.pwrite(fd, payload, 0)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
