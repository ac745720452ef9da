"""Advisory file locks guarding mutations of an install root.

Two govm invocations racing on the same root could both rename trees into the
active slot. Mutating commands therefore hold an exclusive ``flock`` on
``<root>/.govm.lock`` for their whole duration. The lock file is left in place
after release and carries JSON metadata about the last holder for diagnostics.
"""
from __future__ import annotations

import fcntl
import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

LOCK_FILENAME = ".govm.lock"


class LockError(RuntimeError):
    """Raised when a lock file cannot be opened or locked."""


class LockTimeoutError(LockError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(slots=True)
class LockHandle:
    """Details about a held lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire exclusive locks on install roots."""

    def __init__(
        self,
        root: Path,
        default_timeout: float = 30.0,
        *,
        poll_interval: float = 0.05,
    ) -> None:
        self.root = root.expanduser()
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval

    @property
    def lock_path(self) -> Path:
        """Return the lock file used for the install root."""
        return self.root / LOCK_FILENAME

    @contextmanager
    def root_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the install-root lock for the duration of the block."""
        with self._acquire(self.lock_path, timeout=timeout) as handle:
            yield handle

    @contextmanager
    def _acquire(self, path: Path, *, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(path), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}. "
                            "Another govm process may be modifying this install root."
                        ) from None
                    time.sleep(self.poll_interval)
                except OSError as exc:
                    raise LockError(f"Unable to lock {path}: {exc}") from exc
        except BaseException:
            os.close(fd)
            raise

        wait_ms = int((time.monotonic() - started) * 1000)
        self._write_metadata(fd, path)
        LOGGER.debug("Acquired lock %s after %d ms", path, wait_ms)
        try:
            yield LockHandle(path=path, wait_ms=wait_ms)
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
            LOGGER.debug("Released lock %s", path)

    def _write_metadata(self, fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(UTC).isoformat(timespec="seconds"),
        }
        try:
            os.ftruncate(fd, 0)
            os.lseek(fd, 0, os.SEEK_SET)
            os.write(fd, json.dumps(payload).encode("utf-8"))
        except OSError as exc:
            LOGGER.debug("Could not write lock metadata to %s: %s", path, exc)


__all__ = ["LOCK_FILENAME", "LockError", "LockHandle", "LockManager", "LockTimeoutError"]
