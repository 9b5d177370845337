"""
Mutual exclusion for certificate files, proxy reloads, and the live container.

A renewal run and a deployment must never interleave writes to the
certificate directory or restart/reload the reverse proxy at the same time.
The lock combines an in-process asyncio.Lock with an fcntl lock file so a
CLI invocation and a long-running scheduler process also exclude each other.
"""

import asyncio
import fcntl
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path

from certdeploy.config import settings

logger = logging.getLogger(__name__)


class LockTimeoutError(Exception):
    """The operation lock could not be acquired in time."""

    def __init__(self, message: str, holder: str | None = None, suggestion: str | None = None):
        self.message = message
        self.holder = holder
        self.suggestion = suggestion
        super().__init__(message)


class OperationLock:
    """Exclusive lock over certificate files + proxy reload + container swap."""

    def __init__(self, lock_file: str | None = None, timeout: float | None = None, poll_interval: float = 0.2):
        self.lock_file = Path(lock_file or settings.lock_file)
        self.timeout = timeout if timeout is not None else settings.lock_timeout
        self.poll_interval = poll_interval
        self._local = asyncio.Lock()
        self._fd: int | None = None
        self._holder: str | None = None

    @property
    def locked(self) -> bool:
        return self._local.locked()

    async def acquire(self, owner: str, timeout: float | None = None) -> None:
        """
        Acquire the lock, waiting up to timeout seconds.

        Args:
            owner: Name recorded in the lock file (e.g. "deploy:blog")
            timeout: None waits for the configured timeout, 0 tries once

        Raises:
            LockTimeoutError if the lock is held elsewhere past the timeout
        """
        timeout = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout

        busy = LockTimeoutError(
            f"Operation lock busy (held by {self._holder})",
            holder=self._holder,
            suggestion="Wait for the running renewal or deployment to finish",
        )
        if timeout <= 0:
            if self._local.locked():
                raise busy
            await self._local.acquire()
        else:
            try:
                await asyncio.wait_for(self._local.acquire(), timeout=timeout)
            except asyncio.TimeoutError:
                raise busy

        try:
            while not self._try_file_lock(owner):
                if time.monotonic() >= deadline:
                    holder = self._read_holder()
                    raise LockTimeoutError(
                        f"Operation lock {self.lock_file} busy (held by {holder})",
                        holder=holder,
                        suggestion="Another certdeploy process is renewing or deploying; retry later",
                    )
                await asyncio.sleep(self.poll_interval)
        except BaseException:
            self._local.release()
            raise

        self._holder = owner
        logger.debug(f"Operation lock acquired by {owner}")

    def release(self) -> None:
        """Release the lock."""
        if self._fd is not None:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Operation lock released by {self._holder}")
        self._holder = None
        if self._local.locked():
            self._local.release()

    @asynccontextmanager
    async def hold(self, owner: str, timeout: float | None = None):
        """Hold the lock for the duration of the block, waiting if needed."""
        await self.acquire(owner, timeout=timeout)
        try:
            yield self
        finally:
            self.release()

    @asynccontextmanager
    async def try_hold(self, owner: str):
        """
        Hold the lock only if it is free right now.

        Yields True when held, False when busy so the caller can defer.
        """
        try:
            await self.acquire(owner, timeout=0)
        except LockTimeoutError as e:
            logger.info(f"{owner}: deferring, {e.message}")
            yield False
            return
        try:
            yield True
        finally:
            self.release()

    def _try_file_lock(self, owner: str) -> bool:
        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        os.ftruncate(fd, 0)
        os.write(fd, f"{owner} pid={os.getpid()}\n".encode())
        self._fd = fd
        return True

    def _read_holder(self) -> str | None:
        try:
            return self.lock_file.read_text().strip() or None
        except OSError:
            return None


# Singleton instance
_operation_lock: OperationLock | None = None


def get_operation_lock() -> OperationLock:
    """Get the global operation lock shared by scheduler and deployments."""
    global _operation_lock
    if _operation_lock is None:
        _operation_lock = OperationLock()
    return _operation_lock
