"""Advisory file locks for cooperating processes sharing a cache or environment.

Locks are ``fcntl.flock`` exclusive locks taken without blocking and polled
from the event loop, so waiting for another process never blocks other
tasks. While waiting, a progress message is logged periodically naming what
is being waited on.
"""
from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from ..constants import Constants
from ..errors import LockTimeout
from ..common.logging_utils import extra_context

logger = logging.getLogger(__name__)


class FileLock:
    """Exclusive advisory lock on ``path``. Not reentrant."""

    def __init__(
        self,
        path: Path,
        *,
        timeout: float = Constants.CACHE_LOCK_TIMEOUT_SEC,
        poll_interval: float = Constants.CACHE_LOCK_POLL_SEC,
        progress_interval: float = Constants.CACHE_LOCK_PROGRESS_SEC,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.progress_interval = progress_interval
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def try_acquire(self) -> bool:
        """Take the lock if it is free; never waits."""
        if self._fd is not None:
            raise RuntimeError(f"lock {self.path} is already held by this object")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return False
        except OSError:
            os.close(fd)
            raise
        self._fd = fd
        return True

    async def acquire(self, description: str = "") -> None:
        """Wait for the lock, logging progress, up to ``timeout`` seconds.

        Raises:
            LockTimeout: when the lock is still held elsewhere after the timeout.
        """
        start = time.monotonic()
        next_progress = start + self.progress_interval
        announced = False
        while not self.try_acquire():
            now = time.monotonic()
            if not announced:
                logger.info(
                    "Waiting for another process to finish %s",
                    description or self.path,
                    extra=extra_context(event="lock_wait", component="cache", target=str(self.path)),
                )
                announced = True
            elif now >= next_progress:
                logger.info(
                    "Still waiting for %s (%.0fs elapsed)",
                    description or self.path,
                    now - start,
                    extra=extra_context(event="lock_wait", component="cache", outcome="waiting"),
                )
                next_progress = now + self.progress_interval
            if now - start >= self.timeout:
                raise LockTimeout(str(self.path), self.timeout)
            await asyncio.sleep(self.poll_interval)
        if announced:
            logger.debug("Acquired %s after %.1fs", self.path, time.monotonic() - start)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    @asynccontextmanager
    async def hold(self, description: str = "") -> AsyncIterator["FileLock"]:
        await self.acquire(description)
        try:
            yield self
        finally:
            self.release()


def is_locked(path: Path) -> bool:
    """True when another holder currently owns the lock at ``path``."""
    if not Path(path).exists():
        return False
    lock = FileLock(path)
    if lock.try_acquire():
        lock.release()
        return False
    return True
