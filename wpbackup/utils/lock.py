"""
Exclusive run lock.

Only one backup run may hold the lock at a time. The lock is an advisory
``flock`` on a file; the kernel releases it if the process dies.
"""

import fcntl
import logging
import os
from typing import Optional

from wpbackup.backup.errors import RunLocked

logger = logging.getLogger(__name__)


class RunLock:
    """Non-blocking exclusive lock held for the lifetime of one backup run."""

    def __init__(self, path: str):
        self.path = path
        self._fd: Optional[int] = None

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def acquire(self):
        """
        Take the lock.

        Raises:
            RunLocked: If another process holds the lock
        """
        if self._fd is not None:
            raise RunLocked(f"Run lock already held by this process: {self.path}")

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            raise RunLocked(f"Another backup run holds the lock {self.path}") from e

        # Write our PID
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug(f"Acquired run lock {self.path}")

    def release(self):
        """Release the lock. The lock file itself is left in place."""
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug(f"Released run lock {self.path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
