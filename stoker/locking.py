"""Advisory file locks shared by every stoker invocation on the host."""

from __future__ import annotations

import fcntl
import os
import time
from pathlib import Path
from typing import Optional

from stoker.exceptions import StokerError
from stoker.utils import ensure_directory, log


class LockTimeout(StokerError):
    category = "LockTimeout"


class FileLock:
    """Exclusive ``flock`` on a lock file.

    Each acquisition opens its own file descriptor, so the lock serializes
    threads of one process as well as separate processes.
    """

    def __init__(self, path: Path, timeout: Optional[float] = None, interval: float = 0.05) -> None:
        self.path = path
        self.timeout = timeout
        self.interval = interval
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        ensure_directory(self.path.parent)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if deadline is not None and time.monotonic() >= deadline:
                    os.close(fd)
                    raise LockTimeout(f"Timed out waiting for lock {self.path}")
                time.sleep(self.interval)
        self._fd = fd
        log("DEBUG", f"Acquired lock {self.path.name}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
