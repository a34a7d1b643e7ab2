"""
Host lock — advisory lock keyed by target host.

The engine can't see contention between runs, so executors that touch a
shared host take this lock for the whole side effect. The lock is an
flock() on a file held open for the duration; the kernel drops it when the
holding process exits, so a killed deploy never leaves the host locked.
"""

from __future__ import annotations

import fcntl
import logging
import os
import re
import time
from pathlib import Path

import config
from models.errors import ExecutorTransientError

log = logging.getLogger(__name__)

POLL_INTERVAL = 0.5


class HostLock:
    def __init__(self, host: str, lock_dir: Path | None = None, timeout: float | None = None):
        self.host = host
        self.lock_dir = lock_dir or config.LOCK_DIR
        self.timeout = config.HOST_LOCK_TIMEOUT if timeout is None else timeout
        safe = re.sub(r"[^A-Za-z0-9_.-]", "_", host)
        self.path = self.lock_dir / f"{safe}.lock"
        self._fd: int | None = None

    def acquire(self) -> None:
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
        deadline = time.monotonic() + self.timeout
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    raise ExecutorTransientError(
                        f"Timed out after {self.timeout:.0f}s waiting for lock on {self.host}"
                    )
                time.sleep(POLL_INTERVAL)

        # Holder info for humans poking at LOCK_DIR; the flock is the lock
        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()} {time.time():.0f}\n".encode())
        self._fd = fd
        log.debug("Acquired host lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            log.warning("Host lock %s released without being held", self.path)
            return
        fd, self._fd = self._fd, None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def __enter__(self) -> "HostLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
