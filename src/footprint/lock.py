from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Callable, Optional

import structlog

from .errors import LockError, LockTimeoutError

log = structlog.get_logger("footprint.lock")


class FileLock:
    """
    Advisory lock file shared between processes.

    The file is created with O_EXCL; a lock older than `stale_after` seconds
    is assumed to belong to a crashed process and is broken.
    """

    def __init__(
        self,
        path: Path,
        *,
        timeout: float = 30.0,
        stale_after: float = 600.0,
        poll: float = 0.1,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.path = path
        self.timeout = timeout
        self.stale_after = stale_after
        self.poll = poll
        self._clock = clock
        self._sleep = sleep
        self._held = False

    def _age(self) -> Optional[float]:
        try:
            return self._clock() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def acquire(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LockError(f"could not create lock directory for {self.path}: {e}") from e
        deadline = self._clock() + self.timeout
        while True:
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            except FileExistsError:
                age = self._age()
                if age is not None and age > self.stale_after:
                    log.warning("breaking_stale_lock", path=str(self.path), age_s=round(age, 1))
                    try:
                        self.path.unlink()
                    except FileNotFoundError:
                        pass
                    continue
                if self._clock() >= deadline:
                    raise LockTimeoutError(f"timed out waiting for lock {self.path}; another export may be running") from None
                self._sleep(self.poll)
                continue
            except OSError as e:
                raise LockError(f"could not create lock {self.path}: {e}") from e
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(f"{os.getpid()} {int(self._clock())}\n")
            self._held = True
            return

    def release(self) -> None:
        if not self._held:
            return
        self._held = False
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "FileLock":
        self.acquire()
        return self

    def __exit__(self, *exc: object) -> None:
        self.release()
