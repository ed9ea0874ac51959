from __future__ import annotations

import dataclasses
import random
import time
from typing import Callable, Iterator, TypeVar

import structlog

from .errors import TransportError

log = structlog.get_logger("footprint.sync")

T = TypeVar("T")


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    jitter: float = 0.0
    sleep: Callable[[float], None] = time.sleep
    retry_on: tuple[type[BaseException], ...] = (TransportError,)

    def delays(self) -> Iterator[float]:
        """Delays between attempts: base, 2*base, ... capped at max_delay."""
        delay = self.base_delay
        for _ in range(max(0, self.attempts - 1)):
            extra = random.uniform(0, self.jitter) if self.jitter > 0 else 0.0
            yield min(delay, self.max_delay) + extra
            delay *= 2

    def run(self, fn: Callable[[], T], *, operation: str) -> T:
        waits = self.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn()
            except self.retry_on as e:
                delay = next(waits, None)
                if delay is None:
                    raise TransportError(f"{operation} failed after {attempt} attempts: {e}") from e
                log.debug("retrying", operation=operation, attempt=attempt, delay_s=delay, error=str(e))
                self.sleep(delay)
