"""
Writer decorators.

The engine calls ``ItemWriter.write()`` once per chunk and never retries.
``RetryingWriter`` is the explicit, opt-in retry policy layered on top: it
re-submits the whole chunk, which is safe only because writers are atomic
(a failed attempt left nothing behind).
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from typing import Generic, TypeVar

from batch_kernel.logging_config import get_logger

from batch_engine.items.base import ItemWriter

logger = get_logger("engine.writers")

R = TypeVar("R")


class RetryingWriter(Generic[R]):
    """Retry an atomic writer a bounded number of times.

    Args:
        delegate: The atomic writer.
        max_attempts: Total attempts, including the first (>= 1).
        retry_on: Exception types that are retried; others propagate at once.
        backoff_seconds: Sleep before attempt ``n`` is ``backoff * (n - 1)``.
    """

    def __init__(
        self,
        delegate: ItemWriter[R],
        max_attempts: int = 3,
        retry_on: tuple[type[BaseException], ...] = (Exception,),
        backoff_seconds: float = 0.0,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._delegate = delegate
        self._max_attempts = max_attempts
        self._retry_on = retry_on
        self._backoff = backoff_seconds
        self.attempts = 0

    def write(self, items: Sequence[R]) -> None:
        for attempt in range(1, self._max_attempts + 1):
            self.attempts += 1
            try:
                self._delegate.write(items)
                return
            except self._retry_on as exc:
                if attempt == self._max_attempts:
                    raise
                logger.warning(
                    "chunk_write_retry",
                    extra={
                        "attempt": attempt,
                        "max_attempts": self._max_attempts,
                        "items": len(items),
                        "cause": str(exc),
                    },
                )
                if self._backoff:
                    time.sleep(self._backoff * attempt)
