"""
WorkerPool -- Throttled execution of labelled units of work.

Contract:
    ``run(tasks)`` executes each callable of an insertion-ordered
    ``label -> callable`` mapping on a thread pool of ``max_workers``
    threads, with at most ``throttle_limit`` running at any instant.  The
    dispatcher blocks on slot acquisition, so queued work waits in the
    mapping, not in the executor.  Returns only after every dispatched unit
    reached a terminal state.

Architecture: batch_engine/services.  Imports from kernel logging only.

Invariants enforced:
    - Each unit runs exactly once, on exactly one worker thread.
    - A unit that raises does not cancel its siblings; the exception is
      captured in ``PoolReport.errors``.
    - ``stop_event`` stops dispatching of units not yet started; in-flight
      units run to completion.
    - Log context (ContextVars) of the dispatching thread is copied into
      every unit.
"""

from __future__ import annotations

import contextvars
import threading
from collections.abc import Callable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any

from batch_kernel.logging_config import get_logger

logger = get_logger("engine.pool")


@dataclass(frozen=True)
class PoolReport:
    """Terminal state of every unit handed to ``WorkerPool.run()``."""

    results: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, BaseException] = field(default_factory=dict)
    not_dispatched: tuple[str, ...] = ()
    peak_active: int = 0


class WorkerPool:
    """Bounded thread pool with a throttle below its capacity.

    Args:
        max_workers: Thread pool capacity.
        throttle_limit: Max concurrently active units (1..max_workers).
        thread_name_prefix: Worker thread name prefix.
    """

    def __init__(
        self,
        max_workers: int,
        throttle_limit: int,
        thread_name_prefix: str = "Batch_Task",
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        if not 1 <= throttle_limit <= max_workers:
            raise ValueError(
                f"throttle_limit must be between 1 and {max_workers}, "
                f"got {throttle_limit}"
            )
        self._max_workers = max_workers
        self._throttle_limit = throttle_limit
        self._thread_name_prefix = thread_name_prefix
        self._lock = threading.Lock()
        self._active = 0
        self._peak = 0

    @property
    def throttle_limit(self) -> int:
        return self._throttle_limit

    def run(
        self,
        tasks: Mapping[str, Callable[[], Any]],
        stop_event: threading.Event | None = None,
    ) -> PoolReport:
        slots = threading.BoundedSemaphore(self._throttle_limit)
        futures: dict[str, Future] = {}
        not_dispatched: list[str] = []
        self._active = 0
        self._peak = 0

        with ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix=self._thread_name_prefix,
        ) as executor:
            labels = list(tasks)
            for position, label in enumerate(labels):
                slots.acquire()
                if stop_event is not None and stop_event.is_set():
                    slots.release()
                    not_dispatched.extend(labels[position:])
                    logger.warning(
                        "dispatch_stopped",
                        extra={"not_dispatched": labels[position:]},
                    )
                    break
                ctx = contextvars.copy_context()
                futures[label] = executor.submit(
                    ctx.run, self._guarded, tasks[label], slots,
                )
                logger.debug("unit_dispatched", extra={"unit": label})

            wait(futures.values())

        results: dict[str, Any] = {}
        errors: dict[str, BaseException] = {}
        for label, future in futures.items():
            exc = future.exception()
            if exc is not None:
                errors[label] = exc
                logger.error(
                    "unit_failed",
                    extra={"unit": label, "error": str(exc)},
                )
            else:
                results[label] = future.result()

        return PoolReport(
            results=results,
            errors=errors,
            not_dispatched=tuple(not_dispatched),
            peak_active=self._peak,
        )

    def _guarded(
        self,
        task: Callable[[], Any],
        slots: threading.BoundedSemaphore,
    ) -> Any:
        with self._lock:
            self._active += 1
            self._peak = max(self._peak, self._active)
        try:
            return task()
        finally:
            with self._lock:
                self._active -= 1
            slots.release()
