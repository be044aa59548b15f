"""
StepExecutor -- Runs one step execution and records it.

Contract:
    ``execute()`` runs a chunk step for one execution context (one
    partition, or the whole step when unpartitioned) and returns the
    finalized StepRun.  ``execute_tasklet()`` does the same for a
    TaskletStep.

    Per execution it:
      1. creates the StepRun (RUNNING) in the repository,
      2. fires BEFORE_STEP,
      3. builds a fresh reader and writer from the step's factories,
      4. drives one ChunkRunner (or, in MULTI_THREADED mode, several
         ChunkRunners sharing the reader on a throttled pool),
      5. closes the reader, finalizes the StepRun, fires AFTER_STEP.

Architecture: batch_engine/services.  Imports from batch_engine.domain,
    batch_engine.items and sibling services.

Non-goals:
    - Does NOT decide job status; the orchestrator aggregates StepRuns.
    - Does NOT retry failed chunks.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any
from uuid import UUID

from batch_kernel.domain.clock import Clock
from batch_kernel.exceptions import ChunkFault, ReaderFault, WriterFault
from batch_kernel.logging_config import LogContext, get_logger

from batch_engine.domain.definition import StepDefinition, TaskletStep
from batch_engine.domain.listeners import Hook, ListenerChain
from batch_engine.domain.types import (
    ExecutionContext,
    ExecutionMode,
    JobRun,
    RepeatStatus,
    RunStatus,
    StepRun,
)
from batch_engine.items.base import ItemReader, ItemWriter
from batch_engine.services.chunk_runner import (
    ChunkLoopOutcome,
    ChunkRunner,
    ChunkSequence,
)
from batch_engine.services.repository import JobRepository
from batch_engine.services.worker_pool import WorkerPool

logger = get_logger("engine.step")


class StepExecutor:
    """Executes step runs against a repository.

    Args:
        repository: Run record store.
        clock: Source of run timestamps.
        listeners: Job-level listeners; each step's own listeners are
            appended after them.
        timer: Monotonic time source for durations and chunk timeouts.
    """

    def __init__(
        self,
        repository: JobRepository,
        clock: Clock,
        listeners: ListenerChain | None = None,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._listeners = listeners or ListenerChain()
        self._timer = timer

    # -------------------------------------------------------------------------
    # Chunk steps
    # -------------------------------------------------------------------------

    def execute(
        self,
        job_run: JobRun,
        step: StepDefinition,
        context: ExecutionContext,
        parameters: Mapping[str, Any],
        partition_run_id: UUID | None = None,
    ) -> StepRun:
        partition = context.label if partition_run_id is not None else None
        listeners = self._listeners.extended(step.listeners)

        with LogContext.bind(step_name=step.name, partition=partition):
            step_run = self._repository.start_step(
                job_run.run_id, step.name, partition_run_id, partition,
            )
            listeners.notify(Hook.BEFORE_STEP, step_run)

            started = self._timer()
            if step.mode == ExecutionMode.MULTI_THREADED:
                outcome = self._run_threaded(step, context, parameters)
            else:
                outcome = self._run_single(step, context, parameters, partition)

            finished = self._finish(step_run, outcome, started)
            self._repository.finish_step(job_run.run_id, finished)
            self._log_finished(finished)
            listeners.notify(Hook.AFTER_STEP, finished)
            return finished

    def _run_single(
        self,
        step: StepDefinition,
        context: ExecutionContext,
        parameters: Mapping[str, Any],
        partition: str | None,
    ) -> ChunkLoopOutcome:
        try:
            reader = self._open_reader(step, context, parameters)
        except ChunkFault as fault:
            fault.partition = partition
            return ChunkLoopOutcome(chunks=(), fault=fault)
        try:
            writer = self._open_writer(step, context, parameters)
        except ChunkFault as fault:
            _close_quietly(reader)
            fault.partition = partition
            return ChunkLoopOutcome(chunks=(), fault=fault)

        try:
            return ChunkRunner(
                reader,
                step.processor,
                writer,
                step.chunk_size,
                partition=partition,
                chunk_timeout_seconds=step.chunk_timeout_seconds,
                timer=self._timer,
            ).run()
        finally:
            _close_quietly(reader)

    def _run_threaded(
        self,
        step: StepDefinition,
        context: ExecutionContext,
        parameters: Mapping[str, Any],
    ) -> ChunkLoopOutcome:
        try:
            reader = self._open_reader(step, context, parameters)
        except ChunkFault as fault:
            return ChunkLoopOutcome(chunks=(), fault=fault)
        try:
            writers = [
                self._open_writer(step, context, parameters)
                for _ in range(step.throttle_limit)
            ]
        except ChunkFault as fault:
            _close_quietly(reader)
            return ChunkLoopOutcome(chunks=(), fault=fault)

        # One failed chunk fails the step, so it halts every loop
        sequence = ChunkSequence()
        halt = threading.Event()
        loops = {
            f"{step.name}-{i}": ChunkRunner(
                reader,
                step.processor,
                writer,
                step.chunk_size,
                chunk_timeout_seconds=step.chunk_timeout_seconds,
                timer=self._timer,
                sequence=sequence,
                halt=halt,
            ).run
            for i, writer in enumerate(writers)
        }
        pool = WorkerPool(step.max_workers, step.throttle_limit)
        try:
            report = pool.run(loops)
        finally:
            _close_quietly(reader)

        chunks = []
        faults: list[ChunkFault] = []
        crash: ChunkFault | None = None
        for label in loops:
            if label in report.errors:
                exc = report.errors[label]
                crash = crash or ChunkFault(f"{label} crashed: {exc}")
                continue
            outcome: ChunkLoopOutcome = report.results[label]
            chunks.extend(outcome.chunks)
            if outcome.fault is not None:
                faults.append(outcome.fault)

        fault = min(faults, key=lambda f: f.chunk_index or 0, default=crash)
        return ChunkLoopOutcome(
            chunks=tuple(sorted(chunks, key=lambda c: c.chunk_index)),
            fault=fault,
        )

    def _open_reader(
        self,
        step: StepDefinition,
        context: ExecutionContext,
        parameters: Mapping[str, Any],
    ) -> ItemReader:
        try:
            return step.reader_factory(context, parameters)
        except Exception as exc:
            raise ReaderFault(f"reader factory failed: {exc}") from exc

    def _open_writer(
        self,
        step: StepDefinition,
        context: ExecutionContext,
        parameters: Mapping[str, Any],
    ) -> ItemWriter:
        try:
            return step.writer_factory(context, parameters)
        except Exception as exc:
            raise WriterFault(f"writer factory failed: {exc}") from exc

    def _finish(
        self,
        step_run: StepRun,
        outcome: ChunkLoopOutcome,
        started: float,
    ) -> StepRun:
        fault = outcome.fault
        return replace(
            step_run,
            status=RunStatus.COMPLETED if fault is None else RunStatus.FAILED,
            read_count=outcome.read_count,
            write_count=outcome.write_count,
            skip_count=outcome.skip_count,
            commit_count=outcome.commit_count,
            chunks=outcome.chunks,
            completed_at=self._clock.now(),
            duration_ms=int((self._timer() - started) * 1000),
            error_code=fault.code if fault else None,
            error_message=str(fault) if fault else None,
            failed_chunk_index=fault.chunk_index if fault else None,
        )

    # -------------------------------------------------------------------------
    # Tasklet steps
    # -------------------------------------------------------------------------

    def execute_tasklet(
        self,
        job_run: JobRun,
        step: TaskletStep,
        parameters: Mapping[str, Any],
    ) -> StepRun:
        listeners = self._listeners.extended(step.listeners)
        context = ExecutionContext(label=step.name)

        with LogContext.bind(step_name=step.name):
            step_run = self._repository.start_step(job_run.run_id, step.name)
            listeners.notify(Hook.BEFORE_STEP, step_run)

            started = self._timer()
            iterations = 0
            fault: ChunkFault | None = None
            try:
                while True:
                    if iterations >= step.max_iterations:
                        fault = ChunkFault(
                            f"tasklet did not finish within "
                            f"{step.max_iterations} iterations",
                            chunk_index=iterations,
                        )
                        break
                    status = step.tasklet(context, parameters)
                    iterations += 1
                    if status == RepeatStatus.FINISHED:
                        break
            except ChunkFault as exc:
                fault = exc
            except Exception as exc:
                fault = ChunkFault(f"tasklet failed: {exc}", chunk_index=iterations)
                fault.__cause__ = exc

            finished = replace(
                step_run,
                status=RunStatus.COMPLETED if fault is None else RunStatus.FAILED,
                commit_count=iterations,
                completed_at=self._clock.now(),
                duration_ms=int((self._timer() - started) * 1000),
                error_code=fault.code if fault else None,
                error_message=str(fault) if fault else None,
                failed_chunk_index=fault.chunk_index if fault else None,
            )
            self._repository.finish_step(job_run.run_id, finished)
            self._log_finished(finished)
            listeners.notify(Hook.AFTER_STEP, finished)
            return finished

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _log_finished(self, step_run: StepRun) -> None:
        extra = {
            "step_run_id": str(step_run.run_id),
            "status": step_run.status.value,
            "read_count": step_run.read_count,
            "write_count": step_run.write_count,
            "skip_count": step_run.skip_count,
            "commit_count": step_run.commit_count,
            "duration_ms": step_run.duration_ms,
        }
        if step_run.status == RunStatus.COMPLETED:
            logger.info("step_completed", extra=extra)
        else:
            extra["error_code"] = step_run.error_code
            extra["failed_chunk_index"] = step_run.failed_chunk_index
            logger.error("step_failed", extra=extra)


def _close_quietly(reader: ItemReader) -> None:
    try:
        reader.close()
    except Exception:
        logger.warning("reader_close_failed", exc_info=True)
