"""
JobOrchestrator -- Composes a JobDefinition into one runnable unit.

Contract:
    ``run(parameters)`` validates the definition and the parameters,
    creates the JobRun (refusing a restart of a guarded job key), runs the
    steps in order and returns a JobResult whose status is COMPLETED only
    when every step, and every partition of every step, completed.
    ``stop()`` stops dispatching new partitions (and steps); in-flight
    partitions finish their current work.

Architecture: batch_engine (top-level).  The canonical entry point for
    running jobs; wires StepExecutor, WorkerPool and the repository.

Invariants enforced:
    - Startup faults (definition, parameters, restart, store) are raised
      to the caller before any partition starts.
    - Chunk and partition faults never escape ``run()``; they become
      FAILED statuses plus an error summary.
    - Once the JobRun is created it is finalized: an unexpected error in
      a step (a run-store fault, say) ends the job FAILED with the error
      in its summary, and AFTER_JOB still fires.
    - A failed step ends the job; later steps do not run.
    - A failed run is never restarted automatically.
    - All timestamps come from the injected Clock.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import replace
from typing import Any
from uuid import uuid4

from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.logging_config import LogContext, get_logger
from batch_kernel.utils.hashing import hash_payload

from batch_engine.domain.definition import JobDefinition, StepDefinition, TaskletStep
from batch_engine.domain.listeners import Hook, ListenerChain
from batch_engine.domain.parameters import identifying_parameters, validate_parameters
from batch_engine.domain.types import (
    ExecutionContext,
    ExecutionMode,
    JobResult,
    JobRun,
    PartitionRun,
    RunStatus,
    StepResult,
)
from batch_engine.services.repository import InMemoryJobRepository, JobRepository
from batch_engine.services.step_executor import StepExecutor
from batch_engine.services.worker_pool import WorkerPool

logger = get_logger("engine.orchestrator")


def compute_job_key(job_name: str, parameters: Mapping[str, Any]) -> str:
    """SHA-256 of the job name and its identifying parameters."""
    return hash_payload({"job_name": job_name, "parameters": dict(parameters)})


class JobOrchestrator:
    """Runs one JobDefinition.

    Args:
        definition: The job to run.
        repository: Run record store; defaults to an in-memory one.
        clock: Source of run timestamps.
        timer: Monotonic time source for durations and chunk timeouts.
        thread_name_prefix: Prefix of partition worker threads.
    """

    def __init__(
        self,
        definition: JobDefinition,
        repository: JobRepository | None = None,
        clock: Clock | None = None,
        timer: Callable[[], float] = time.monotonic,
        thread_name_prefix: str = "Batch_Task",
    ) -> None:
        self._definition = definition
        self._clock = clock or SystemClock()
        self._repository = repository or InMemoryJobRepository(self._clock)
        self._timer = timer
        self._thread_name_prefix = thread_name_prefix
        self._listeners = ListenerChain(definition.listeners)
        self._steps = StepExecutor(
            self._repository, self._clock, self._listeners, timer,
        )
        self._stop_event = threading.Event()

    @property
    def definition(self) -> JobDefinition:
        return self._definition

    @property
    def repository(self) -> JobRepository:
        return self._repository

    def stop(self) -> None:
        """Stop dispatching; queued partitions and later steps never start."""
        self._stop_event.set()
        logger.warning(
            "job_stop_requested", extra={"job_name": self._definition.name},
        )

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    def run(self, parameters: Mapping[str, Any] | None = None) -> JobResult:
        """Run the job to a terminal status.

        Raises:
            InvalidJobConfigurationError: The definition is invalid.
            MissingJobParameterError: A required parameter is absent.
            InvalidJobParameterError: A parameter is mistyped or rejected.
            JobRestartNotAllowedError: The job key already has a run.
            StoreUnavailableError: The run repository cannot be reached.
        """
        definition = self._definition
        definition.validate()
        effective = validate_parameters(
            definition.name, definition.parameters, parameters or {},
        )
        job_key = compute_job_key(
            definition.name,
            identifying_parameters(definition.parameters, effective),
        )
        self._stop_event.clear()

        job_run = self._repository.start_job(
            definition.name, job_key, effective, definition.prevent_restart,
        )
        started = self._timer()

        with LogContext.bind(
            job_name=definition.name, job_run_id=str(job_run.run_id),
        ):
            logger.info(
                "job_started",
                extra={"job_key": job_key, "steps": len(definition.steps)},
            )
            self._listeners.notify(Hook.BEFORE_JOB, job_run)

            results: list[StepResult] = []
            summary: list[str] = []
            try:
                for step in definition.steps:
                    if self._stop_event.is_set():
                        summary.append(f"stopped before step '{step.name}'")
                        break
                    result = self._run_step(job_run, step, effective)
                    results.append(result)
                    if result.status == RunStatus.FAILED:
                        summary.extend(_describe_failure(result))
                        break
            except Exception as exc:
                # The JobRun exists; it must still reach a terminal status
                logger.error(
                    "job_aborted",
                    extra={"error": str(exc), "completed_steps": len(results)},
                    exc_info=True,
                )
                summary.append(f"job aborted: {type(exc).__name__}: {exc}")

            status = RunStatus.FAILED if summary else RunStatus.COMPLETED
            error_summary = "; ".join(summary) or None
            final = self._repository.finish_job(
                job_run.run_id, status, error_summary,
            )
            duration_ms = int((self._timer() - started) * 1000)

            outcome = JobResult(
                job_run_id=job_run.run_id,
                job_name=definition.name,
                job_key=job_key,
                status=status,
                steps=tuple(results),
                started_at=job_run.started_at,
                completed_at=final.completed_at,
                duration_ms=duration_ms,
                error_summary=error_summary,
            )

            extra = {
                "status": status.value,
                "write_count": outcome.write_count,
                "duration_ms": duration_ms,
            }
            if status == RunStatus.COMPLETED:
                logger.info("job_completed", extra=extra)
            else:
                extra["error_summary"] = error_summary
                logger.error("job_failed", extra=extra)

            self._listeners.notify(Hook.AFTER_JOB, final)
            return outcome

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    def _run_step(
        self,
        job_run: JobRun,
        step: StepDefinition | TaskletStep,
        parameters: Mapping[str, Any],
    ) -> StepResult:
        if isinstance(step, TaskletStep):
            step_run = self._steps.execute_tasklet(job_run, step, parameters)
            return StepResult(
                step_name=step.name,
                status=step_run.status,
                mode=ExecutionMode.SERIAL,
                step_runs=(step_run,),
            )

        if step.mode == ExecutionMode.PARTITIONED:
            return self._run_partitioned(job_run, step, parameters)

        step_run = self._steps.execute(
            job_run, step, ExecutionContext(label=step.name), parameters,
        )
        return StepResult(
            step_name=step.name,
            status=step_run.status,
            mode=step.mode,
            step_runs=(step_run,),
        )

    def _run_partitioned(
        self,
        job_run: JobRun,
        step: StepDefinition,
        parameters: Mapping[str, Any],
    ) -> StepResult:
        try:
            contexts = step.partitioner.partition(step.grid_size)
        except Exception as exc:
            logger.error(
                "partitioning_failed",
                extra={"step_name": step.name, "error": str(exc)},
                exc_info=True,
            )
            return StepResult(
                step_name=step.name,
                status=RunStatus.FAILED,
                mode=step.mode,
                error_message=f"partitioning failed: {exc}",
            )

        logger.info(
            "partitions_created",
            extra={
                "step_name": step.name,
                "partitions": list(contexts),
                "grid_size": step.grid_size,
                "throttle_limit": step.throttle_limit,
            },
        )

        pool = WorkerPool(
            step.max_workers, step.throttle_limit, self._thread_name_prefix,
        )
        tasks = {
            label: _bind(self._run_partition, job_run, step, context, parameters)
            for label, context in contexts.items()
        }
        report = pool.run(tasks, stop_event=self._stop_event)

        partition_runs: list[PartitionRun] = []
        for label, context in contexts.items():
            if label in report.results:
                partition_runs.append(report.results[label])
            elif label in report.errors:
                # Crashed before its run record existed
                partition_runs.append(PartitionRun(
                    run_id=uuid4(),
                    label=label,
                    context=context,
                    status=RunStatus.FAILED,
                    completed_at=self._clock.now(),
                ))

        failed = any(p.status == RunStatus.FAILED for p in partition_runs)
        status = (
            RunStatus.FAILED
            if failed or report.not_dispatched
            else RunStatus.COMPLETED
        )
        return StepResult(
            step_name=step.name,
            status=status,
            mode=step.mode,
            step_runs=tuple(p.step_run for p in partition_runs if p.step_run),
            partition_runs=tuple(partition_runs),
            not_dispatched=report.not_dispatched,
        )

    def _run_partition(
        self,
        job_run: JobRun,
        step: StepDefinition,
        context: ExecutionContext,
        parameters: Mapping[str, Any],
    ) -> PartitionRun:
        with LogContext.bind(partition=context.label):
            partition_run = self._repository.start_partition(
                job_run.run_id, step.name, context,
            )
            try:
                step_run = self._steps.execute(
                    job_run, step, context, parameters,
                    partition_run_id=partition_run.run_id,
                )
            except Exception as exc:
                logger.error(
                    "partition_crashed",
                    extra={"error": str(exc)},
                    exc_info=True,
                )
                finished = replace(
                    partition_run,
                    status=RunStatus.FAILED,
                    completed_at=self._clock.now(),
                )
                self._repository.finish_partition(finished)
                return finished

            finished = replace(
                partition_run,
                status=step_run.status,
                step_run=step_run,
                completed_at=self._clock.now(),
            )
            self._repository.finish_partition(finished)
            if finished.status == RunStatus.COMPLETED:
                logger.info(
                    "partition_completed",
                    extra={"write_count": step_run.write_count},
                )
            else:
                logger.warning(
                    "partition_failed",
                    extra={
                        "error_code": step_run.error_code,
                        "failed_chunk_index": step_run.failed_chunk_index,
                        "write_count": step_run.write_count,
                    },
                )
            return finished


def _bind(fn: Callable[..., Any], *args: Any) -> Callable[[], Any]:
    return lambda: fn(*args)


def _describe_failure(result: StepResult) -> list[str]:
    lines: list[str] = []
    if result.error_message:
        lines.append(f"step '{result.step_name}': {result.error_message}")
    for partition_run in result.partition_runs:
        if partition_run.status != RunStatus.FAILED:
            continue
        step_run = partition_run.step_run
        if step_run is None:
            lines.append(
                f"step '{result.step_name}' partition '{partition_run.label}' crashed"
            )
        else:
            lines.append(
                f"step '{result.step_name}' partition '{partition_run.label}' "
                f"failed at chunk {step_run.failed_chunk_index}: "
                f"{step_run.error_code}: {step_run.error_message}"
            )
    if not result.partition_runs:
        for step_run in result.step_runs:
            if step_run.status == RunStatus.FAILED:
                lines.append(
                    f"step '{result.step_name}' failed at chunk "
                    f"{step_run.failed_chunk_index}: "
                    f"{step_run.error_code}: {step_run.error_message}"
                )
    if result.not_dispatched:
        lines.append(
            f"step '{result.step_name}' stopped; not dispatched: "
            f"{list(result.not_dispatched)}"
        )
    return lines
