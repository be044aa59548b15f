"""
Job repositories -- Append-only run records for jobs, partitions and steps.

Contract:
    A repository creates run records in RUNNING state and finalizes each
    exactly once.  ``start_job()`` enforces restart prevention: a guarded
    job key that already has a run raises ``JobRestartNotAllowedError``
    before anything executes.

    ``SqlAlchemyJobRepository`` persists to the ``job_runs``,
    ``partition_runs`` and ``step_runs`` tables.  Every call opens its own
    short session, so partition workers can record concurrently.
    ``InMemoryJobRepository`` keeps the same records in process memory.

Architecture: batch_engine/services.  Imports from batch_engine.domain,
    batch_engine.models and kernel services.

Invariants enforced:
    - Finalization is ``UPDATE ... WHERE status = 'running'``; zero rows
      updated means the run was already finalized (or never existed).
    - All timestamps come from the injected Clock.

Failure modes:
    - Store errors while starting a job raise ``StoreUnavailableError``
      (a startup fault, nothing has run yet).
    - A second finalization raises ``RunAlreadyFinalizedError``.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import replace
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.domain.clock import Clock, SystemClock
from batch_kernel.exceptions import (
    JobRestartNotAllowedError,
    JobRunNotFoundError,
    RunAlreadyFinalizedError,
    StoreUnavailableError,
)
from batch_kernel.logging_config import get_logger
from batch_kernel.utils.hashing import to_jsonable

from batch_engine.domain.types import (
    ExecutionContext,
    JobRun,
    PartitionRun,
    RunStatus,
    StepRun,
)
from batch_engine.models.run import JobRunModel, PartitionRunModel, StepRunModel

logger = get_logger("engine.repository")

# Actor recorded on run rows when the caller supplies none
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000001")

_TERMINAL = (RunStatus.COMPLETED, RunStatus.FAILED)


class JobRepository(ABC):
    """Run record store used by the orchestrator."""

    @abstractmethod
    def start_job(
        self,
        job_name: str,
        job_key: str,
        parameters: Mapping[str, Any],
        prevent_restart: bool = True,
    ) -> JobRun: ...

    @abstractmethod
    def finish_job(
        self,
        run_id: UUID,
        status: RunStatus,
        error_summary: str | None = None,
    ) -> JobRun: ...

    @abstractmethod
    def start_partition(
        self,
        job_run_id: UUID,
        step_name: str,
        context: ExecutionContext,
    ) -> PartitionRun: ...

    @abstractmethod
    def finish_partition(self, partition_run: PartitionRun) -> None:
        """Finalize with ``partition_run.status`` (must be terminal)."""

    @abstractmethod
    def start_step(
        self,
        job_run_id: UUID,
        step_name: str,
        partition_run_id: UUID | None = None,
        partition: str | None = None,
    ) -> StepRun: ...

    @abstractmethod
    def finish_step(self, job_run_id: UUID, step_run: StepRun) -> None:
        """Finalize with the status and counters of ``step_run``."""

    @abstractmethod
    def get_job_run(self, run_id: UUID) -> JobRun: ...

    @abstractmethod
    def find_by_key(self, job_key: str) -> tuple[JobRun, ...]: ...

    @abstractmethod
    def list_step_runs(self, job_run_id: UUID) -> tuple[StepRun, ...]: ...


def _require_terminal(status: RunStatus) -> None:
    if status not in _TERMINAL:
        raise ValueError(f"cannot finalize a run with status {status.value}")


# =============================================================================
# SQLAlchemy
# =============================================================================


class SqlAlchemyJobRepository(JobRepository):
    """Run records in the ``job_runs`` / ``partition_runs`` / ``step_runs`` tables.

    Non-goals:
        - Does NOT share sessions with item writers; run records commit
          independently of chunk data.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        actor_id: UUID | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._actor_id = actor_id or SYSTEM_ACTOR_ID

    # -------------------------------------------------------------------------
    # Job runs
    # -------------------------------------------------------------------------

    def start_job(
        self,
        job_name: str,
        job_key: str,
        parameters: Mapping[str, Any],
        prevent_restart: bool = True,
    ) -> JobRun:
        now = self._clock.now()
        try:
            with self._session_factory() as session:
                if prevent_restart:
                    existing = session.execute(
                        select(JobRunModel.id)
                        .where(JobRunModel.job_key == job_key)
                        .limit(1)
                    ).scalar_one_or_none()
                    if existing is not None:
                        raise JobRestartNotAllowedError(
                            job_name, job_key, str(existing),
                        )

                model = JobRunModel(
                    id=uuid4(),
                    job_name=job_name,
                    job_key=job_key,
                    restart_guard=job_key if prevent_restart else None,
                    status=RunStatus.RUNNING.value,
                    parameters=to_jsonable(dict(parameters)),
                    started_at=now,
                    created_by_id=self._actor_id,
                )
                session.add(model)
                session.commit()
                run_id = model.id
        except IntegrityError as exc:
            # Lost the race against a concurrent start with the same key
            raise JobRestartNotAllowedError(job_name, job_key, "unknown") from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(job_name, str(exc)) from exc

        logger.info(
            "job_run_created",
            extra={"job_run_id": str(run_id), "job_key": job_key},
        )
        return JobRun(
            run_id=run_id,
            job_name=job_name,
            job_key=job_key,
            status=RunStatus.RUNNING,
            parameters=dict(parameters),
            started_at=now,
        )

    def finish_job(
        self,
        run_id: UUID,
        status: RunStatus,
        error_summary: str | None = None,
    ) -> JobRun:
        _require_terminal(status)
        with self._session_factory() as session:
            self._finalize(
                session,
                JobRunModel,
                "job_run",
                run_id,
                status=status.value,
                completed_at=self._clock.now(),
                error_summary=error_summary,
            )
            session.commit()
            return session.get(JobRunModel, run_id).to_dto()

    def get_job_run(self, run_id: UUID) -> JobRun:
        with self._session_factory() as session:
            model = session.get(JobRunModel, run_id)
            if model is None:
                raise JobRunNotFoundError(str(run_id))
            return model.to_dto()

    def find_by_key(self, job_key: str) -> tuple[JobRun, ...]:
        with self._session_factory() as session:
            models = session.execute(
                select(JobRunModel)
                .where(JobRunModel.job_key == job_key)
                .order_by(JobRunModel.started_at)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    # -------------------------------------------------------------------------
    # Partition runs
    # -------------------------------------------------------------------------

    def start_partition(
        self,
        job_run_id: UUID,
        step_name: str,
        context: ExecutionContext,
    ) -> PartitionRun:
        now = self._clock.now()
        model = PartitionRunModel(
            id=uuid4(),
            job_run_id=job_run_id,
            step_name=step_name,
            label=context.label,
            context=to_jsonable(context.to_dict()),
            status=RunStatus.RUNNING.value,
            started_at=now,
            created_by_id=self._actor_id,
        )
        with self._session_factory() as session:
            session.add(model)
            session.commit()
        return PartitionRun(
            run_id=model.id,
            label=context.label,
            context=context,
            status=RunStatus.RUNNING,
            started_at=now,
        )

    def finish_partition(self, partition_run: PartitionRun) -> None:
        _require_terminal(partition_run.status)
        with self._session_factory() as session:
            self._finalize(
                session,
                PartitionRunModel,
                "partition_run",
                partition_run.run_id,
                status=partition_run.status.value,
                completed_at=partition_run.completed_at or self._clock.now(),
            )
            session.commit()

    # -------------------------------------------------------------------------
    # Step runs
    # -------------------------------------------------------------------------

    def start_step(
        self,
        job_run_id: UUID,
        step_name: str,
        partition_run_id: UUID | None = None,
        partition: str | None = None,
    ) -> StepRun:
        now = self._clock.now()
        model = StepRunModel(
            id=uuid4(),
            job_run_id=job_run_id,
            partition_run_id=partition_run_id,
            step_name=step_name,
            partition=partition,
            status=RunStatus.RUNNING.value,
            started_at=now,
            created_by_id=self._actor_id,
        )
        with self._session_factory() as session:
            session.add(model)
            session.commit()
        return StepRun(
            run_id=model.id,
            step_name=step_name,
            status=RunStatus.RUNNING,
            partition=partition,
            started_at=now,
        )

    def finish_step(self, job_run_id: UUID, step_run: StepRun) -> None:
        _require_terminal(step_run.status)
        with self._session_factory() as session:
            self._finalize(
                session,
                StepRunModel,
                "step_run",
                step_run.run_id,
                status=step_run.status.value,
                read_count=step_run.read_count,
                write_count=step_run.write_count,
                skip_count=step_run.skip_count,
                commit_count=step_run.commit_count,
                duration_ms=step_run.duration_ms,
                completed_at=step_run.completed_at or self._clock.now(),
                error_code=step_run.error_code,
                error_message=step_run.error_message,
                failed_chunk_index=step_run.failed_chunk_index,
            )
            session.commit()

    def list_step_runs(self, job_run_id: UUID) -> tuple[StepRun, ...]:
        with self._session_factory() as session:
            models = session.execute(
                select(StepRunModel)
                .where(StepRunModel.job_run_id == job_run_id)
                .order_by(StepRunModel.started_at, StepRunModel.partition)
            ).scalars().all()
            return tuple(m.to_dto() for m in models)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _finalize(
        self,
        session: Session,
        model_cls: type,
        kind: str,
        run_id: UUID,
        **values: Any,
    ) -> None:
        result = session.execute(
            update(model_cls)
            .where(
                model_cls.id == run_id,
                model_cls.status == RunStatus.RUNNING.value,
            )
            .values(**values)
        )
        if result.rowcount == 0:
            session.rollback()
            if session.get(model_cls, run_id) is None:
                raise JobRunNotFoundError(str(run_id))
            raise RunAlreadyFinalizedError(kind, str(run_id))


# =============================================================================
# In-memory
# =============================================================================


class InMemoryJobRepository(JobRepository):
    """Process-local run records, guarded by one lock."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._jobs: dict[UUID, JobRun] = {}
        self._partitions: dict[UUID, PartitionRun] = {}
        self._steps: dict[UUID, tuple[UUID, StepRun]] = {}

    def start_job(
        self,
        job_name: str,
        job_key: str,
        parameters: Mapping[str, Any],
        prevent_restart: bool = True,
    ) -> JobRun:
        with self._lock:
            if prevent_restart:
                for run in self._jobs.values():
                    if run.job_key == job_key:
                        raise JobRestartNotAllowedError(
                            job_name, job_key, str(run.run_id),
                        )
            run = JobRun(
                run_id=uuid4(),
                job_name=job_name,
                job_key=job_key,
                status=RunStatus.RUNNING,
                parameters=dict(parameters),
                started_at=self._clock.now(),
            )
            self._jobs[run.run_id] = run
            return run

    def finish_job(
        self,
        run_id: UUID,
        status: RunStatus,
        error_summary: str | None = None,
    ) -> JobRun:
        _require_terminal(status)
        with self._lock:
            run = self._jobs.get(run_id)
            if run is None:
                raise JobRunNotFoundError(str(run_id))
            if run.status != RunStatus.RUNNING:
                raise RunAlreadyFinalizedError("job_run", str(run_id))
            run = replace(
                run,
                status=status,
                completed_at=self._clock.now(),
                error_summary=error_summary,
            )
            self._jobs[run_id] = run
            return run

    def start_partition(
        self,
        job_run_id: UUID,
        step_name: str,
        context: ExecutionContext,
    ) -> PartitionRun:
        run = PartitionRun(
            run_id=uuid4(),
            label=context.label,
            context=context,
            status=RunStatus.RUNNING,
            started_at=self._clock.now(),
        )
        with self._lock:
            self._partitions[run.run_id] = run
        return run

    def finish_partition(self, partition_run: PartitionRun) -> None:
        _require_terminal(partition_run.status)
        with self._lock:
            current = self._partitions.get(partition_run.run_id)
            if current is None:
                raise JobRunNotFoundError(str(partition_run.run_id))
            if current.status != RunStatus.RUNNING:
                raise RunAlreadyFinalizedError(
                    "partition_run", str(partition_run.run_id),
                )
            self._partitions[partition_run.run_id] = partition_run

    def start_step(
        self,
        job_run_id: UUID,
        step_name: str,
        partition_run_id: UUID | None = None,
        partition: str | None = None,
    ) -> StepRun:
        run = StepRun(
            run_id=uuid4(),
            step_name=step_name,
            status=RunStatus.RUNNING,
            partition=partition,
            started_at=self._clock.now(),
        )
        with self._lock:
            self._steps[run.run_id] = (job_run_id, run)
        return run

    def finish_step(self, job_run_id: UUID, step_run: StepRun) -> None:
        _require_terminal(step_run.status)
        with self._lock:
            current = self._steps.get(step_run.run_id)
            if current is None:
                raise JobRunNotFoundError(str(step_run.run_id))
            if current[1].status != RunStatus.RUNNING:
                raise RunAlreadyFinalizedError("step_run", str(step_run.run_id))
            self._steps[step_run.run_id] = (job_run_id, step_run)

    def get_job_run(self, run_id: UUID) -> JobRun:
        with self._lock:
            run = self._jobs.get(run_id)
        if run is None:
            raise JobRunNotFoundError(str(run_id))
        return run

    def find_by_key(self, job_key: str) -> tuple[JobRun, ...]:
        with self._lock:
            return tuple(r for r in self._jobs.values() if r.job_key == job_key)

    def list_step_runs(self, job_run_id: UUID) -> tuple[StepRun, ...]:
        with self._lock:
            return tuple(
                run for owner, run in self._steps.values() if owner == job_run_id
            )
