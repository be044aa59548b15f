"""
The inactive-user job.

Users whose ``updated_date`` is older than ``now_date`` minus
``inactive_after_years`` and whose status is ACTIVE become INACTIVE.

Contract:
    ``build_inactive_user_job()`` assembles a JobDefinition from
    ``JobSettings``: one chunk step whose reader and writer are built by
    explicit per-partition factory functions.  In partitioned mode there is
    one partition per grade, and each partition reads only its grade.
    ``run_inactive_user_job()`` loads the settings, builds the job and runs
    it against a SQLAlchemy run repository, on the process-wide engine
    unless the caller passes its own session factory.

Parameters:
    ``now_date``              datetime, required.  Reference time.
    ``inactive_after_years``  int >= 1, optional (default from settings).

Invariants enforced:
    - The reader predicate excludes already-processed records (status
      ACTIVE), so the candidate set shrinks as chunks commit; readers use
      the frozen-page or snapshot strategy, never offset paging.
    - Grade partitions are disjoint: a user has exactly one grade.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from batch_kernel.db.engine import create_tables, get_session_factory, init_engine_from_url
from batch_kernel.domain.clock import Clock

from batch_config import JobSettings, get_job_settings

from batch_engine.domain.definition import JobDefinition, StepDefinition, TaskletStep
from batch_engine.domain.listeners import Listener
from batch_engine.domain.parameters import ParameterSpec
from batch_engine.domain.partition import CategoryPartitioner, Partitioner
from batch_engine.domain.types import (
    SKIP,
    ExecutionContext,
    ExecutionMode,
    JobResult,
    ReaderStrategy,
    Skip,
)
from batch_engine.items.base import ItemReader, ItemWriter
from batch_engine.items.readers import FrozenPageReader, SnapshotReader
from batch_engine.orchestrator import JobOrchestrator
from batch_engine.services.repository import JobRepository, SqlAlchemyJobRepository

from user_jobs.domain.types import Grade, UserRecord, UserStatus
from user_jobs.listeners import job_listeners, step_listeners
from user_jobs.repository import UserRepository, UserStatusWriter

JOB_NAME = "inactive_user_job"
PARTITION_KEY = "grade"
PARTITION_PREFIX = "inactive_user_task"


# =============================================================================
# Pure pieces
# =============================================================================


def inactive_cutoff(now_date: datetime, years: int) -> datetime:
    """``now_date`` moved back ``years`` calendar years (Feb 29 -> Feb 28)."""
    try:
        return now_date.replace(year=now_date.year - years)
    except ValueError:
        return now_date.replace(year=now_date.year - years, day=28)


def deactivate_user(record: UserRecord) -> UserRecord | Skip:
    """ACTIVE becomes INACTIVE; anything else is skipped."""
    if record.status != UserStatus.ACTIVE:
        return SKIP
    return record.deactivated()


def candidate_criteria(
    parameters: Mapping[str, Any],
    grade: Grade | None = None,
) -> dict[str, Any]:
    criteria: dict[str, Any] = {
        "cutoff": inactive_cutoff(
            parameters["now_date"], parameters["inactive_after_years"],
        ),
        "status": UserStatus.ACTIVE,
    }
    if grade is not None:
        criteria["grade"] = grade
    return criteria


def _at_least_one(value: int) -> str | None:
    return None if value >= 1 else "must be >= 1"


def job_parameters(settings: JobSettings) -> tuple[ParameterSpec, ...]:
    return (
        ParameterSpec("now_date", datetime),
        ParameterSpec(
            "inactive_after_years",
            int,
            required=False,
            default=settings.inactive_after_years,
            check=_at_least_one,
        ),
    )


# =============================================================================
# Factories
# =============================================================================


def reader_factory(
    session_factory: sessionmaker[Session],
    strategy: ReaderStrategy,
    page_size: int,
) -> Callable[[ExecutionContext, Mapping[str, Any]], ItemReader]:
    """Factory building a fresh reader scoped to one partition's run."""

    def build(context: ExecutionContext, parameters: Mapping[str, Any]) -> ItemReader:
        criteria = candidate_criteria(parameters, context.get(PARTITION_KEY))
        source = UserRepository(session_factory)
        if strategy == ReaderStrategy.SNAPSHOT:
            return SnapshotReader(source, page_size, criteria)
        return FrozenPageReader(source, page_size, criteria)

    return build


def writer_factory(
    session_factory: sessionmaker[Session],
) -> Callable[[ExecutionContext, Mapping[str, Any]], ItemWriter]:
    def build(context: ExecutionContext, parameters: Mapping[str, Any]) -> ItemWriter:
        return UserStatusWriter(session_factory)

    return build


def grade_partitioner(
    session_factory: sessionmaker[Session] | None = None,
) -> Partitioner:
    """One partition per grade.

    With a session factory, partitions come from the grades present in
    the table at job start; otherwise from every Grade member.
    """
    if session_factory is None:
        return CategoryPartitioner.from_enum(
            PARTITION_KEY, Grade, label_prefix=PARTITION_PREFIX,
        )
    users = UserRepository(session_factory)
    return CategoryPartitioner(
        PARTITION_KEY, users.distinct_grades, label_prefix=PARTITION_PREFIX,
    )


# =============================================================================
# Assembly
# =============================================================================


def build_inactive_user_job(
    settings: JobSettings,
    session_factory: sessionmaker[Session],
    partitioner: Partitioner | None = None,
    writer: Callable[[ExecutionContext, Mapping[str, Any]], ItemWriter] | None = None,
    listeners: tuple[Listener, ...] = (),
) -> JobDefinition:
    """Assemble the job from its settings.

    Args:
        settings: Validated job settings.
        session_factory: Sessions for reads and writes.
        partitioner: Overrides the fixed per-grade partitioner.
        writer: Overrides the writer factory.
        listeners: Extra job-level listeners, after the logging ones.
    """
    step_settings = settings.step
    if step_settings.mode == ExecutionMode.PARTITIONED and partitioner is None:
        partitioner = grade_partitioner()

    step = StepDefinition(
        name=step_settings.step_name,
        chunk_size=step_settings.chunk_size,
        reader_factory=reader_factory(
            session_factory,
            step_settings.reader_strategy,
            step_settings.page_size,
        ),
        processor=deactivate_user,
        writer_factory=writer or writer_factory(session_factory),
        mode=step_settings.mode,
        reader_strategy=step_settings.reader_strategy,
        partitioner=partitioner,
        grid_size=step_settings.grid_size,
        max_workers=step_settings.max_workers,
        throttle_limit=step_settings.throttle_limit,
        chunk_timeout_seconds=step_settings.chunk_timeout_seconds,
        listeners=step_listeners(),
    )
    return JobDefinition(
        name=settings.job_name,
        steps=(step,),
        parameters=job_parameters(settings),
        listeners=job_listeners() + tuple(listeners),
        prevent_restart=settings.prevent_restart,
    )


def build_inactive_user_tasklet_job(
    settings: JobSettings,
    session_factory: sessionmaker[Session],
) -> JobDefinition:
    """Single-step variant: one tasklet flips every candidate at once."""
    from user_jobs.tasklet import InactiveUserTasklet

    step = TaskletStep(
        name=f"{settings.step.step_name}_tasklet",
        tasklet=InactiveUserTasklet(session_factory),
        listeners=step_listeners(),
    )
    return JobDefinition(
        name=settings.job_name,
        steps=(step,),
        parameters=job_parameters(settings),
        listeners=job_listeners(),
        prevent_restart=settings.prevent_restart,
    )


def run_inactive_user_job(
    now_date: datetime,
    session_factory: sessionmaker[Session] | None = None,
    config_dir: Path | None = None,
    clock: Clock | None = None,
    repository: JobRepository | None = None,
    database_url: str | None = None,
    **parameters: Any,
) -> JobResult:
    """Load settings, build the job and run it once.

    Without ``session_factory`` the process-wide engine is used; passing
    ``database_url`` initializes it first and creates missing tables.

    Raises:
        RuntimeError: No session factory given and no engine initialized.
    """
    if session_factory is None:
        if database_url is not None:
            init_engine_from_url(database_url)
            create_tables()
        session_factory = get_session_factory()

    settings = get_job_settings(JOB_NAME, config_dir)
    definition = build_inactive_user_job(settings, session_factory)
    orchestrator = JobOrchestrator(
        definition,
        repository=repository or SqlAlchemyJobRepository(session_factory, clock),
        clock=clock,
    )
    return orchestrator.run({"now_date": now_date, **parameters})
