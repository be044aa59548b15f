"""
ORM models for run audit records.

Contract:
    JobRunModel, PartitionRunModel and StepRunModel persist the append-only
    execution hierarchy: a job run owns N partition runs (0 when the step is
    unpartitioned), each owning one step run.  Rows are inserted RUNNING at
    start and finalized exactly once.  Each has a ``to_dto()`` method.

Architecture: batch_engine/models.  Imports from batch_kernel.db.base only.

Invariants enforced:
    - ``restart_guard`` is UNIQUE on JobRunModel.  It holds the job key when
      the run was started with restart prevention and NULL otherwise, so only
      guarded runs collide.
    - Finalization is a conditional UPDATE on ``status = 'running'``
      (see JobRepository); a row leaves RUNNING at most once.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from batch_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from batch_engine.domain.types import JobRun, StepRun


class JobRunModel(TrackedBase):
    """Persistent job run header."""

    __tablename__ = "job_runs"

    __table_args__ = (
        Index("ix_job_runs_status", "status"),
        Index("ix_job_runs_job_name", "job_name"),
        Index("ix_job_runs_job_key", "job_key"),
    )

    job_name: Mapped[str] = mapped_column(String(200), nullable=False)
    job_key: Mapped[str] = mapped_column(String(64), nullable=False)
    restart_guard: Mapped[str | None] = mapped_column(
        String(64), nullable=True, unique=True,
    )
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    parameters: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    partitions: Mapped[list["PartitionRunModel"]] = relationship(
        "PartitionRunModel",
        back_populates="job_run",
        foreign_keys="PartitionRunModel.job_run_id",
    )

    def to_dto(self) -> JobRun:
        from batch_engine.domain.types import JobRun, RunStatus

        return JobRun(
            run_id=self.id,
            job_name=self.job_name,
            job_key=self.job_key,
            status=RunStatus(self.status),
            parameters=self.parameters or {},
            started_at=_aware(self.started_at),
            completed_at=_aware(self.completed_at),
            error_summary=self.error_summary,
        )


class PartitionRunModel(TrackedBase):
    """One partition of a partitioned step."""

    __tablename__ = "partition_runs"

    __table_args__ = (
        Index("ix_partition_runs_job_status", "job_run_id", "status"),
    )

    job_run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("job_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_name: Mapped[str] = mapped_column(String(200), nullable=False)
    label: Mapped[str] = mapped_column(String(200), nullable=False)
    context: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    job_run: Mapped["JobRunModel"] = relationship(
        "JobRunModel",
        back_populates="partitions",
        foreign_keys=[job_run_id],
    )


class StepRunModel(TrackedBase):
    """One execution of a step: per partition, or the whole step."""

    __tablename__ = "step_runs"

    __table_args__ = (
        Index("ix_step_runs_job", "job_run_id"),
        Index("ix_step_runs_partition", "partition_run_id"),
    )

    job_run_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("job_runs.id", ondelete="CASCADE"),
        nullable=False,
    )
    partition_run_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("partition_runs.id", ondelete="CASCADE"),
        nullable=True,
    )
    step_name: Mapped[str] = mapped_column(String(200), nullable=False)
    partition: Mapped[str | None] = mapped_column(String(200), nullable=True)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    read_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    write_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skip_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    commit_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    duration_ms: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    failed_chunk_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def to_dto(self) -> StepRun:
        from batch_engine.domain.types import RunStatus, StepRun

        return StepRun(
            run_id=self.id,
            step_name=self.step_name,
            status=RunStatus(self.status),
            partition=self.partition,
            read_count=self.read_count,
            write_count=self.write_count,
            skip_count=self.skip_count,
            commit_count=self.commit_count,
            started_at=_aware(self.started_at),
            completed_at=_aware(self.completed_at),
            duration_ms=self.duration_ms,
            error_code=self.error_code,
            error_message=self.error_message,
            failed_chunk_index=self.failed_chunk_index,
        )


def _aware(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes; run timestamps are always UTC
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
