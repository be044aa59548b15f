"""Lifecycle listeners of the inactive-user job."""

from __future__ import annotations

from batch_kernel.logging_config import get_logger

from batch_engine.domain.listeners import (
    Listener,
    after_job,
    after_step,
    before_job,
    before_step,
)
from batch_engine.domain.types import JobRun, StepRun

logger = get_logger("user_jobs.listeners")


def log_before_job(run: JobRun) -> None:
    logger.info(
        "before_job",
        extra={"job_key": run.job_key, "status": run.status.value},
    )


def log_after_job(run: JobRun) -> None:
    logger.info(
        "after_job",
        extra={
            "status": run.status.value,
            "error_summary": run.error_summary,
        },
    )


def log_before_step(run: StepRun) -> None:
    logger.info("before_step", extra={"status": run.status.value})


def log_after_step(run: StepRun) -> None:
    logger.info(
        "after_step",
        extra={
            "status": run.status.value,
            "read_count": run.read_count,
            "write_count": run.write_count,
            "commit_count": run.commit_count,
        },
    )


def job_listeners() -> tuple[Listener, ...]:
    return (
        before_job(log_before_job, "inactive_job_listener"),
        after_job(log_after_job, "inactive_job_listener"),
    )


def step_listeners() -> tuple[Listener, ...]:
    return (
        before_step(log_before_step, "inactive_step_listener"),
        after_step(log_after_step, "inactive_step_listener"),
    )
