"""
Job configuration schema.

Frozen dataclasses that YAML job configuration sets are parsed into.
``JobSettings`` is the human-authored source artifact; the domain package
turns it into a runnable ``JobDefinition``.
"""

from __future__ import annotations

from dataclasses import dataclass

from batch_engine.domain.types import ExecutionMode, ReaderStrategy


@dataclass(frozen=True)
class StepSettings:
    """Tunables of one chunk step."""

    step_name: str
    chunk_size: int
    page_size: int
    mode: ExecutionMode = ExecutionMode.PARTITIONED
    reader_strategy: ReaderStrategy = ReaderStrategy.FROZEN_PAGE
    grid_size: int = 1
    max_workers: int = 4
    throttle_limit: int = 1
    chunk_timeout_seconds: float | None = None


@dataclass(frozen=True)
class JobSettings:
    """A complete job configuration set."""

    job_name: str
    step: StepSettings
    prevent_restart: bool = True
    inactive_after_years: int = 1
    checksum: str = ""  # SHA-256 of the source document
