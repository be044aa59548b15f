"""
batch_engine.domain.definition -- Explicit job and step structs.

A job is described by plain frozen dataclasses enumerating chunk size,
throttle limit, partition strategy and the reader/processor/writer
bindings.  The orchestrator builds the runnable pipeline directly from
them; there is no fluent builder.

Reader and writer bindings are factories invoked once per partition (or
per thread in multi-threaded mode), so every chunk loop owns freshly
constructed instances scoped to its run.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from batch_kernel.exceptions import InvalidJobConfigurationError

from batch_engine.domain.listeners import Listener
from batch_engine.domain.parameters import ParameterSpec
from batch_engine.domain.partition import Partitioner
from batch_engine.domain.types import ExecutionMode, ReaderStrategy
from batch_engine.items.base import (
    ItemProcessor,
    ReaderFactory,
    Tasklet,
    WriterFactory,
)


@dataclass(frozen=True)
class StepDefinition:
    """A chunk-oriented step.

    ``throttle_limit`` bounds concurrently active chunk loops (partitions
    in PARTITIONED mode, threads in MULTI_THREADED mode).  ``max_workers``
    is the pool capacity; keep the throttle below it to leave headroom.
    """

    name: str
    chunk_size: int
    reader_factory: ReaderFactory
    processor: ItemProcessor
    writer_factory: WriterFactory
    mode: ExecutionMode = ExecutionMode.SERIAL
    reader_strategy: ReaderStrategy = ReaderStrategy.FROZEN_PAGE
    partitioner: Partitioner | None = None
    grid_size: int = 1
    max_workers: int = 4
    throttle_limit: int = 1
    chunk_timeout_seconds: float | None = None
    listeners: tuple[Listener, ...] = ()

    def configuration_errors(self) -> list[str]:
        errors: list[str] = []
        if self.chunk_size < 1:
            errors.append(f"step '{self.name}': chunk_size must be >= 1")
        if self.max_workers < 1:
            errors.append(f"step '{self.name}': max_workers must be >= 1")
        if not 1 <= self.throttle_limit <= max(self.max_workers, 1):
            errors.append(
                f"step '{self.name}': throttle_limit must be between 1 and "
                f"max_workers ({self.max_workers}), got {self.throttle_limit}"
            )
        if self.mode == ExecutionMode.PARTITIONED and self.partitioner is None:
            errors.append(f"step '{self.name}': partitioned mode needs a partitioner")
        if (
            self.mode == ExecutionMode.MULTI_THREADED
            and self.reader_strategy != ReaderStrategy.SNAPSHOT
        ):
            errors.append(
                f"step '{self.name}': multi_threaded mode requires the "
                f"snapshot reader strategy"
            )
        if self.chunk_timeout_seconds is not None and self.chunk_timeout_seconds <= 0:
            errors.append(f"step '{self.name}': chunk_timeout_seconds must be > 0")
        return errors


@dataclass(frozen=True)
class TaskletStep:
    """A single-unit step: ``tasklet`` is called until it returns FINISHED."""

    name: str
    tasklet: Tasklet
    max_iterations: int = 1000
    listeners: tuple[Listener, ...] = ()

    def configuration_errors(self) -> list[str]:
        if self.max_iterations < 1:
            return [f"step '{self.name}': max_iterations must be >= 1"]
        return []


@dataclass(frozen=True)
class JobDefinition:
    """An ordered sequence of steps plus declared parameters and listeners."""

    name: str
    steps: tuple[StepDefinition | TaskletStep, ...]
    parameters: tuple[ParameterSpec, ...] = ()
    listeners: tuple[Listener, ...] = ()
    prevent_restart: bool = True

    def validate(self) -> None:
        """Raise ``InvalidJobConfigurationError`` listing every problem."""
        errors: list[str] = []
        if not self.steps:
            errors.append("job has no steps")
        names = [s.name for s in self.steps]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            errors.append(f"duplicate step names: {duplicates}")
        for step in self.steps:
            errors.extend(step.configuration_errors())
        if errors:
            raise InvalidJobConfigurationError(self.name, errors)

    def describe(self) -> dict[str, Any]:
        return {
            "job_name": self.name,
            "steps": [s.name for s in self.steps],
            "prevent_restart": self.prevent_restart,
        }
