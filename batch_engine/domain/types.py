"""
batch_engine.domain.types -- Pure frozen dataclasses for the chunk engine.

ZERO I/O.

Frozen dataclasses with enum status fields and tuples for immutable
collections.  Runs are built by the engine and handed to listeners and
callers; nothing downstream can mutate them.

Invariants enforced:
    - ExecutionContext is read-only once created by the partitioner.
    - A run carries exactly one terminal status once finalized.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class RunStatus(str, Enum):
    """Lifecycle status shared by job, partition and step runs."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ChunkState(str, Enum):
    """States of the chunk loop.

    READING -> READING      buffer below chunk size
    READING -> WRITING      buffer full, or source exhausted with items
    WRITING -> COMMITTED    writer succeeded, next chunk starts READING
    WRITING -> FAILED       terminal for the partition
    READING -> DONE         source exhausted with an empty buffer
    """

    READING = "reading"
    WRITING = "writing"
    COMMITTED = "committed"
    FAILED = "failed"
    DONE = "done"


class ExecutionMode(str, Enum):
    """How a chunk step is deployed.  The modes are alternatives."""

    SERIAL = "serial"  # One chunk loop on the caller's thread
    PARTITIONED = "partitioned"  # One chunk loop per partition, throttled
    MULTI_THREADED = "multi_threaded"  # N chunk loops sharing one reader


class ReaderStrategy(str, Enum):
    """Paging strategy for readers over a self-compacting predicate."""

    FROZEN_PAGE = "frozen_page"  # Always request page 0
    SNAPSHOT = "snapshot"  # Snapshot keys once, load by key slices


class RepeatStatus(str, Enum):
    """Return value of a tasklet invocation."""

    CONTINUABLE = "continuable"
    FINISHED = "finished"


# =============================================================================
# Skip marker
# =============================================================================


class Skip:
    """Processor result that drops a record from the pending chunk."""

    _instance: Skip | None = None

    def __new__(cls) -> Skip:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SKIP"

    def __bool__(self) -> bool:
        return False


SKIP = Skip()


# =============================================================================
# Execution context
# =============================================================================


@dataclass(frozen=True, eq=False)
class ExecutionContext(Mapping[str, Any]):
    """Immutable parameter bag scoping one partition's run.

    Behaves as a read-only mapping (``ctx["grade"]``) and carries the
    partition label it was created under.
    """

    label: str
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", MappingProxyType(dict(self.params)))

    def __getitem__(self, key: str) -> Any:
        return self.params[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.params)

    def __len__(self) -> int:
        return len(self.params)

    def __hash__(self) -> int:
        return hash((self.label, tuple(sorted(self.params.items()))))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ExecutionContext):
            return NotImplemented
        return self.label == other.label and dict(self.params) == dict(other.params)

    def to_dict(self) -> dict[str, Any]:
        return dict(self.params)


# =============================================================================
# Run DTOs
# =============================================================================


@dataclass(frozen=True)
class ChunkResult:
    """Outcome of one read-process-write cycle."""

    chunk_index: int  # 0-indexed within the step run
    state: ChunkState  # COMMITTED, FAILED or DONE
    read_count: int = 0
    write_count: int = 0
    skip_count: int = 0
    duration_ms: int = 0
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class StepRun:
    """Immutable snapshot of one step execution (one per partition)."""

    run_id: UUID
    step_name: str
    status: RunStatus
    partition: str | None = None  # None for unpartitioned steps
    read_count: int = 0
    write_count: int = 0
    skip_count: int = 0
    commit_count: int = 0
    chunks: tuple[ChunkResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    error_code: str | None = None
    error_message: str | None = None
    failed_chunk_index: int | None = None

    @property
    def committed_chunk_sizes(self) -> tuple[int, ...]:
        """Write counts of committed chunks, in commit order."""
        return tuple(
            c.write_count for c in self.chunks if c.state == ChunkState.COMMITTED
        )


@dataclass(frozen=True)
class PartitionRun:
    """Immutable snapshot of one partition: its context and its step run."""

    run_id: UUID
    label: str
    context: ExecutionContext
    status: RunStatus
    step_run: StepRun | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def write_count(self) -> int:
        return self.step_run.write_count if self.step_run else 0


@dataclass(frozen=True)
class JobRun:
    """Immutable snapshot of a job run header, as seen by listeners."""

    run_id: UUID
    job_name: str
    job_key: str
    status: RunStatus
    parameters: Mapping[str, Any] = field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_summary: str | None = None


@dataclass(frozen=True)
class StepResult:
    """Outcome of one step of a job, partitioned or not."""

    step_name: str
    status: RunStatus
    mode: ExecutionMode
    step_runs: tuple[StepRun, ...] = ()
    partition_runs: tuple[PartitionRun, ...] = ()
    not_dispatched: tuple[str, ...] = ()
    error_message: str | None = None  # Step-level failure before any partition ran

    @property
    def write_count(self) -> int:
        return sum(s.write_count for s in self.step_runs)

    @property
    def failed_partitions(self) -> tuple[str, ...]:
        return tuple(
            p.label for p in self.partition_runs if p.status == RunStatus.FAILED
        )


@dataclass(frozen=True)
class JobResult:
    """Immutable result of ``JobOrchestrator.run()``.

    ``status`` is COMPLETED only when every step, and every partition of
    every step, completed.
    """

    job_run_id: UUID
    job_name: str
    job_key: str
    status: RunStatus
    steps: tuple[StepResult, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
    error_summary: str | None = None

    @property
    def partition_runs(self) -> tuple[PartitionRun, ...]:
        return tuple(p for s in self.steps for p in s.partition_runs)

    @property
    def step_runs(self) -> tuple[StepRun, ...]:
        return tuple(r for s in self.steps for r in s.step_runs)

    @property
    def write_count(self) -> int:
        return sum(s.write_count for s in self.steps)

    @property
    def failed_partitions(self) -> tuple[str, ...]:
        return tuple(label for s in self.steps for label in s.failed_partitions)

    def writes_by_partition(self) -> dict[str, int]:
        """Processed record count per partition label, for audit."""
        return {p.label: p.write_count for p in self.partition_runs}
