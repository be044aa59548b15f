"""
batch_engine.domain -- Pure types and value objects for the chunk engine.

ZERO I/O.  All run types are frozen dataclasses.
"""

from batch_engine.domain.definition import JobDefinition, StepDefinition, TaskletStep
from batch_engine.domain.listeners import (
    Hook,
    Listener,
    ListenerChain,
    after_job,
    after_step,
    before_job,
    before_step,
)
from batch_engine.domain.parameters import ParameterSpec, validate_parameters
from batch_engine.domain.partition import CategoryPartitioner, Partitioner
from batch_engine.domain.types import (
    SKIP,
    ChunkResult,
    ChunkState,
    ExecutionContext,
    ExecutionMode,
    JobResult,
    JobRun,
    PartitionRun,
    ReaderStrategy,
    RepeatStatus,
    RunStatus,
    Skip,
    StepResult,
    StepRun,
)

__all__ = [
    "SKIP",
    "CategoryPartitioner",
    "ChunkResult",
    "ChunkState",
    "ExecutionContext",
    "ExecutionMode",
    "Hook",
    "JobDefinition",
    "JobResult",
    "JobRun",
    "Listener",
    "ListenerChain",
    "ParameterSpec",
    "PartitionRun",
    "Partitioner",
    "ReaderStrategy",
    "RepeatStatus",
    "RunStatus",
    "Skip",
    "StepDefinition",
    "StepResult",
    "StepRun",
    "TaskletStep",
    "after_job",
    "after_step",
    "before_job",
    "before_step",
    "validate_parameters",
]
