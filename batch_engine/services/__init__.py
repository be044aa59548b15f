"""
batch_engine.services -- Stateful engine services.

ChunkRunner drives one read/process/write loop, WorkerPool throttles
concurrent loops, StepExecutor records one step execution, and the
repositories persist run records.
"""

from batch_engine.services.chunk_runner import ChunkLoopOutcome, ChunkRunner
from batch_engine.services.repository import (
    InMemoryJobRepository,
    JobRepository,
    SqlAlchemyJobRepository,
)
from batch_engine.services.step_executor import StepExecutor
from batch_engine.services.worker_pool import PoolReport, WorkerPool

__all__ = [
    "ChunkLoopOutcome",
    "ChunkRunner",
    "InMemoryJobRepository",
    "JobRepository",
    "PoolReport",
    "SqlAlchemyJobRepository",
    "StepExecutor",
    "WorkerPool",
]
