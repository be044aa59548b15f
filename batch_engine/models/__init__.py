"""
batch_engine.models -- ORM models for run audit records.

Importing this package registers the tables on ``Base.metadata``.
"""

from batch_engine.models.run import JobRunModel, PartitionRunModel, StepRunModel

__all__ = ["JobRunModel", "PartitionRunModel", "StepRunModel"]
