"""
batch_engine.items -- Record sources, readers, processors and writers.
"""

from batch_engine.items.base import (
    Criteria,
    ItemProcessor,
    ItemReader,
    ItemWriter,
    KeyedSource,
    PagingSource,
    ReaderFactory,
    Tasklet,
    WriterFactory,
)
from batch_engine.items.readers import (
    FrozenPageReader,
    ListItemReader,
    SnapshotReader,
)
from batch_engine.items.writers import RetryingWriter

__all__ = [
    "Criteria",
    "FrozenPageReader",
    "ItemProcessor",
    "ItemReader",
    "ItemWriter",
    "KeyedSource",
    "ListItemReader",
    "PagingSource",
    "ReaderFactory",
    "RetryingWriter",
    "SnapshotReader",
    "Tasklet",
    "WriterFactory",
]
