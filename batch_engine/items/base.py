"""
Item contracts for the chunk engine: sources, readers, processors, writers.

Contract:
    ``PagingSource`` is the store boundary: a predicate-filtered, paged read
    whose ordering is consistent across calls.  ``KeyedSource`` adds the
    load-by-keys operation the snapshot strategy needs.
    ``ItemReader`` is an iterator of records with a ``close()``.
    An item processor is any callable ``record -> record | SKIP``; it must
    be pure (no I/O, no shared mutable state).
    ``ItemWriter.write()`` is atomic: the whole batch is durable, or none
    of it is and an exception is raised.

Architecture:
    batch_engine/items.  Imports from batch_engine.domain only.

Non-goals:
    - Sources do NOT manage transactions for writers.
    - Writers do NOT retry; see ``RetryingWriter`` for an explicit policy.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterator, Mapping, Sequence
from typing import Any, Protocol, TypeVar, runtime_checkable

from batch_engine.domain.types import ExecutionContext, RepeatStatus, Skip

R = TypeVar("R")

Criteria = Mapping[str, Any]


@runtime_checkable
class PagingSource(Protocol[R]):
    """Predicate-filtered, paged, consistently ordered record source."""

    def fetch_page(
        self,
        page_index: int,
        page_size: int,
        criteria: Criteria,
    ) -> Sequence[R]:
        """Return the records at ``[page_index * page_size, +page_size)``
        of the ordered set matching ``criteria``.
        """
        ...


@runtime_checkable
class KeyedSource(PagingSource[R], Protocol[R]):
    """Paging source that can also load records by key."""

    def fetch_by_keys(self, keys: Sequence[Hashable]) -> Sequence[R]:
        """Return current state of the given records, in key order.

        Keys with no record are omitted.
        """
        ...


@runtime_checkable
class ItemReader(Protocol[R]):
    """Iterator of records; ``StopIteration`` marks end of stream."""

    def __iter__(self) -> Iterator[R]: ...

    def __next__(self) -> R: ...

    def close(self) -> None: ...


ItemProcessor = Callable[[R], R | Skip]


@runtime_checkable
class ItemWriter(Protocol[R]):
    """Atomic batch writer."""

    def write(self, items: Sequence[R]) -> None:
        """Persist ``items`` together or not at all.

        Raises:
            Exception: On any failure; nothing from ``items`` is persisted.
        """
        ...


# Factories are invoked once per partition (or per thread), so each
# chunk loop gets freshly constructed readers and writers.
ReaderFactory = Callable[[ExecutionContext, Mapping[str, Any]], ItemReader]
WriterFactory = Callable[[ExecutionContext, Mapping[str, Any]], ItemWriter]

# A tasklet is invoked until it returns FINISHED; each call is one unit.
Tasklet = Callable[[ExecutionContext, Mapping[str, Any]], RepeatStatus]
