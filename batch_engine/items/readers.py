"""
Cursor readers over a self-compacting, predicate-filtered record set.

===============================================================================
THE PAGING HAZARD
===============================================================================

Each committed chunk flips records so they no longer match the read
predicate.  A reader that asks for ``offset = page_index * page_size`` after
a commit skips records: once page 0's records leave the set, the next
records shift into offsets 0..page_size-1, and page 1 starts past them.
Nothing fails; records are silently dropped.

Two safe strategies are provided.  Pick one per step explicitly.

``FrozenPageReader`` (ReaderStrategy.FROZEN_PAGE)
    Always requests page 0.  The filtered set compacts as chunks commit,
    so its front is always the next unread work.  Records that stay in the
    predicate after being read (processor SKIP, or read but not yet
    committed when the page is smaller than the chunk) would come back at
    the front; the reader remembers delivered keys, drops them from each
    page and widens the window past them, so nothing is re-delivered and
    progress never stalls.  Not thread-safe.

``SnapshotReader`` (ReaderStrategy.SNAPSHOT)
    Pages through the predicate once, before anything is written, and
    keeps only the ordered key list.  Records are then loaded by key
    slices, so later mutation of the store cannot move the cursor.
    Thread-safe; required when several chunk loops share one reader.

``ListItemReader``
    Eager in-memory reader over a preloaded sequence.  Holds the whole
    candidate set in memory; use for small sets and tests.

Failure modes:
    - Any exception from the source is raised as ``ReaderFault`` (chained),
      aborting the owning chunk with nothing written.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Hashable, Iterable, Iterator, Sequence
from operator import attrgetter
from typing import Generic, TypeVar

from batch_kernel.exceptions import ReaderFault
from batch_kernel.logging_config import get_logger

from batch_engine.items.base import Criteria, KeyedSource, PagingSource

logger = get_logger("engine.readers")

R = TypeVar("R")

_default_key = attrgetter("id")


class _BaseReader(ABC, Generic[R]):
    def __iter__(self) -> Iterator[R]:
        return self

    @abstractmethod
    def __next__(self) -> R: ...

    def close(self) -> None:
        pass


class FrozenPageReader(_BaseReader[R]):
    """Reader that always fetches page 0 of the filtered set.

    Args:
        source: Paging source.
        page_size: Records per fetch (usually the chunk size).
        criteria: Predicate parameters passed to every fetch.
        key: Record identity accessor (default ``record.id``).
    """

    def __init__(
        self,
        source: PagingSource[R],
        page_size: int,
        criteria: Criteria,
        key: Callable[[R], Hashable] = _default_key,
    ) -> None:
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        self._source = source
        self._page_size = page_size
        self._criteria = dict(criteria)
        self._key = key
        self._buffer: deque[R] = deque()
        self._delivered: set[Hashable] = set()
        self._stale_hint = 0
        self._exhausted = False
        self.fetch_count = 0
        self.requested_pages: list[int] = []

    @property
    def delivered_count(self) -> int:
        return len(self._delivered)

    def __next__(self) -> R:
        if not self._buffer:
            if self._exhausted:
                raise StopIteration
            self._buffer.extend(self._fetch_fresh())
            if not self._buffer:
                self._exhausted = True
                raise StopIteration
        record = self._buffer.popleft()
        self._delivered.add(self._key(record))
        return record

    def _fetch(self, size: int) -> Sequence[R]:
        page_index = 0
        self.fetch_count += 1
        self.requested_pages.append(page_index)
        try:
            return self._source.fetch_page(page_index, size, self._criteria)
        except Exception as exc:
            raise ReaderFault(f"fetch_page(0, {size}) failed: {exc}") from exc

    def _fetch_fresh(self) -> list[R]:
        """Fetch page 0, widening past already-delivered records."""
        extra = self._stale_hint
        while True:
            size = self._page_size + extra
            rows = self._fetch(size)
            fresh = [r for r in rows if self._key(r) not in self._delivered]
            stale = len(rows) - len(fresh)
            self._stale_hint = stale
            if fresh or len(rows) < size:
                if stale:
                    logger.debug(
                        "frozen_page_stale_rows",
                        extra={"stale": stale, "fresh": len(fresh)},
                    )
                return fresh
            # Window held only delivered records; look past all of them
            extra = len(rows)


class SnapshotReader(_BaseReader[R]):
    """Reader that snapshots candidate keys once and pages by key slices.

    The snapshot is taken lazily on the first ``next()``, i.e. before the
    owning chunk loop commits anything.
    """

    def __init__(
        self,
        source: KeyedSource[R],
        page_size: int,
        criteria: Criteria,
        key: Callable[[R], Hashable] = _default_key,
    ) -> None:
        if page_size < 1:
            raise ValueError(f"page_size must be >= 1, got {page_size}")
        self._source = source
        self._page_size = page_size
        self._criteria = dict(criteria)
        self._key = key
        self._keys: list[Hashable] | None = None
        self._position = 0
        self._buffer: deque[R] = deque()
        self._lock = threading.Lock()

    @property
    def snapshot_size(self) -> int | None:
        return None if self._keys is None else len(self._keys)

    def _take_snapshot(self) -> list[Hashable]:
        keys: list[Hashable] = []
        seen: set[Hashable] = set()
        page_index = 0
        while True:
            try:
                rows = self._source.fetch_page(
                    page_index, self._page_size, self._criteria,
                )
            except Exception as exc:
                raise ReaderFault(
                    f"snapshot fetch_page({page_index}) failed: {exc}"
                ) from exc
            for row in rows:
                k = self._key(row)
                if k not in seen:
                    seen.add(k)
                    keys.append(k)
            if len(rows) < self._page_size:
                break
            page_index += 1
        logger.debug("snapshot_taken", extra={"keys": len(keys)})
        return keys

    def __next__(self) -> R:
        with self._lock:
            if self._keys is None:
                self._keys = self._take_snapshot()
            while not self._buffer:
                if self._position >= len(self._keys):
                    raise StopIteration
                window = self._keys[self._position:self._position + self._page_size]
                self._position += len(window)
                try:
                    self._buffer.extend(self._source.fetch_by_keys(window))
                except Exception as exc:
                    raise ReaderFault(
                        f"fetch_by_keys({len(window)} keys) failed: {exc}"
                    ) from exc
            return self._buffer.popleft()


class ListItemReader(_BaseReader[R]):
    """Eager reader over a preloaded sequence."""

    def __init__(self, items: Iterable[R]) -> None:
        self._items: deque[R] = deque(items)
        self._lock = threading.Lock()

    def __next__(self) -> R:
        with self._lock:
            if not self._items:
                raise StopIteration
            return self._items.popleft()
