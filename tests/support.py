"""
In-memory record store for engine tests.

``RecordStore`` is a thread-safe, keyed paging source whose predicate
(``status == criteria["status"]`` and, when given, ``category ==
criteria["category"]``) stops matching a record once a writer flips it,
so the matching set shrinks as chunks commit.
"""

import threading
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from typing import Any

PENDING = "pending"
DONE = "done"


@dataclass(frozen=True)
class Item:
    id: int
    category: str
    status: str = PENDING


def make_items(counts: dict[str, int]) -> list[Item]:
    """Items numbered consecutively, ``counts[category]`` per category."""
    items: list[Item] = []
    next_id = 1
    for category, count in counts.items():
        for _ in range(count):
            items.append(Item(id=next_id, category=category))
            next_id += 1
    return items


def mark_done(item: Item) -> Item:
    return replace(item, status=DONE)


class RecordStore:
    def __init__(self, items: Iterable[Item] = ()) -> None:
        self._rows: dict[int, Item] = {i.id: i for i in items}
        self._lock = threading.Lock()
        self.fetches: list[tuple[int, int]] = []
        self.fail_fetch = False

    def _matching(self, criteria: dict[str, Any]) -> list[Item]:
        rows = [
            r for r in self._rows.values()
            if r.status == criteria.get("status", PENDING)
            and ("category" not in criteria or r.category == criteria["category"])
        ]
        return sorted(rows, key=lambda r: r.id)

    def fetch_page(self, page_index: int, page_size: int, criteria) -> list[Item]:
        with self._lock:
            self.fetches.append((page_index, page_size))
            if self.fail_fetch:
                raise ConnectionError("store unavailable")
            rows = self._matching(dict(criteria))
            start = page_index * page_size
            return rows[start:start + page_size]

    def fetch_by_keys(self, keys: Sequence[int]) -> list[Item]:
        with self._lock:
            return [self._rows[k] for k in keys if k in self._rows]

    def apply(self, items: Sequence[Item]) -> None:
        with self._lock:
            missing = [i.id for i in items if i.id not in self._rows]
            if missing:
                raise KeyError(f"unknown ids {missing}")
            for item in items:
                self._rows[item.id] = item

    def insert(self, item: Item) -> None:
        with self._lock:
            self._rows[item.id] = item

    def get(self, item_id: int) -> Item:
        with self._lock:
            return self._rows[item_id]

    def count(self, status: str = PENDING) -> int:
        with self._lock:
            return sum(1 for r in self._rows.values() if r.status == status)

    def all(self) -> list[Item]:
        with self._lock:
            return sorted(self._rows.values(), key=lambda r: r.id)


class StoreWriter:
    """Atomic writer; optionally fails on the N-th call (1-based)."""

    def __init__(self, store: RecordStore, fail_on_call: int | None = None) -> None:
        self._store = store
        self._fail_on_call = fail_on_call
        self.calls = 0
        self.batches: list[list[int]] = []

    def write(self, items: Sequence[Item]) -> None:
        self.calls += 1
        if self.calls == self._fail_on_call:
            raise RuntimeError(f"write {self.calls} rejected")
        self._store.apply(items)
        self.batches.append([i.id for i in items])


class NaiveOffsetReader:
    """Offset-paging reader that increments the page index.

    Kept only to demonstrate the record-skipping hazard.
    """

    def __init__(self, store: RecordStore, page_size: int, criteria) -> None:
        self._store = store
        self._page_size = page_size
        self._criteria = criteria
        self._page = 0
        self._buffer: list[Item] = []
        self._done = False

    def __iter__(self):
        return self

    def __next__(self) -> Item:
        if not self._buffer:
            if self._done:
                raise StopIteration
            self._buffer = list(
                self._store.fetch_page(self._page, self._page_size, self._criteria)
            )
            self._page += 1
            if len(self._buffer) < self._page_size:
                self._done = True
            if not self._buffer:
                raise StopIteration
        return self._buffer.pop(0)

    def close(self) -> None:
        pass
