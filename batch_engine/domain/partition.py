"""
batch_engine.domain.partition -- Splitting a workload into disjoint partitions.

ZERO I/O (an observing value source may query the store; the partitioner
itself does not).

Contract:
    ``partition(grid_size)`` returns an insertion-ordered mapping from a
    unique, stable label to the ExecutionContext of one partition.
    ``grid_size`` is advisory: the number of partitions is the number of
    distinct category values, whatever the hint.

Invariants enforced:
    - Disjointness: each category value is claimed by exactly one
      partition, so no two partitions select overlapping record sets.
      Concurrent partitions are safe without locks only because of this.
    - Determinism: the same values produce the same labels in the same
      order on every call.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from batch_kernel.exceptions import DuplicatePartitionError
from batch_kernel.logging_config import get_logger

from batch_engine.domain.types import ExecutionContext

logger = get_logger("engine.partition")


@runtime_checkable
class Partitioner(Protocol):
    """Splits the workload into labelled execution contexts."""

    def partition(self, grid_size: int) -> dict[str, ExecutionContext]: ...


def _value_text(value: Any) -> str:
    if isinstance(value, Enum):
        return value.name
    return str(value)


class CategoryPartitioner:
    """One partition per distinct value of a classification attribute.

    Args:
        key: Context parameter the reader restricts its query on
            (e.g. ``"grade"``).
        values: The category values, or a zero-argument callable that
            observes them (e.g. ``SELECT DISTINCT``) at job start.
        label_prefix: Prefix of the partition labels.
        shared: Extra parameters copied into every context.
    """

    def __init__(
        self,
        key: str,
        values: Iterable[Any] | Callable[[], Iterable[Any]],
        label_prefix: str = "partition",
        shared: Mapping[str, Any] | None = None,
    ) -> None:
        self._key = key
        self._values = values
        self._label_prefix = label_prefix
        self._shared = dict(shared or {})

    @classmethod
    def from_enum(
        cls,
        key: str,
        enum_type: type[Enum],
        label_prefix: str = "partition",
        shared: Mapping[str, Any] | None = None,
    ) -> CategoryPartitioner:
        """Fixed partitioning over every member of ``enum_type``."""
        return cls(key, list(enum_type), label_prefix=label_prefix, shared=shared)

    @property
    def key(self) -> str:
        return self._key

    def _resolve_values(self) -> list[Any]:
        raw = self._values() if callable(self._values) else self._values
        values = list(raw)
        # Observed values arrive in store order; enums keep declaration order
        if values and not isinstance(values[0], Enum):
            values = sorted(values, key=_value_text)
        return values

    def partition(self, grid_size: int) -> dict[str, ExecutionContext]:
        values = self._resolve_values()

        seen: set[str] = set()
        contexts: dict[str, ExecutionContext] = {}
        for value in values:
            text = _value_text(value)
            if text in seen:
                raise DuplicatePartitionError(self._key, text)
            seen.add(text)
            label = f"{self._label_prefix}:{text}"
            contexts[label] = ExecutionContext(
                label=label,
                params={**self._shared, self._key: value},
            )

        if grid_size < len(contexts):
            logger.info(
                "grid_size_exceeded",
                extra={"grid_size": grid_size, "partitions": len(contexts)},
            )

        return contexts
