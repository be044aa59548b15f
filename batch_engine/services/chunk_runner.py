"""
ChunkRunner -- read/process/write loop with commit-boundary atomicity.

Contract:
    ``run()`` drains the reader, applies the processor to each record,
    accumulates non-skipped results up to ``chunk_size`` and hands the
    buffer to the writer as one atomic unit.  It loops until the source is
    exhausted (DONE) or a chunk fails (FAILED).

Architecture: batch_engine/services.  Imports from batch_engine.domain,
    batch_engine.items and kernel exceptions/logging.

Invariants enforced:
    - A chunk never holds more than ``chunk_size`` records.
    - Chunks commit strictly in read order, one at a time.
    - A failed chunk leaves nothing behind; earlier committed chunks stay
      committed.  Nothing is retried here.
    - The timeout, when set, is checked after read+process and before the
      writer is called.
    - Loops sharing one reader share a ChunkSequence and a halt event: chunk
      indices are unique across them, and the first failed chunk stops
      every loop before its next chunk.

Failure modes:
    - Reader, processor and writer exceptions are wrapped as ReaderFault,
      ProcessorFault and WriterFault and stop the loop.  ``run()`` never
      raises a ChunkFault; it reports it in the outcome.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from typing import Generic, TypeVar

from batch_kernel.exceptions import (
    ChunkFault,
    ChunkTimeoutError,
    ProcessorFault,
    ReaderFault,
    WriterFault,
)
from batch_kernel.logging_config import get_logger

from batch_engine.domain.types import SKIP, ChunkResult, ChunkState
from batch_engine.items.base import ItemProcessor, ItemReader, ItemWriter

logger = get_logger("engine.chunk")

R = TypeVar("R")


@dataclass(frozen=True)
class ChunkLoopOutcome:
    """Aggregate of one chunk loop; ``fault`` is set iff the loop FAILED."""

    chunks: tuple[ChunkResult, ...]
    fault: ChunkFault | None = None

    @property
    def succeeded(self) -> bool:
        return self.fault is None

    @property
    def read_count(self) -> int:
        return sum(c.read_count for c in self.chunks)

    @property
    def write_count(self) -> int:
        return sum(c.write_count for c in self.chunks)

    @property
    def skip_count(self) -> int:
        return sum(c.skip_count for c in self.chunks)

    @property
    def commit_count(self) -> int:
        return sum(1 for c in self.chunks if c.state == ChunkState.COMMITTED)

    @property
    def failed_chunk_index(self) -> int | None:
        for c in self.chunks:
            if c.state == ChunkState.FAILED:
                return c.chunk_index
        return None


class ChunkSequence:
    """Thread-safe source of chunk indices, starting at 0."""

    def __init__(self) -> None:
        self._next = 0
        self._lock = threading.Lock()

    def next_index(self) -> int:
        with self._lock:
            index = self._next
            self._next += 1
            return index


class ChunkRunner(Generic[R]):
    """One sequential chunk loop over one reader.

    Args:
        reader: Record iterator; may be shared with other loops only if it
            is thread-safe.
        processor: ``record -> record | SKIP``.
        writer: Atomic batch writer owned by this loop.
        chunk_size: Commit interval (>= 1).
        partition: Partition label, for fault location and logs.
        chunk_timeout_seconds: Optional read+process budget per chunk.
        record_key: Identity accessor used in processor fault messages.
        timer: Monotonic time source in seconds.
        sequence: Chunk index source shared with sibling loops; a private
            one by default.
        halt: Event shared with sibling loops.  Checked before each chunk
            and set when a chunk fails.
    """

    def __init__(
        self,
        reader: ItemReader[R],
        processor: ItemProcessor,
        writer: ItemWriter[R],
        chunk_size: int,
        partition: str | None = None,
        chunk_timeout_seconds: float | None = None,
        record_key: Callable[[R], Hashable] | None = None,
        timer: Callable[[], float] = time.monotonic,
        sequence: ChunkSequence | None = None,
        halt: threading.Event | None = None,
    ) -> None:
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self._reader = reader
        self._processor = processor
        self._writer = writer
        self._chunk_size = chunk_size
        self._partition = partition
        self._timeout = chunk_timeout_seconds
        self._record_key = record_key or (lambda r: getattr(r, "id", repr(r)))
        self._timer = timer
        self._sequence = sequence or ChunkSequence()
        self._halt = halt
        self.state = ChunkState.READING

    def run(self) -> ChunkLoopOutcome:
        chunks: list[ChunkResult] = []
        while True:
            if self._halt is not None and self._halt.is_set():
                logger.info("chunk_loop_halted", extra={"chunks": len(chunks)})
                return ChunkLoopOutcome(chunks=tuple(chunks))
            result, fault = self._run_chunk(self._sequence.next_index())
            chunks.append(result)
            if result.state != ChunkState.COMMITTED:
                if fault is not None and self._halt is not None:
                    self._halt.set()
                return ChunkLoopOutcome(chunks=tuple(chunks), fault=fault)

    # -------------------------------------------------------------------------
    # One chunk
    # -------------------------------------------------------------------------

    def _run_chunk(self, chunk_index: int) -> tuple[ChunkResult, ChunkFault | None]:
        started = self._timer()
        self.state = ChunkState.READING
        buffer: list[R] = []
        read_count = 0
        skip_count = 0

        try:
            while len(buffer) < self._chunk_size:
                record = self._read(chunk_index)
                if record is _EXHAUSTED:
                    break
                read_count += 1
                output = self._process(record, chunk_index)
                if output is SKIP:
                    skip_count += 1
                    continue
                buffer.append(output)

            if not buffer:
                self.state = ChunkState.DONE
                return ChunkResult(
                    chunk_index=chunk_index,
                    state=ChunkState.DONE,
                    read_count=read_count,
                    skip_count=skip_count,
                    duration_ms=self._elapsed_ms(started),
                ), None

            if self._timeout is not None:
                elapsed = self._timer() - started
                if elapsed > self._timeout:
                    raise ChunkTimeoutError(
                        elapsed, self._timeout,
                        partition=self._partition, chunk_index=chunk_index,
                    )

            self.state = ChunkState.WRITING
            self._write(buffer, chunk_index)

        except ChunkFault as fault:
            self.state = ChunkState.FAILED
            logger.warning(
                "chunk_failed",
                extra={
                    "chunk_index": chunk_index,
                    "error_code": fault.code,
                    "error": str(fault),
                    "buffered": len(buffer),
                },
            )
            return ChunkResult(
                chunk_index=chunk_index,
                state=ChunkState.FAILED,
                read_count=read_count,
                skip_count=skip_count,
                duration_ms=self._elapsed_ms(started),
                error_code=fault.code,
                error_message=str(fault),
            ), fault

        self.state = ChunkState.COMMITTED
        duration_ms = self._elapsed_ms(started)
        logger.info(
            "chunk_committed",
            extra={
                "chunk_index": chunk_index,
                "write_count": len(buffer),
                "read_count": read_count,
                "skip_count": skip_count,
                "duration_ms": duration_ms,
            },
        )
        return ChunkResult(
            chunk_index=chunk_index,
            state=ChunkState.COMMITTED,
            read_count=read_count,
            write_count=len(buffer),
            skip_count=skip_count,
            duration_ms=duration_ms,
        ), None

    # -------------------------------------------------------------------------
    # Fault wrapping
    # -------------------------------------------------------------------------

    def _read(self, chunk_index: int) -> object:
        try:
            return next(self._reader)
        except StopIteration:
            return _EXHAUSTED
        except ReaderFault as fault:
            raise self._locate(fault, chunk_index)
        except Exception as exc:
            raise ReaderFault(
                f"reader failed: {exc}",
                partition=self._partition, chunk_index=chunk_index,
            ) from exc

    def _process(self, record: R, chunk_index: int) -> object:
        try:
            return self._processor(record)
        except Exception as exc:
            key = self._record_key(record)
            raise ProcessorFault(
                f"processor failed on record {key}: {exc}",
                record_key=str(key),
                partition=self._partition,
                chunk_index=chunk_index,
            ) from exc

    def _write(self, buffer: list[R], chunk_index: int) -> None:
        try:
            self._writer.write(buffer)
        except WriterFault as fault:
            raise self._locate(fault, chunk_index)
        except Exception as exc:
            raise WriterFault(
                f"write of {len(buffer)} records failed: {exc}",
                partition=self._partition, chunk_index=chunk_index,
            ) from exc

    def _locate(self, fault: ChunkFault, chunk_index: int) -> ChunkFault:
        if fault.partition is None:
            fault.partition = self._partition
        if fault.chunk_index is None:
            fault.chunk_index = chunk_index
        return fault

    def _elapsed_ms(self, started: float) -> int:
        return int((self._timer() - started) * 1000)


class _Exhausted:
    def __repr__(self) -> str:
        return "<exhausted>"


_EXHAUSTED = _Exhausted()
