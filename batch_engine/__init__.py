"""
batch_engine -- Partitioned, chunk-oriented batch execution engine.

Processes large record sets in fixed-size committed chunks, split across
disjoint partitions and run with bounded concurrency.  Readers keep a
gap-free cursor over a record set that shrinks as chunks commit.

Architecture:
    batch_engine/ is a top-level package.  It imports from batch_kernel
    only; nothing in batch_kernel or batch_config imports from it.

    domain/        pure types, definitions, parameters, partitioners
    items/         reader/writer contracts and the cursor readers
    models/        ORM models for run records
    services/      chunk runner, worker pool, step executor, repositories
    orchestrator   JobOrchestrator, the entry point

Invariants:
    - Every record matching the predicate at job start is read exactly
      once across all partitions.
    - A chunk is written entirely or not at all.
    - Partitions select disjoint record sets; no cross-partition locking.
    - At most ``throttle_limit`` chunk loops are active at once.
    - Run records leave RUNNING exactly once.
"""
