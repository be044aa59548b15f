"""
Typed Exception Hierarchy for the Batch Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

A batch run must say precisely which partition and which chunk failed, and
why.  Callers and listeners catch by type and read structured attributes;
they never parse messages.

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, log-safe)
  3. Exceptions carry structured DATA (partition, chunk_index, ...)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from BatchKernelError:

    BatchKernelError (base)
    |
    +-- StartupFault                  raised before any partition starts
    |   +-- MissingJobParameterError
    |   +-- InvalidJobParameterError
    |   +-- InvalidJobConfigurationError
    |   +-- JobRestartNotAllowedError
    |   +-- StoreUnavailableError
    |
    +-- ChunkFault                    aborts one chunk, fails its partition
    |   +-- ReaderFault
    |   +-- ProcessorFault
    |   +-- WriterFault
    |   +-- ChunkTimeoutError
    |
    +-- PartitionError
    |   +-- DuplicatePartitionError
    |
    +-- RunRecordError
    |   +-- JobRunNotFoundError
    |   +-- RunAlreadyFinalizedError
    |
    +-- ListenerFault                 logged, never propagated

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category   | Code                       | When Raised
-----------|----------------------------|----------------------------------------
Startup    | MISSING_JOB_PARAMETER      | Required job parameter absent
           | INVALID_JOB_PARAMETER      | Parameter present but wrong type/value
           | INVALID_JOB_CONFIGURATION  | Step/job settings fail validation
           | JOB_RESTART_NOT_ALLOWED    | Job key already has a run
           | STORE_UNAVAILABLE          | Store unreachable at job start
-----------|----------------------------|----------------------------------------
Chunk      | READER_FAULT               | Source failed while reading
           | PROCESSOR_FAULT            | Processor raised on a record
           | WRITER_FAULT               | Chunk commit failed (rolled back)
           | CHUNK_TIMEOUT              | Read+process phase exceeded timeout
-----------|----------------------------|----------------------------------------
Partition  | DUPLICATE_PARTITION        | Two partitions claim the same value
-----------|----------------------------|----------------------------------------
Run record | JOB_RUN_NOT_FOUND          | Unknown job run id
           | RUN_ALREADY_FINALIZED      | Second finalization of a run record
-----------|----------------------------|----------------------------------------
Listener   | LISTENER_FAULT             | A lifecycle callback raised

===============================================================================
"""


class BatchKernelError(Exception):
    """
    Base exception for all batch kernel errors.

    All subclasses must have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "BATCH_KERNEL_ERROR"


# Startup faults


class StartupFault(BatchKernelError):
    """Base for faults detected before any partition starts.

    A startup fault has no side effects: no run record, no partition,
    no write.
    """

    code: str = "STARTUP_FAULT"


class MissingJobParameterError(StartupFault):
    """A required job parameter was not supplied."""

    code: str = "MISSING_JOB_PARAMETER"

    def __init__(self, job_name: str, parameter: str):
        self.job_name = job_name
        self.parameter = parameter
        super().__init__(
            f"Job '{job_name}' requires parameter '{parameter}'"
        )


class InvalidJobParameterError(StartupFault):
    """A job parameter is present but has the wrong type or value."""

    code: str = "INVALID_JOB_PARAMETER"

    def __init__(self, job_name: str, parameter: str, reason: str):
        self.job_name = job_name
        self.parameter = parameter
        self.reason = reason
        super().__init__(
            f"Job '{job_name}' parameter '{parameter}' is invalid: {reason}"
        )


class InvalidJobConfigurationError(StartupFault):
    """Job or step settings failed validation."""

    code: str = "INVALID_JOB_CONFIGURATION"

    def __init__(self, job_name: str, errors: list[str]):
        self.job_name = job_name
        self.errors = list(errors)
        super().__init__(
            f"Configuration for job '{job_name}' is invalid: "
            + "; ".join(self.errors)
        )


class JobRestartNotAllowedError(StartupFault):
    """A run already exists for this job key and restart is disallowed."""

    code: str = "JOB_RESTART_NOT_ALLOWED"

    def __init__(self, job_name: str, job_key: str, existing_run_id: str):
        self.job_name = job_name
        self.job_key = job_key
        self.existing_run_id = existing_run_id
        super().__init__(
            f"Job '{job_name}' already ran with these parameters "
            f"(run {existing_run_id}); restart is not allowed"
        )


class StoreUnavailableError(StartupFault):
    """The record store or run repository could not be reached at start."""

    code: str = "STORE_UNAVAILABLE"

    def __init__(self, job_name: str, detail: str):
        self.job_name = job_name
        self.detail = detail
        super().__init__(f"Store unavailable for job '{job_name}': {detail}")


# Chunk faults


class ChunkFault(BatchKernelError):
    """Base for faults that abort a single chunk.

    The chunk is never partially written; earlier committed chunks of the
    same partition stay committed.
    """

    code: str = "CHUNK_FAULT"

    def __init__(self, message: str, partition: str | None = None,
                 chunk_index: int | None = None):
        self.partition = partition
        self.chunk_index = chunk_index
        super().__init__(message)


class ReaderFault(ChunkFault):
    """The record source failed while the chunk was being read."""

    code: str = "READER_FAULT"


class ProcessorFault(ChunkFault):
    """The processor raised while transforming a record."""

    code: str = "PROCESSOR_FAULT"

    def __init__(self, message: str, record_key: str | None = None,
                 partition: str | None = None, chunk_index: int | None = None):
        self.record_key = record_key
        super().__init__(message, partition=partition, chunk_index=chunk_index)


class WriterFault(ChunkFault):
    """The chunk commit failed; nothing from the chunk was persisted."""

    code: str = "WRITER_FAULT"


class ChunkTimeoutError(ChunkFault):
    """The chunk's read+process phase exceeded its configured timeout."""

    code: str = "CHUNK_TIMEOUT"

    def __init__(self, elapsed_seconds: float, timeout_seconds: float,
                 partition: str | None = None, chunk_index: int | None = None):
        self.elapsed_seconds = elapsed_seconds
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Chunk took {elapsed_seconds:.3f}s before commit "
            f"(timeout {timeout_seconds:.3f}s)",
            partition=partition,
            chunk_index=chunk_index,
        )


# Partition errors


class PartitionError(BatchKernelError):
    """Base exception for partitioning errors."""

    code: str = "PARTITION_ERROR"


class DuplicatePartitionError(PartitionError):
    """Two partitions would select the same category value."""

    code: str = "DUPLICATE_PARTITION"

    def __init__(self, key: str, value: str):
        self.key = key
        self.value = value
        super().__init__(
            f"Partition value {key}={value!r} is claimed more than once"
        )


# Run record errors


class RunRecordError(BatchKernelError):
    """Base exception for run audit record errors."""

    code: str = "RUN_RECORD_ERROR"


class JobRunNotFoundError(RunRecordError):
    """Job run with given ID was not found."""

    code: str = "JOB_RUN_NOT_FOUND"

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Job run not found: {run_id}")


class RunAlreadyFinalizedError(RunRecordError):
    """A run record may be finalized exactly once."""

    code: str = "RUN_ALREADY_FINALIZED"

    def __init__(self, kind: str, run_id: str):
        self.kind = kind
        self.run_id = run_id
        super().__init__(f"{kind} run {run_id} is already finalized")


# Listener faults


class ListenerFault(BatchKernelError):
    """A lifecycle listener raised.  Logged, never propagated."""

    code: str = "LISTENER_FAULT"

    def __init__(self, listener: str, hook: str, cause: str):
        self.listener = listener
        self.hook = hook
        self.cause = cause
        super().__init__(f"Listener '{listener}' failed on {hook}: {cause}")
