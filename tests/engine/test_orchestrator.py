"""
End-to-end tests for JobOrchestrator over the in-memory record store.

Covers partitioned, serial, multi-threaded and tasklet steps, partition
fault isolation, multi-step failure, stop(), restart prevention, startup
faults and listener delivery.
"""

import logging
import threading
import time

import pytest
from sqlalchemy import func, select

from batch_engine.domain.definition import JobDefinition, StepDefinition, TaskletStep
from batch_engine.domain.listeners import after_job, after_step, before_job, before_step
from batch_engine.domain.parameters import ParameterSpec
from batch_engine.domain.partition import CategoryPartitioner
from batch_engine.domain.types import (
    ChunkState,
    ExecutionMode,
    ReaderStrategy,
    RepeatStatus,
    RunStatus,
)
from batch_engine.items.readers import FrozenPageReader, SnapshotReader
from batch_engine.models.run import JobRunModel
from batch_engine.orchestrator import JobOrchestrator, compute_job_key
from batch_engine.services.repository import InMemoryJobRepository
from batch_kernel.exceptions import (
    InvalidJobConfigurationError,
    InvalidJobParameterError,
    JobRestartNotAllowedError,
    MissingJobParameterError,
)
from tests.support import RecordStore, StoreWriter, make_items, mark_done

RUN_DATE = ParameterSpec("run_date", str)
PARAMS = {"run_date": "2024-06-01"}


def _criteria(ctx) -> dict:
    return {"category": ctx["category"]} if "category" in ctx else {}


def _step(store: RecordStore, name: str = "mark_step", **overrides) -> StepDefinition:
    chunk_size = overrides.pop("chunk_size", 10)
    fields = dict(
        name=name,
        chunk_size=chunk_size,
        reader_factory=lambda ctx, params: FrozenPageReader(
            store, chunk_size, _criteria(ctx),
        ),
        processor=mark_done,
        writer_factory=lambda ctx, params: StoreWriter(store),
        mode=ExecutionMode.PARTITIONED,
        partitioner=CategoryPartitioner("category", ["A", "B", "C"], "task"),
        grid_size=3,
        max_workers=4,
        throttle_limit=2,
    )
    fields.update(overrides)
    return StepDefinition(**fields)


def _job(*steps, **overrides) -> JobDefinition:
    fields = dict(name="mark_job", steps=tuple(steps), parameters=(RUN_DATE,))
    fields.update(overrides)
    return JobDefinition(**fields)


def _fail_category(store: RecordStore, category: str, on_call: int = 1):
    def factory(ctx, params):
        if ctx["category"] == category:
            return StoreWriter(store, fail_on_call=on_call)
        return StoreWriter(store)

    return factory


# =============================================================================
# Partitioned steps
# =============================================================================


class TestPartitionedJob:
    def test_all_partitions_complete(self, clock):
        store = RecordStore(make_items({"A": 12, "B": 12, "C": 8}))
        result = JobOrchestrator(_job(_step(store)), clock=clock).run(PARAMS)

        assert result.status == RunStatus.COMPLETED
        assert result.error_summary is None
        assert result.writes_by_partition() == {"task:A": 12, "task:B": 12, "task:C": 8}
        sizes = {
            p.label: p.step_run.committed_chunk_sizes for p in result.partition_runs
        }
        assert sizes == {"task:A": (10, 2), "task:B": (10, 2), "task:C": (8,)}
        assert store.count() == 0

    def test_empty_input_completes(self, clock):
        store = RecordStore()
        result = JobOrchestrator(_job(_step(store)), clock=clock).run(PARAMS)

        assert result.status == RunStatus.COMPLETED
        assert result.write_count == 0
        assert len(result.partition_runs) == 3
        assert all(p.status == RunStatus.COMPLETED for p in result.partition_runs)

    def test_failing_partition_does_not_stop_siblings(self, clock):
        store = RecordStore(make_items({"A": 12, "B": 12, "C": 8}))
        step = _step(store, writer_factory=_fail_category(store, "B"))
        result = JobOrchestrator(_job(step), clock=clock).run(PARAMS)

        assert result.status == RunStatus.FAILED
        assert result.failed_partitions == ("task:B",)
        writes = result.writes_by_partition()
        assert (writes["task:A"], writes["task:B"], writes["task:C"]) == (12, 0, 8)
        assert store.count() == 12
        assert "task:B" in result.error_summary
        assert "WRITER_FAULT" in result.error_summary

    def test_failed_partition_keeps_committed_chunks(self, clock):
        store = RecordStore(make_items({"A": 5, "B": 25}))
        step = _step(store, writer_factory=_fail_category(store, "B", on_call=2))
        result = JobOrchestrator(_job(step), clock=clock).run(PARAMS)

        failed = next(p for p in result.partition_runs if p.label == "task:B")
        assert failed.step_run.committed_chunk_sizes == (10,)
        assert failed.step_run.failed_chunk_index == 1
        assert store.count() == 15

    def test_partitions_run_on_worker_threads(self, clock):
        store = RecordStore(make_items({"A": 1, "B": 1, "C": 1}))
        names = set()
        lock = threading.Lock()

        def writer_factory(ctx, params):
            with lock:
                names.add(threading.current_thread().name)
            return StoreWriter(store)

        JobOrchestrator(
            _job(_step(store, writer_factory=writer_factory)), clock=clock,
        ).run(PARAMS)

        assert names
        assert all(n.startswith("Batch_Task") for n in names)

    def test_partitioning_failure_fails_step(self, clock):
        def explode():
            raise ConnectionError("store unavailable")

        store = RecordStore()
        step = _step(store, partitioner=CategoryPartitioner("category", explode))
        result = JobOrchestrator(_job(step), clock=clock).run(PARAMS)

        assert result.status == RunStatus.FAILED
        assert "partitioning failed" in result.error_summary

    def test_completion_logged(self, clock, caplog):
        caplog.set_level(logging.INFO, logger="batch_kernel")
        store = RecordStore(make_items({"A": 3}))
        JobOrchestrator(_job(_step(store)), clock=clock).run(PARAMS)

        messages = [r.getMessage() for r in caplog.records]
        assert "job_started" in messages
        assert "partitions_created" in messages
        assert messages.count("partition_completed") == 3
        assert "job_completed" in messages


# =============================================================================
# Other execution modes
# =============================================================================


class TestExecutionModes:
    def test_serial_step_has_no_partitions(self, clock):
        store = RecordStore(make_items({"A": 7, "B": 6}))
        step = _step(store, mode=ExecutionMode.SERIAL, partitioner=None)
        result = JobOrchestrator(_job(step), clock=clock).run(PARAMS)

        assert result.status == RunStatus.COMPLETED
        assert result.partition_runs == ()
        [step_run] = result.step_runs
        assert step_run.partition is None
        assert step_run.committed_chunk_sizes == (10, 3)

    def test_multi_threaded_processes_each_record_once(self, clock):
        store = RecordStore(make_items({"A": 40}))
        writers: list[StoreWriter] = []
        lock = threading.Lock()

        def writer_factory(ctx, params):
            writer = StoreWriter(store)
            with lock:
                writers.append(writer)
            return writer

        step = _step(
            store,
            chunk_size=5,
            mode=ExecutionMode.MULTI_THREADED,
            reader_strategy=ReaderStrategy.SNAPSHOT,
            reader_factory=lambda ctx, params: SnapshotReader(store, 5, {}),
            writer_factory=writer_factory,
            partitioner=None,
            throttle_limit=3,
        )
        result = JobOrchestrator(_job(step), clock=clock).run(PARAMS)

        assert result.status == RunStatus.COMPLETED
        assert len(writers) == 3
        written = sorted(i for w in writers for batch in w.batches for i in batch)
        assert written == list(range(1, 41))
        assert result.write_count == 40
        assert store.count() == 0

    def test_multi_threaded_failure_halts_sibling_loops(self, clock):
        store = RecordStore(make_items({"A": 40}))
        calls = []
        lock = threading.Lock()

        class SharedWriter:
            def write(self, items):
                with lock:
                    calls.append(len(items))
                    first = len(calls) == 1
                if first:
                    raise RuntimeError("first write rejected")
                time.sleep(0.05)
                store.apply(items)

        step = _step(
            store,
            chunk_size=2,
            mode=ExecutionMode.MULTI_THREADED,
            reader_strategy=ReaderStrategy.SNAPSHOT,
            reader_factory=lambda ctx, params: SnapshotReader(store, 2, {}),
            writer_factory=lambda ctx, params: SharedWriter(),
            partitioner=None,
            throttle_limit=2,
        )
        result = JobOrchestrator(_job(step), clock=clock).run(PARAMS)

        assert result.status == RunStatus.FAILED
        [step_run] = result.step_runs
        # At most the sibling's in-flight chunk commits after the failure
        assert step_run.write_count <= 2
        assert store.count() >= 38
        assert len(calls) <= 2

        indices = [c.chunk_index for c in step_run.chunks]
        assert len(indices) == len(set(indices))
        [failed] = [c for c in step_run.chunks if c.state == ChunkState.FAILED]
        assert step_run.failed_chunk_index == failed.chunk_index

    def test_tasklet_step(self, clock):
        calls = []

        def tasklet(context, parameters):
            calls.append(parameters["run_date"])
            return RepeatStatus.FINISHED if len(calls) == 3 else RepeatStatus.CONTINUABLE

        job = _job(TaskletStep(name="cleanup", tasklet=tasklet))
        result = JobOrchestrator(job, clock=clock).run(PARAMS)

        assert result.status == RunStatus.COMPLETED
        assert calls == ["2024-06-01"] * 3
        assert result.step_runs[0].commit_count == 3
        assert result.steps[0].mode == ExecutionMode.SERIAL

    def test_tasklet_failure(self, clock):
        def tasklet(context, parameters):
            raise RuntimeError("query failed")

        result = JobOrchestrator(
            _job(TaskletStep(name="cleanup", tasklet=tasklet)), clock=clock,
        ).run(PARAMS)

        assert result.status == RunStatus.FAILED
        assert "query failed" in result.error_summary

    def test_tasklet_iteration_limit(self, clock):
        job = _job(TaskletStep(
            name="cleanup",
            tasklet=lambda c, p: RepeatStatus.CONTINUABLE,
            max_iterations=3,
        ))
        result = JobOrchestrator(job, clock=clock).run(PARAMS)

        assert result.status == RunStatus.FAILED
        assert result.step_runs[0].commit_count == 3


# =============================================================================
# Multi-step jobs and stop
# =============================================================================


class TestJobControl:
    def test_failed_step_ends_job(self, clock):
        store = RecordStore(make_items({"A": 3, "B": 3}))
        second_started = []

        first = _step(store, name="first", writer_factory=_fail_category(store, "A"))
        second = TaskletStep(
            name="second",
            tasklet=lambda c, p: second_started.append(True) or RepeatStatus.FINISHED,
        )
        result = JobOrchestrator(_job(first, second), clock=clock).run(PARAMS)

        assert result.status == RunStatus.FAILED
        assert [s.step_name for s in result.steps] == ["first"]
        assert second_started == []

    @pytest.mark.parametrize("mode", ["serial", "tasklet"])
    def test_store_fault_mid_job_still_finalizes_run(self, clock, caplog, mode):
        class FlakyRepository(InMemoryJobRepository):
            def finish_step(self, job_run_id, step_run):
                raise RuntimeError("store went away")

        caplog.set_level(logging.INFO, logger="batch_kernel")
        store = RecordStore(make_items({"A": 3}))
        if mode == "serial":
            step = _step(store, mode=ExecutionMode.SERIAL, partitioner=None)
        else:
            step = TaskletStep(name="cleanup", tasklet=lambda c, p: RepeatStatus.FINISHED)
        finished_jobs = []
        job = _job(step, listeners=(after_job(finished_jobs.append),))
        repository = FlakyRepository(clock)

        result = JobOrchestrator(job, repository, clock=clock).run(PARAMS)

        assert result.status == RunStatus.FAILED
        assert "store went away" in result.error_summary
        assert repository.get_job_run(result.job_run_id).status == RunStatus.FAILED
        assert [run.status for run in finished_jobs] == [RunStatus.FAILED]
        assert any(r.getMessage() == "job_aborted" for r in caplog.records)

        with pytest.raises(JobRestartNotAllowedError):
            JobOrchestrator(job, repository, clock=clock).run(PARAMS)

    def test_steps_run_in_order(self, clock):
        order = []

        def tasklet(name):
            def run(context, parameters):
                order.append(name)
                return RepeatStatus.FINISHED

            return run

        job = _job(
            TaskletStep(name="one", tasklet=tasklet("one")),
            TaskletStep(name="two", tasklet=tasklet("two")),
        )
        result = JobOrchestrator(job, clock=clock).run(PARAMS)

        assert result.status == RunStatus.COMPLETED
        assert order == ["one", "two"]

    def test_stop_prevents_queued_partitions(self, clock):
        store = RecordStore(make_items({"A": 4, "B": 4, "C": 4}))
        holder = {}

        def writer_factory(ctx, params):
            if ctx["category"] == "A":
                holder["orchestrator"].stop()
            return StoreWriter(store)

        step = _step(store, writer_factory=writer_factory, throttle_limit=1)
        orchestrator = JobOrchestrator(_job(step), clock=clock)
        holder["orchestrator"] = orchestrator
        result = orchestrator.run(PARAMS)

        assert result.status == RunStatus.FAILED
        assert result.steps[0].not_dispatched == ("task:B", "task:C")
        assert result.writes_by_partition() == {"task:A": 4}
        assert store.count() == 8
        assert "not dispatched" in result.error_summary

    def test_stop_before_run_is_cleared(self, clock):
        store = RecordStore(make_items({"A": 2}))
        orchestrator = JobOrchestrator(_job(_step(store)), clock=clock)
        orchestrator.stop()
        assert orchestrator.run(PARAMS).status == RunStatus.COMPLETED


# =============================================================================
# Startup faults and restart prevention
# =============================================================================


class TestStartup:
    def test_missing_parameter_creates_no_run(self, run_repository, session_factory, clock):
        store = RecordStore(make_items({"A": 2}))
        orchestrator = JobOrchestrator(_job(_step(store)), run_repository, clock)

        with pytest.raises(MissingJobParameterError):
            orchestrator.run({})

        with session_factory() as session:
            assert session.execute(select(func.count()).select_from(JobRunModel)).scalar_one() == 0
        assert store.count() == 2

    def test_mistyped_parameter(self, clock):
        orchestrator = JobOrchestrator(_job(_step(RecordStore())), clock=clock)
        with pytest.raises(InvalidJobParameterError):
            orchestrator.run({"run_date": 20240601})

    def test_invalid_definition(self, clock):
        step = _step(RecordStore(), throttle_limit=5, max_workers=4)
        with pytest.raises(InvalidJobConfigurationError):
            JobOrchestrator(_job(step), clock=clock).run(PARAMS)

    def test_restart_refused(self, run_repository, clock):
        store = RecordStore(make_items({"A": 2}))
        orchestrator = JobOrchestrator(_job(_step(store)), run_repository, clock)
        first = orchestrator.run(PARAMS)

        with pytest.raises(JobRestartNotAllowedError) as exc_info:
            orchestrator.run(PARAMS)
        assert exc_info.value.existing_run_id == str(first.job_run_id)

        assert orchestrator.run({"run_date": "2024-06-02"}).status == RunStatus.COMPLETED

    def test_restart_allowed_when_not_guarded(self, clock):
        store = RecordStore(make_items({"A": 2}))
        job = _job(_step(store), prevent_restart=False)
        repository = InMemoryJobRepository(clock)

        JobOrchestrator(job, repository, clock).run(PARAMS)
        second = JobOrchestrator(job, repository, clock).run(PARAMS)

        assert second.status == RunStatus.COMPLETED
        assert len(repository.find_by_key(second.job_key)) == 2

    def test_job_key_ignores_parameter_order(self):
        assert compute_job_key("j", {"a": 1, "b": 2}) == compute_job_key("j", {"b": 2, "a": 1})
        assert compute_job_key("j", {"a": 1}) != compute_job_key("k", {"a": 1})

    def test_run_records_persisted(self, run_repository, clock):
        store = RecordStore(make_items({"A": 3, "B": 3, "C": 3}))
        result = JobOrchestrator(_job(_step(store)), run_repository, clock).run(PARAMS)

        stored = run_repository.get_job_run(result.job_run_id)
        assert stored.status == RunStatus.COMPLETED
        assert stored.parameters == PARAMS
        step_runs = run_repository.list_step_runs(result.job_run_id)
        assert sorted(s.partition for s in step_runs) == ["task:A", "task:B", "task:C"]
        assert all(s.status == RunStatus.COMPLETED for s in step_runs)


# =============================================================================
# Listeners
# =============================================================================


class TestListeners:
    def test_each_hook_fires_once_per_run(self, clock):
        events = []
        lock = threading.Lock()

        def record(kind):
            def callback(run):
                with lock:
                    events.append((kind, run.status))

            return callback

        store = RecordStore(make_items({"A": 2, "B": 2, "C": 2}))
        job = _job(
            _step(store),
            listeners=(
                before_job(record("before_job")),
                after_job(record("after_job")),
                before_step(record("before_step")),
                after_step(record("after_step")),
            ),
        )
        JobOrchestrator(job, clock=clock).run(PARAMS)

        kinds = [k for k, _ in events]
        assert kinds[0] == "before_job"
        assert kinds[-1] == "after_job"
        assert kinds.count("before_step") == 3
        assert kinds.count("after_step") == 3
        assert events[0][1] == RunStatus.RUNNING
        assert events[-1][1] == RunStatus.COMPLETED

    def test_step_listeners_see_finalized_counts(self, clock):
        seen = []
        store = RecordStore(make_items({"A": 12}))
        step = _step(
            store,
            listeners=(after_step(lambda run: seen.append((run.partition, run.write_count))),),
        )
        JobOrchestrator(_job(step), clock=clock).run(PARAMS)

        assert sorted(seen) == [("task:A", 12), ("task:B", 0), ("task:C", 0)]

    def test_raising_listener_does_not_fail_job(self, clock):
        def explode(run):
            raise RuntimeError("audit sink down")

        store = RecordStore(make_items({"A": 2}))
        job = _job(_step(store), listeners=(after_job(explode), before_step(explode)))
        result = JobOrchestrator(job, clock=clock).run(PARAMS)

        assert result.status == RunStatus.COMPLETED
        assert store.count() == 0
