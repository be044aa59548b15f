"""Tests for lifecycle listeners and category partitioning."""

import logging
from enum import Enum

import pytest

from batch_engine.domain.listeners import (
    Hook,
    ListenerChain,
    after_job,
    after_step,
    before_job,
    before_step,
)
from batch_engine.domain.partition import CategoryPartitioner, Partitioner
from batch_kernel.exceptions import DuplicatePartitionError


class Tier(Enum):
    BRONZE = "b"
    SILVER = "s"
    GOLD = "g"


# =============================================================================
# Listeners
# =============================================================================


class TestListenerChain:
    def test_only_matching_hook_fires(self):
        calls = []
        chain = ListenerChain([
            before_job(lambda run: calls.append(("bj", run))),
            after_job(lambda run: calls.append(("aj", run))),
            before_step(lambda run: calls.append(("bs", run))),
            after_step(lambda run: calls.append(("as", run))),
        ])
        assert chain.notify(Hook.AFTER_STEP, "r") == 0
        assert calls == [("as", "r")]

    def test_declaration_order(self):
        calls = []
        chain = ListenerChain([
            before_job(lambda run: calls.append(1)),
            before_job(lambda run: calls.append(2)),
        ])
        chain.notify(Hook.BEFORE_JOB, None)
        assert calls == [1, 2]

    def test_fault_is_isolated_and_logged(self, caplog):
        caplog.set_level(logging.INFO, logger="batch_kernel")
        calls = []

        def explode(run):
            raise RuntimeError("listener down")

        chain = ListenerChain([
            after_job(explode, name="exploder"),
            after_job(lambda run: calls.append(run)),
        ])
        assert chain.notify(Hook.AFTER_JOB, "run") == 1
        assert calls == ["run"]

        faults = [r for r in caplog.records if r.getMessage() == "listener_fault"]
        assert len(faults) == 1
        assert faults[0].listener == "exploder"
        assert faults[0].hook == "after_job"
        assert faults[0].error_code == "LISTENER_FAULT"

    def test_extended_appends(self):
        calls = []
        base = ListenerChain([before_step(lambda run: calls.append("job"))])
        chain = base.extended([before_step(lambda run: calls.append("step"))])
        chain.notify(Hook.BEFORE_STEP, None)
        assert calls == ["job", "step"]
        assert len(base) == 1
        assert len(chain) == 2


# =============================================================================
# Partitioning
# =============================================================================


class TestCategoryPartitioner:
    def test_satisfies_protocol(self):
        assert isinstance(CategoryPartitioner("k", ["a"]), Partitioner)

    def test_one_partition_per_enum_member(self):
        partitions = CategoryPartitioner.from_enum(
            "tier", Tier, label_prefix="task",
        ).partition(grid_size=3)
        assert list(partitions) == ["task:BRONZE", "task:SILVER", "task:GOLD"]
        assert partitions["task:GOLD"]["tier"] is Tier.GOLD
        assert partitions["task:GOLD"].label == "task:GOLD"

    def test_partitions_are_disjoint(self):
        partitions = CategoryPartitioner.from_enum("tier", Tier).partition(3)
        values = [ctx["tier"] for ctx in partitions.values()]
        assert len(values) == len(set(values))

    def test_grid_size_is_advisory(self, caplog):
        caplog.set_level(logging.INFO, logger="batch_kernel")
        partitions = CategoryPartitioner.from_enum("tier", Tier).partition(1)
        assert len(partitions) == 3
        assert any(r.getMessage() == "grid_size_exceeded" for r in caplog.records)

    def test_larger_grid_creates_no_empty_partitions(self):
        assert len(CategoryPartitioner.from_enum("tier", Tier).partition(10)) == 3

    def test_duplicate_values_rejected(self):
        with pytest.raises(DuplicatePartitionError) as exc_info:
            CategoryPartitioner("grade", ["VIP", "GOLD", "VIP"]).partition(3)
        assert exc_info.value.value == "VIP"

    def test_observed_values_sorted_and_deterministic(self):
        observed = ["GOLD", "FAMILY", "VIP"]
        partitioner = CategoryPartitioner("grade", lambda: list(observed), "p")
        first = partitioner.partition(3)
        second = partitioner.partition(3)
        assert list(first) == ["p:FAMILY", "p:GOLD", "p:VIP"]
        assert list(first) == list(second)

    def test_no_values_no_partitions(self):
        assert CategoryPartitioner("grade", lambda: []).partition(5) == {}

    def test_shared_parameters_copied(self):
        partitions = CategoryPartitioner(
            "grade", ["A", "B"], shared={"status": "ACTIVE"},
        ).partition(2)
        for ctx in partitions.values():
            assert ctx["status"] == "ACTIVE"
