"""Tests for the execution data model."""

from __future__ import annotations

import pickle
import time

import pytest

from isobatch.core.errors import BatchStateError, BatchTimeoutError, UnresolvedResultError, WorkerExecutionError
from isobatch.execution.models import (
    NO_VALUE,
    ExecutionBatch,
    Placeholder,
    ResultTable,
    TaskState,
    TokenCounter,
)


class TestNoValue:
    def test_singleton_survives_pickling(self):
        assert pickle.loads(pickle.dumps(NO_VALUE)) is NO_VALUE

    def test_falsy_and_readable(self):
        assert not NO_VALUE
        assert repr(NO_VALUE) == "NO_VALUE"


class TestTaskState:
    @pytest.mark.parametrize(
        "state,terminal",
        [
            (TaskState.PENDING, False),
            (TaskState.RUNNING, False),
            (TaskState.COMPLETED, True),
            (TaskState.FAILED, True),
            (TaskState.KILLED, True),
        ],
    )
    def test_is_terminal(self, state, terminal):
        assert state.is_terminal is terminal


class TestPlaceholder:
    def test_unresolved_value_raises(self):
        placeholder = Placeholder("unresolved_parallel_result_0", "fetch")

        assert not placeholder.resolved
        with pytest.raises(UnresolvedResultError, match="unresolved_parallel_result_0"):
            placeholder.value

    def test_resolved_value(self):
        placeholder = Placeholder("t", "fetch")
        placeholder.resolve({"a": 1})

        assert placeholder.resolved
        assert placeholder.has_value
        assert placeholder.value == {"a": 1}

    def test_no_value_reads_as_none(self):
        placeholder = Placeholder("t", "fetch")
        placeholder.resolve(NO_VALUE)

        assert placeholder.resolved
        assert not placeholder.has_value
        assert placeholder.value is None


class TestTokenCounter:
    def test_tokens_are_unique_and_ordered(self):
        counter = TokenCounter()
        assert [counter.next_token() for _ in range(3)] == [
            "unresolved_parallel_result_0",
            "unresolved_parallel_result_1",
            "unresolved_parallel_result_2",
        ]


class TestResultTable:
    def test_slots_start_empty(self):
        table = ResultTable()
        assert table.grow() == 0
        assert table.grow() == 1

        assert len(table) == 2
        assert table[0] is NO_VALUE
        assert not table.is_complete

    def test_each_slot_is_written_once(self):
        table = ResultTable(1)
        table.write(0, "first")

        with pytest.raises(BatchStateError):
            table.write(0, "second")
        assert table[0] == "first"
        assert table.is_complete


class TestExecutionBatch:
    def test_reserve_grows_results_in_order(self):
        batch = ExecutionBatch()
        first = batch.reserve(Placeholder("t0", "a"))
        second = batch.reserve(Placeholder("t1", "b"))

        assert (first, second) == (0, 1)
        assert len(batch.results) == 2

    def test_sealed_batch_rejects_submissions(self):
        batch = ExecutionBatch()
        batch.seal()

        with pytest.raises(BatchStateError, match="already draining"):
            batch.reserve(Placeholder("t0", "a"))

    def test_kill_on_error_is_fixed(self):
        batch = ExecutionBatch(kill_on_error=True)

        with pytest.raises(BatchStateError):
            batch.kill_on_error = False
        assert batch.kill_on_error is True

    def test_first_error_wins(self):
        batch = ExecutionBatch()
        first = WorkerExecutionError("builtins.ValueError", "one", label="a")
        second = BatchTimeoutError(1.0)

        assert batch.record_error(first) is True
        assert batch.record_error(second) is False
        assert batch.first_error is first

    def test_observed_values_skip_unobserved_and_map_no_value(self):
        batch = ExecutionBatch()
        placeholders = [
            Placeholder("t0", "a"),
            Placeholder("t1", "b", observed=False),
            Placeholder("t2", "c"),
        ]
        for placeholder in placeholders:
            batch.reserve(placeholder)
        batch.results.write(0, "A")
        batch.results.write(1, "B")
        batch.results.write(2, NO_VALUE)

        batch.resolve()

        assert batch.observed_values() == ["A", None]
        assert [p.resolved for p in placeholders] == [True, True, True]
        assert placeholders[1].value == "B"

    def test_resolve_leaves_unwritten_slots_unresolved(self):
        batch = ExecutionBatch()
        placeholder = Placeholder("t0", "a")
        batch.reserve(placeholder)

        batch.resolve()

        assert not placeholder.resolved

    @pytest.mark.parametrize("timeout", [None, 0, -1])
    def test_no_deadline(self, timeout):
        batch = ExecutionBatch()
        batch.start_deadline(timeout)
        assert batch.timeout_deadline is None

    def test_deadline_is_absolute(self):
        batch = ExecutionBatch()
        before = time.monotonic()
        batch.start_deadline(5)

        assert before + 5 <= batch.timeout_deadline <= time.monotonic() + 5

    def test_to_dict(self):
        batch = ExecutionBatch(background=True)
        data = batch.to_dict()

        assert data["batch_id"] == batch.batch_id
        assert data["background"] is True
        assert data["total"] == 0
        assert data["tasks"] == []
