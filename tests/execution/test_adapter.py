"""Tests for map_parallel / each_in_parallel."""

from __future__ import annotations

import os
import random
import time

import pytest

from isobatch.core.errors import ProcessIsolationUnavailable, WorkerExecutionError
from isobatch.execution.adapter import each_in_parallel, map_parallel
from isobatch.execution.controller import Controller

pytestmark = pytest.mark.slow


def _square(x: int) -> int:
    return x * x


def _jittered_identity(x: int) -> int:
    time.sleep(random.random() * 0.2)
    return x


def _forked(events) -> list[dict]:
    return [fields for event, fields in events() if event == "task.forked"]


class TestMapParallel:
    def test_each_element_gets_its_own_process(self, controller):
        pids = map_parallel([1, 2, 3], lambda _: os.getpid(), controller=controller)

        assert len(set(pids)) == 3
        assert os.getpid() not in pids

    def test_results_align_with_input_order(self, controller):
        items = list(range(6))
        assert map_parallel(items, _jittered_identity, controller=controller) == items

    def test_accepts_any_iterable(self, controller):
        assert map_parallel((x for x in (2, 3)), _square, controller=controller) == [4, 9]

    def test_single_element_runs_inline(self, controller, events):
        assert map_parallel([4], lambda _: os.getpid(), controller=controller) == [os.getpid()]
        assert _forked(events) == []

    def test_empty_input(self, controller, events):
        assert map_parallel([], _square, controller=controller) == []
        assert _forked(events) == []

    def test_label_is_shared_by_every_task(self, controller, events):
        map_parallel([1, 2, 3], _square, label="square", controller=controller)

        labels = [fields["label"] for fields in _forked(events)]
        assert labels == ["square", "square", "square"]

    def test_default_label_is_the_call_site(self, controller, events):
        map_parallel([1, 2], _square, controller=controller)

        labels = {fields["label"] for fields in _forked(events)}
        (label,) = labels
        assert "test_adapter.py:" in label

    def test_kill_on_error(self, controller, marker):
        def work(x):
            if x == 0:
                raise KeyError("missing")
            time.sleep(2.0)
            marker.write_text("late")
            return x

        started = time.monotonic()
        with pytest.raises(WorkerExecutionError) as exc_info:
            map_parallel([0, 1], work, kill_on_error=True, controller=controller)

        assert exc_info.value.kind == "builtins.KeyError"
        assert time.monotonic() - started < 1.5
        assert not marker.exists()

    def test_falls_back_inline_without_isolation(self, settings, output, log):
        inline = Controller(settings, log=log, stream=output, isolation=False)

        with pytest.warns(ProcessIsolationUnavailable):
            pids = map_parallel([1, 2, 3], lambda _: os.getpid(), controller=inline)

        assert pids == [os.getpid()] * 3
        assert log.warning.call_args.args[0] == "isolation.unavailable"
        log.info.assert_not_called()

    def test_single_element_without_isolation_does_not_warn(self, settings, output, log, recwarn):
        inline = Controller(settings, log=log, stream=output, isolation=False)

        assert map_parallel([5], _square, controller=inline) == [25]
        assert not [w for w in recwarn if issubclass(w.category, ProcessIsolationUnavailable)]
        log.warning.assert_not_called()


class TestEachInParallel:
    def test_alias_with_positional_label(self, controller, events):
        assert each_in_parallel(["foo", "bar"], str.upper, "upper", controller=controller) == ["FOO", "BAR"]
        assert [fields["label"] for fields in _forked(events)] == ["upper", "upper"]

    def test_default_label_is_the_caller(self, controller, events):
        each_in_parallel([1, 2], _square, controller=controller)

        (label,) = {fields["label"] for fields in _forked(events)}
        assert "test_adapter.py:" in label
