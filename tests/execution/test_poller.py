"""Tests for the CompletionPoller drain loop."""

from __future__ import annotations

import signal
import threading
import time

import pytest

from isobatch.core.errors import BatchTimeoutError, WorkerExecutionError
from isobatch.execution.channel import PickleSerializer
from isobatch.execution.controller import Controller
from isobatch.execution.models import NO_VALUE, ExecutionBatch, Placeholder, TaskState
from isobatch.execution.poller import BEGIN_MARKER, END_MARKER, CompletionPoller
from isobatch.execution.runner import TaskRunner

pytestmark = pytest.mark.slow


class UnreadableSerializer(PickleSerializer):
    """Workers can write, the controller cannot read."""

    def loads(self, data):
        raise ValueError("cannot read this")


# ── Helpers ──────────────────────────────────────────────────────────────


@pytest.fixture
def runner(settings, log):
    return TaskRunner(settings, log=log)


@pytest.fixture
def poller(settings, runner, log, output):
    return CompletionPoller(settings, runner, log=log, stream=output)


def _stubborn_sleeper():
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    time.sleep(30)


def _interrupt_main_after(seconds: float) -> threading.Timer:
    main = threading.main_thread().ident
    timer = threading.Timer(seconds, signal.pthread_kill, args=(main, signal.SIGINT))
    timer.start()
    return timer


def _batch(runner, *fns, kill_on_error=False):
    batch = ExecutionBatch(kill_on_error=kill_on_error)
    for fn in fns:
        placeholder = Placeholder(f"t{len(batch.tasks)}", "task")
        index = batch.reserve(placeholder)
        batch.add(runner.spawn(fn, "task", index=index, placeholder=placeholder, batch_id=batch.batch_id))
    return batch


class TestDrain:
    def test_results_land_in_their_slots(self, runner, poller):
        batch = _batch(runner, lambda: (time.sleep(0.2), "a")[1], lambda: None, lambda: "c")

        poller.drain([batch], timeout=5)

        assert batch.results.values() == ["a", NO_VALUE, "c"]
        assert [t.state for t in batch.tasks] == [TaskState.COMPLETED] * 3
        assert [p.resolved for p in batch.placeholders] == [True] * 3
        assert batch.sealed

    def test_on_reaped_sees_every_task(self, runner, poller):
        batch = _batch(runner, lambda: 1, lambda: 2)
        reaped = []

        poller.drain([batch], timeout=5, on_reaped=reaped.append)

        assert sorted(r.index for r in reaped) == [0, 1]

    def test_reaped_events_are_logged(self, runner, poller, events):
        batch = _batch(runner, lambda: 1)

        poller.drain([batch], timeout=5)

        (reaped,) = [fields for event, fields in events() if event == "task.reaped"]
        assert reaped["state"] == "completed"
        assert reaped["exit_code"] == 0
        assert reaped["duration_seconds"] >= 0

    def test_first_error_by_completion_order(self, runner, poller):
        def slow_fail():
            time.sleep(0.5)
            raise KeyError("slow")

        def fast_fail():
            raise ValueError("fast")

        batch = _batch(runner, slow_fail, fast_fail)

        with pytest.raises(WorkerExecutionError) as exc_info:
            poller.drain([batch], timeout=5)

        assert exc_info.value.kind == "builtins.ValueError"
        assert batch.first_error is exc_info.value
        assert all(t.state is TaskState.FAILED for t in batch.tasks)

    def test_output_block_is_printed_even_when_empty(self, runner, poller, output):
        batch = _batch(runner, lambda: None)

        poller.drain([batch], timeout=5)

        (record,) = batch.tasks
        assert output.getvalue() == (
            "\n"
            + BEGIN_MARKER.format(label="task", pid=record.pid)
            + "\n"
            + END_MARKER.format(label="task", pid=record.pid)
            + "\n"
        )


class TestPolicies:
    def test_batch_policy_only_kills_its_own_batch(self, runner, poller, marker):
        def sleeper():
            time.sleep(0.5)
            marker.write_text("survived")

        def fail():
            raise ValueError("x")

        failing = _batch(runner, fail, kill_on_error=True)
        other = _batch(runner, sleeper)

        with pytest.raises(WorkerExecutionError):
            poller.drain([failing, other], timeout=5)

        assert marker.exists()
        assert other.tasks[0].state is TaskState.COMPLETED

    def test_timeout_records_error_on_outstanding_batches(self, runner, poller, events):
        done = _batch(runner, lambda: 1)
        stuck = _batch(runner, lambda: time.sleep(5))

        with pytest.raises(BatchTimeoutError):
            poller.drain([done, stuck], timeout=0.5)

        assert done.first_error is None
        assert isinstance(stuck.first_error, BatchTimeoutError)
        assert stuck.tasks[0].state is TaskState.KILLED
        assert stuck.placeholders[0].value is None
        assert any(event == "batch.timeout" for event, _ in events("error"))

    def test_abort_signals_and_reaps(self, runner, poller, events):
        batch = _batch(runner, lambda: time.sleep(5), lambda: time.sleep(5))
        time.sleep(0.2)

        poller.abort([batch], reason="interrupt")

        assert all(t.state is TaskState.KILLED for t in batch.tasks)
        assert all(t.channel.closed for t in batch.tasks)
        assert ("batch.aborted", {"reason": "interrupt", "outstanding": ["task", "task"]}) in events("warning")


class TestInterrupt:
    """Ctrl-C while draining kills and reaps every task, then re-raises."""

    def test_interrupt_during_drain_leaves_no_live_worker(self, controller, events):
        with pytest.raises(KeyboardInterrupt):
            with controller.parallel() as batch:
                batch.submit(_stubborn_sleeper)
                batch.submit(time.sleep, 30)
                records = list(controller.registry)
                timer = _interrupt_main_after(0.5)
        timer.join()

        assert controller.outstanding == 0
        assert all(r.state is TaskState.KILLED for r in records)
        assert all(r.process.exitcode is not None for r in records)
        assert records[0].process.exitcode == -signal.SIGKILL
        assert all(r.channel.closed for r in records)
        assert not any(r.output_path.exists() for r in records)
        assert any(
            event == "batch.kill" and fields["reason"] == "unresponsive" for event, fields in events("warning")
        )
        assert all(p.resolved for p in batch.placeholders)


class TestDecodeFailures:
    def test_unreadable_result_fails_the_task(self, settings, log, output):
        ctl = Controller(settings, log=log, stream=output, serializer=UnreadableSerializer())

        with pytest.raises(WorkerExecutionError) as exc_info:
            ctl.run_in_parallel(lambda: "value")

        assert exc_info.value.kind == "isobatch.ResultDecodeError"
        assert "cannot read this" in exc_info.value.remote_message
        ctl.reset()
