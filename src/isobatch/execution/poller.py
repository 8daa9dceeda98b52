"""Completion Poller - drain outstanding workers with bounded waits.

WHY
───
The controller is single-threaded and must never block indefinitely: it
has to notice a finished task, a blown deadline, a due heartbeat and an
operator's Ctrl-C, across any number of workers.  So instead of one
blocking ``waitpid`` it loops over the outstanding tasks doing a short,
fixed-bound wait on each.

ARCHITECTURE
────────────
::

    drain(batches, timeout, kill_on_error)
      while outstanding:
        for task in outstanding:
          task.wait(poll_interval)           ─ bounded, never starves others
          exited? ─► print framed output     ─ "------ Begin output for …"
                     decode result frame     ─ absent | value | error
                     file into ResultTable   ─ slot = value | NO_VALUE
                     failure + kill_on_error ─► SIGTERM siblings (once)
                     delete sink, close pipe, drop from registry
          deadline passed? ─► SIGKILL all outstanding, BatchTimeoutError
        heartbeat due?     ─► "batch.waiting"
      resolve placeholders
      raise first error (completion order) - only now, after everything
      was reaped

    KeyboardInterrupt anywhere in the loop:
      SIGTERM everything outstanding, reap with a bounded wait,
      SIGKILL + join whatever ignored it, re-raise

Related modules:
    runner.py      - creates the TaskRecords polled here
    controller.py  - decides which batches a drain covers
"""

from __future__ import annotations

import signal
import sys
import time
from typing import IO, Any

from isobatch.core.errors import (
    BatchTimeoutError,
    IsoBatchError,
    ResultDecodeError,
    WorkerExecutionError,
)
from isobatch.core.logging import get_logger
from isobatch.core.settings import IsoBatchSettings
from isobatch.execution.channel import (
    ErrorPayload,
    PickleSerializer,
    Serializer,
    ValuePayload,
    decode_payload,
)
from isobatch.execution.models import NO_VALUE, ExecutionBatch, TaskRecord, TaskState
from isobatch.execution.runner import TaskRunner

logger = get_logger(__name__)

BEGIN_MARKER = "------ Begin output for {label} - {pid}"
END_MARKER = "------ Completed output for {label} - {pid}"


class CompletionPoller:
    """Drains batches of running tasks into their result tables.

    Parameters
    ----------
    settings : IsoBatchSettings
        ``poll_interval`` (per-task wait bound) and ``heartbeat_interval``.
    runner : TaskRunner
        Used to clean up sinks and channels of reaped tasks.
    serializer : Serializer
        Must match the serializer the workers used.
    log : logger
        Any object with ``info``/``warning``/``error``.
    stream : IO[str] | None
        Where captured task output is printed (``sys.stdout`` when None).
    """

    def __init__(
        self,
        settings: IsoBatchSettings,
        runner: TaskRunner,
        serializer: Serializer | None = None,
        log: Any = None,
        stream: IO[str] | None = None,
    ) -> None:
        self._settings = settings
        self._runner = runner
        self._serializer = serializer or PickleSerializer()
        self._log = log or logger
        self._stream = stream

    @property
    def stream(self) -> IO[str]:
        return self._stream if self._stream is not None else sys.stdout

    # ── Public API ───────────────────────────────────────────────────

    def drain(
        self,
        batches: list[ExecutionBatch],
        timeout: float | None,
        kill_on_error: bool = False,
        on_reaped: Any = None,
    ) -> None:
        """Wait for every outstanding task of ``batches``.

        Args:
            batches: Batches to drain together (sealed by this call).
            timeout: Seconds before outstanding tasks are killed; ``None``
                or ``<= 0`` waits forever.
            kill_on_error: Kill every drained task on the first failure,
                regardless of each batch's own policy.
            on_reaped: Optional callback invoked with each reaped record
                (the controller uses it to shrink its registry).

        Raises:
            WorkerExecutionError: First worker failure, by completion order.
            BatchTimeoutError: The deadline passed with tasks outstanding.
        """
        for batch in batches:
            batch.seal()
            batch.start_deadline(timeout)

        started = time.monotonic()
        deadline = None if timeout is None or timeout <= 0 else started + timeout
        heartbeat_at = self._next_heartbeat(started)
        state = _DrainState()

        try:
            while True:
                pending = [(b, t) for b in batches for t in b.outstanding]
                if not pending:
                    break

                for batch, record in pending:
                    if record.state.is_terminal:
                        continue
                    if record.wait(self._settings.poll_interval):
                        self._reap(batch, record, state)
                        if on_reaped is not None:
                            on_reaped(record)
                        if state.failed_batch is batch and (kill_on_error or batch.kill_on_error):
                            scope = batches if kill_on_error else [batch]
                            self._kill(scope, signal.SIGTERM, reason="kill_on_error")
                            state.failed_batch = None

                    now = time.monotonic()
                    if deadline is not None and now >= deadline and not state.timed_out:
                        state.timed_out = True
                        self._on_timeout(batches, timeout, now - started, state)

                now = time.monotonic()
                if heartbeat_at is not None and now >= heartbeat_at:
                    self._heartbeat(batches, now - started)
                    heartbeat_at = self._next_heartbeat(now)
        except KeyboardInterrupt:
            self.abort(batches, on_reaped, reason="interrupt")
            raise
        finally:
            for batch in batches:
                batch.resolve()

        if state.error is not None:
            raise state.error

    # ── Reaping ──────────────────────────────────────────────────────

    def _reap(self, batch: ExecutionBatch, record: TaskRecord, state: _DrainState) -> None:
        """Collect output and result of an exited worker."""
        try:
            self._print_output(record)
            error = self._classify(batch, record)
        finally:
            self._runner.cleanup(record)

        self._log.info(
            "task.reaped",
            state=record.state.value,
            label=record.label,
            pid=record.pid,
            exit_code=record.exit_code,
            duration_seconds=record.duration_seconds,
        )

        if error is not None:
            self._log.error("task.failed", **error.to_dict())
            batch.record_error(error)
            if state.error is None:
                state.error = error
            state.failed_batch = batch

    def _classify(self, batch: ExecutionBatch, record: TaskRecord) -> WorkerExecutionError | None:
        """File the task's result into its slot; return its error, if any."""
        try:
            payload = decode_payload(record.channel.read_all(), self._serializer)
        except ResultDecodeError as e:
            batch.results.write(record.index, NO_VALUE)
            record.finish(TaskState.FAILED)
            return WorkerExecutionError(
                "isobatch.ResultDecodeError",
                e.message,
                label=record.label,
                pid=record.pid,
                cause=e,
                batch_id=batch.batch_id,
            )

        if isinstance(payload, ErrorPayload):
            batch.results.write(record.index, NO_VALUE)
            record.finish(TaskState.FAILED)
            return WorkerExecutionError(
                payload.kind,
                payload.message,
                label=record.label,
                pid=record.pid,
                remote_traceback=payload.traceback,
                cause=payload.rebuild(self._serializer),
                batch_id=batch.batch_id,
            )

        if isinstance(payload, ValuePayload):
            batch.results.write(record.index, payload.value)
            record.finish(TaskState.COMPLETED)
            return None

        batch.results.write(record.index, NO_VALUE)
        if record.signalled is not None and record.exit_code != 0:
            record.finish(TaskState.KILLED)
            return None
        if record.exit_code not in (0, None):
            record.finish(TaskState.FAILED)
            return WorkerExecutionError(
                "ProcessExit",
                f"worker exited with status {record.exit_code} without reporting a result",
                label=record.label,
                pid=record.pid,
                batch_id=batch.batch_id,
            )
        record.finish(TaskState.COMPLETED)
        return None

    def _print_output(self, record: TaskRecord) -> None:
        try:
            text = record.output_path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            text = ""
        out = self.stream
        out.write("\n" + BEGIN_MARKER.format(label=record.label, pid=record.pid) + "\n")
        if text:
            out.write(text if text.endswith("\n") else text + "\n")
        out.write(END_MARKER.format(label=record.label, pid=record.pid) + "\n")
        out.flush()

    def abort(self, batches: list[ExecutionBatch], on_reaped: Any = None, *, reason: str = "abort") -> None:
        """Signal every outstanding task, then reap each with one bounded wait.

        Used when the caller is unwinding (interrupt, exception while
        submitting) and results no longer matter.  A task still running
        after its wait is SIGKILLed and joined, so nothing outlives the
        abort unmonitored.
        """
        for batch in batches:
            batch.seal()
        self._log.warning("batch.aborted", reason=reason, outstanding=self._labels(batches))
        self._kill(batches, signal.SIGTERM, reason=reason)
        self._reap_interrupted(batches, on_reaped)
        for batch in batches:
            batch.resolve()

    def _reap_interrupted(self, batches: list[ExecutionBatch], on_reaped: Any) -> None:
        for batch in batches:
            for record in batch.outstanding:
                if not record.wait(self._settings.poll_interval):
                    # ignored SIGTERM; the caller is unwinding, so force it
                    if record.signal(signal.SIGKILL):
                        self._log.warning(
                            "batch.kill",
                            reason="unresponsive",
                            signal=signal.SIGKILL.name,
                            label=record.label,
                            pid=record.pid,
                        )
                    record.process.join()
                    record.exit_code = record.process.exitcode
                if not batch.results.is_written(record.index):
                    batch.results.write(record.index, NO_VALUE)
                record.finish(TaskState.KILLED)
                self._runner.cleanup(record)
                if on_reaped is not None:
                    on_reaped(record)

    # ── Policies ─────────────────────────────────────────────────────

    def _kill(self, batches: list[ExecutionBatch], signum: int, *, reason: str) -> None:
        """Signal every outstanding task once; exited tasks are skipped."""
        for batch in batches:
            for record in batch.outstanding:
                if record.signal(signum):
                    self._log.warning(
                        "batch.kill",
                        reason=reason,
                        signal=signal.Signals(signum).name,
                        label=record.label,
                        pid=record.pid,
                    )

    def _on_timeout(
        self,
        batches: list[ExecutionBatch],
        timeout: float | None,
        elapsed: float,
        state: _DrainState,
    ) -> None:
        outstanding = self._labels(batches)
        self._log.error("batch.timeout", timeout=timeout, elapsed=round(elapsed, 3), outstanding=outstanding)
        self._kill(batches, signal.SIGKILL, reason="timeout")
        error = BatchTimeoutError(timeout or 0.0, elapsed=elapsed, outstanding=outstanding)
        for batch in batches:
            if batch.outstanding:
                batch.record_error(error)
        # a worker failure already reaped in this pass keeps priority
        if state.error is None:
            state.error = error

    def _heartbeat(self, batches: list[ExecutionBatch], elapsed: float) -> None:
        self._log.info(
            "batch.waiting",
            elapsed=round(elapsed, 1),
            outstanding=[f"{t.label} - {t.pid}" for b in batches for t in b.outstanding],
        )

    def _next_heartbeat(self, now: float) -> float | None:
        if not self._settings.heartbeat_enabled:
            return None
        return now + self._settings.heartbeat_interval

    @staticmethod
    def _labels(batches: list[ExecutionBatch]) -> list[str]:
        return [t.label for b in batches for t in b.outstanding]


class _DrainState:
    """Mutable bookkeeping for one drain call."""

    __slots__ = ("error", "failed_batch", "timed_out")

    def __init__(self) -> None:
        self.error: IsoBatchError | None = None
        self.failed_batch: ExecutionBatch | None = None
        self.timed_out = False


__all__ = ["CompletionPoller", "BEGIN_MARKER", "END_MARKER"]
