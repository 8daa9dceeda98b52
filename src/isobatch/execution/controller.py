"""Batch Coordinator - the Controller that owns every running batch.

WHY
───
Callers want to write "run these N things, each in its own process, and
give me their return values in order".  The Controller is the one object
that knows about every live worker in this process: it submits tasks
through the :class:`~isobatch.execution.runner.TaskRunner`, keeps the
registry of outstanding task records and background batches, and drains
them through the :class:`~isobatch.execution.poller.CompletionPoller`.

ARCHITECTURE
────────────
::

    Controller
      ├── registry               ─ live TaskRecords (all batches)
      ├── background_batches     ─ run_in_background(ignore_result=False)
      │
      ├── .parallel(timeout, kill_on_error)   ─ with-block → BatchScope
      │       scope.submit(fn, *args) → Placeholder
      │       (exit: drain foreground + registered background batches)
      ├── .run_in_parallel(*fns)              ─ submit all, drain, values
      ├── .run_in_background(*fns, ignore_result)
      │       True  → detach, return None
      │       False → register batch, return BackgroundBatch handle
      ├── .wait_for_processes(timeout)        ─ drain background batches
      └── .reset()                            ─ kill + forget everything

    Placeholders replace "assign results back into my variables": keep
    the token, read ``.value`` after the drain.

Related modules:
    runner.py   - forks the workers
    poller.py   - waits for them
    adapter.py  - map_parallel() over a collection

Example::

    ctl = Controller()
    with ctl.parallel(timeout=60) as batch:
        a = batch.submit(fetch, "a")
        b = batch.submit(fetch, "b")
    print(a.value, b.value, batch.values)

    ctl.run_in_parallel(lambda: 1, lambda: 2)   # [1, 2]
"""

from __future__ import annotations

import functools
import os
import signal
import warnings
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import IO, Any

from isobatch.core.errors import BatchStateError, ProcessIsolationUnavailable, UnresolvedResultError
from isobatch.core.logging import LogContext, get_logger
from isobatch.core.settings import IsoBatchSettings, IsolationMode, get_settings
from isobatch.execution.channel import PickleSerializer, Serializer
from isobatch.execution.models import (
    NO_VALUE,
    ExecutionBatch,
    Placeholder,
    TaskRecord,
    TaskState,
    TokenCounter,
)
from isobatch.execution.poller import CompletionPoller
from isobatch.execution.runner import TaskRunner, fork_supported

logger = get_logger(__name__)


def label_for(fn: Callable[..., Any]) -> str:
    """Derive a diagnostic label from a callable."""
    while isinstance(fn, functools.partial):
        fn = fn.func
    return getattr(fn, "__qualname__", None) or getattr(fn, "__name__", None) or type(fn).__name__


class BatchScope:
    """Submission handle for one foreground batch (see :meth:`Controller.parallel`)."""

    def __init__(self, controller: Controller, batch: ExecutionBatch) -> None:
        self._controller = controller
        self.batch = batch
        self._values: list[Any] | None = None

    def submit(
        self,
        fn: Callable[..., Any],
        *args: Any,
        label: str | None = None,
        observe: bool = True,
        **kwargs: Any,
    ) -> Placeholder:
        """Start ``fn(*args, **kwargs)`` in its own process.

        Args:
            fn: Callable to run.
            label: Diagnostic name (defaults to the callable's name).
            observe: Include the value in :attr:`values`.  Unobserved tasks
                still run, print their output and fail the batch on error.

        Returns:
            Placeholder resolved once the batch has drained.
        """
        if args or kwargs:
            fn = functools.partial(fn, *args, **kwargs)
        return self._controller._submit(self.batch, fn, label=label, observe=observe)

    @property
    def placeholders(self) -> list[Placeholder]:
        return list(self.batch.placeholders)

    @property
    def values(self) -> list[Any]:
        """Observed values in submission order (available after the drain)."""
        if self._values is None:
            raise UnresolvedResultError(f"Batch {self.batch.batch_id} has not been drained yet")
        return self._values


class BackgroundBatch:
    """Handle for a background batch whose results are collected later."""

    def __init__(self, batch: ExecutionBatch) -> None:
        self.batch = batch

    @property
    def placeholders(self) -> list[Placeholder]:
        return list(self.batch.placeholders)

    @property
    def done(self) -> bool:
        return all(p.resolved for p in self.batch.placeholders)

    @property
    def values(self) -> list[Any]:
        """Observed values in submission order (after a drain)."""
        if not self.done:
            raise UnresolvedResultError(
                f"Background batch {self.batch.batch_id} has not been drained; call wait_for_processes()"
            )
        return self.batch.observed_values()

    def __repr__(self) -> str:
        return f"<BackgroundBatch {self.batch.batch_id} tasks={len(self.batch.placeholders)} done={self.done}>"


class Controller:
    """Owns the process registry and background batches of one process.

    Parameters
    ----------
    settings : IsoBatchSettings | None
        Defaults to the cached process-wide settings.
    log : Any
        Logging sink with ``info``/``warning``/``error`` (structlog style:
        event name plus keyword fields).
    serializer : Serializer | None
        Result channel serializer (pickle by default).
    stream : IO[str] | None
        Where framed task output is printed (``sys.stdout`` by default).
    isolation : bool | None
        Force process isolation on/off; ``None`` follows
        ``settings.isolation`` and whether the host can fork.
    """

    def __init__(
        self,
        settings: IsoBatchSettings | None = None,
        *,
        log: Any = None,
        serializer: Serializer | None = None,
        stream: IO[str] | None = None,
        isolation: bool | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._log = log or logger
        self._serializer = serializer or PickleSerializer()
        self._isolation = isolation
        self.runner = TaskRunner(self.settings, self._serializer, self._log)
        self.poller = CompletionPoller(self.settings, self.runner, self._serializer, self._log, stream)
        self._init_state()

    def _init_state(self) -> None:
        self.registry: list[TaskRecord] = []
        self.background_batches: list[ExecutionBatch] = []
        self._tokens = TokenCounter()
        self._foreground: ExecutionBatch | None = None
        self._owner_pid = os.getpid()
        self._warned_inline = False

    def _ensure_owner(self) -> None:
        # a worker that uses isobatch itself starts from a clean slate
        if os.getpid() != self._owner_pid:
            self._init_state()

    # ── Isolation ────────────────────────────────────────────────────

    @property
    def isolation_available(self) -> bool:
        if self._isolation is not None:
            return self._isolation
        if self.settings.isolation is IsolationMode.INLINE:
            return False
        return fork_supported()

    def _warn_inline(self, stacklevel: int = 4) -> None:
        if self._warned_inline:
            return
        self._warned_inline = True
        message = "Fork is not supported on this host; executing submissions inline"
        self._log.warning("isolation.unavailable", message=message)
        warnings.warn(message, ProcessIsolationUnavailable, stacklevel=stacklevel)

    # ── Submission ───────────────────────────────────────────────────

    def _submit(
        self,
        batch: ExecutionBatch,
        fn: Callable[[], Any],
        *,
        label: str | None = None,
        observe: bool = True,
    ) -> Placeholder:
        self._ensure_owner()
        label = label or label_for(fn)
        placeholder = Placeholder(self._tokens.next_token(), label, observed=observe)
        index = batch.reserve(placeholder)

        if not self.isolation_available:
            self._warn_inline()
            value = fn()
            batch.results.write(index, NO_VALUE if value is None else value)
            placeholder.resolve(batch.results[index])
            return placeholder

        record = self.runner.spawn(
            fn,
            label,
            index=index,
            placeholder=placeholder,
            batch_id=batch.batch_id,
            inherited_fds=[r.channel.fd for r in self.registry if not r.channel.closed],
        )
        batch.add(record)
        self.registry.append(record)
        return placeholder

    def _unregister(self, record: TaskRecord) -> None:
        try:
            self.registry.remove(record)
        except ValueError:
            pass

    # ── Foreground ───────────────────────────────────────────────────

    @contextmanager
    def parallel(self, timeout: float | None = None, kill_on_error: bool = False) -> Iterator[BatchScope]:
        """Open a foreground batch; it is drained when the block exits.

        Args:
            timeout: Seconds before outstanding tasks are killed
                (``settings.default_timeout`` when None, ``<= 0`` = no limit).
            kill_on_error: Kill the batch's other tasks as soon as one fails.

        Raises:
            BatchStateError: A foreground batch is already open.
            WorkerExecutionError: A task raised (after every task was reaped).
            BatchTimeoutError: The timeout expired.
        """
        self._ensure_owner()
        if self._foreground is not None:
            raise BatchStateError(
                "A parallel batch is already open on this controller; nested batches are not supported"
            )
        batch = ExecutionBatch(kill_on_error=kill_on_error)
        scope = BatchScope(self, batch)
        self._foreground = batch
        try:
            with LogContext(batch_id=batch.batch_id):
                try:
                    yield scope
                except BaseException:
                    self.poller.abort([batch], self._unregister, reason="submitter_error")
                    raise
                # the batch carries its own policy; background batches keep theirs
                scope._values = self._drain(batch, timeout, kill_on_error=False)
        finally:
            self._foreground = None

    def run_in_parallel(
        self,
        *fns: Callable[[], Any],
        timeout: float | None = None,
        kill_on_error: bool = False,
        labels: Sequence[str | None] | None = None,
    ) -> list[Any]:
        """Run each zero-argument callable in its own process.

        Returns:
            Return values in submission order (``None`` for tasks that
            produced no value).
        """
        labels = list(labels or [])
        with self.parallel(timeout=timeout, kill_on_error=kill_on_error) as scope:
            for i, fn in enumerate(fns):
                scope.submit(fn, label=labels[i] if i < len(labels) else None)
        return scope.values

    # ── Background ───────────────────────────────────────────────────

    def run_in_background(
        self,
        *fns: Callable[[], Any],
        ignore_result: bool = True,
        kill_on_error: bool = False,
        labels: Sequence[str | None] | None = None,
    ) -> BackgroundBatch | None:
        """Start callables in their own processes and return immediately.

        Args:
            ignore_result: Detach the workers; nothing is ever reported
                back and ``None`` is returned.  With ``False`` the batch is
                registered and resolved by a later :meth:`wait_for_processes`
                (or any foreground drain).
            kill_on_error: Fail-fast policy applied when the batch drains.
        """
        self._ensure_owner()
        labels = list(labels or [])
        batch = ExecutionBatch(kill_on_error=kill_on_error, background=True, ignore_result=ignore_result)

        for i, fn in enumerate(fns):
            self._submit(batch, fn, label=labels[i] if i < len(labels) else None)

        if not self.isolation_available:
            return None if ignore_result else BackgroundBatch(batch)

        if ignore_result:
            for record in batch.tasks:
                self._unregister(record)
                self.runner.detach(record)
            return None

        self.background_batches.append(batch)
        self._log.info("batch.background", batch_id=batch.batch_id, tasks=len(batch.tasks))
        return BackgroundBatch(batch)

    def wait_for_processes(self, timeout: float | None = None, kill_on_error: bool = False) -> list[Any]:
        """Drain every registered background batch.

        Returns the values of the foreground batch requested by this call,
        which is always empty here; background values are read from their
        :class:`BackgroundBatch` handles or placeholders.
        """
        self._ensure_owner()
        if self._foreground is not None:
            raise BatchStateError("Cannot drain background batches from inside an open parallel batch")
        return self._drain(None, timeout, kill_on_error)

    get_background_results = wait_for_processes

    def _drain(self, foreground: ExecutionBatch | None, timeout: float | None, kill_on_error: bool) -> list[Any]:
        batches = list(self.background_batches)
        if foreground is not None:
            batches.append(foreground)
        if timeout is None:
            timeout = self.settings.default_timeout

        try:
            if any(b.tasks for b in batches):
                self.poller.drain(batches, timeout, kill_on_error, on_reaped=self._unregister)
            else:
                for batch in batches:
                    batch.seal()
                    batch.resolve()
        finally:
            self.background_batches = [b for b in self.background_batches if b.outstanding]

        return foreground.observed_values() if foreground is not None else []

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def outstanding(self) -> int:
        return len(self.registry)

    def reset(self) -> None:
        """Kill anything still registered and forget all batches."""
        if os.getpid() == self._owner_pid:
            for record in list(self.registry):
                record.signal(signal.SIGKILL)
                record.wait(self.settings.poll_interval)
                record.finish(TaskState.KILLED)
                self.runner.cleanup(record)
        self._init_state()


# ── Module-level default controller ──────────────────────────────────────

_controller: Controller | None = None


def get_controller() -> Controller:
    """Process-wide default controller (created on first use)."""
    global _controller
    if _controller is None:
        _controller = Controller()
    return _controller


def reset_controller() -> None:
    """Reset and drop the default controller."""
    global _controller
    if _controller is not None:
        _controller.reset()
    _controller = None


def parallel(timeout: float | None = None, kill_on_error: bool = False):
    """``with parallel() as batch:`` on the default controller."""
    return get_controller().parallel(timeout=timeout, kill_on_error=kill_on_error)


def run_in_parallel(*fns: Callable[[], Any], **kwargs: Any) -> list[Any]:
    return get_controller().run_in_parallel(*fns, **kwargs)


def run_in_background(*fns: Callable[[], Any], **kwargs: Any) -> BackgroundBatch | None:
    return get_controller().run_in_background(*fns, **kwargs)


def wait_for_processes(timeout: float | None = None, kill_on_error: bool = False) -> list[Any]:
    return get_controller().wait_for_processes(timeout=timeout, kill_on_error=kill_on_error)


get_background_results = wait_for_processes


__all__ = [
    "Controller",
    "BatchScope",
    "BackgroundBatch",
    "label_for",
    "get_controller",
    "reset_controller",
    "parallel",
    "run_in_parallel",
    "run_in_background",
    "wait_for_processes",
    "get_background_results",
]
