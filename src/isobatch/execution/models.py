"""Execution data model - tasks, batches, result tables and placeholders.

ARCHITECTURE
────────────
::

    ExecutionBatch  (one run_in_parallel / run_in_background call)
      ├── tasks: [TaskRecord, ...]      submission order == result order
      ├── results: ResultTable          one slot per task index
      ├── kill_on_error                 fixed at construction
      ├── timeout_deadline              set when draining starts
      └── first_error                   first failure by completion order

    TaskRecord  (one forked worker)
      PENDING ─spawn─► RUNNING ─┬─► COMPLETED
                                ├─► FAILED
                                └─► KILLED   (controller signalled it)

    Placeholder  handed to the caller at submit time, resolved after drain

Related modules:
    runner.py      - creates TaskRecords
    poller.py      - moves them to a terminal state
    controller.py  - owns the registries holding them
"""

from __future__ import annotations

import itertools
import os
import signal
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from multiprocessing.connection import wait as wait_for
from pathlib import Path
from typing import TYPE_CHECKING, Any

from isobatch.core.errors import BatchStateError, IsoBatchError, UnresolvedResultError

if TYPE_CHECKING:
    from multiprocessing.process import BaseProcess

    from isobatch.execution.channel import ResultReader


class _NoValue:
    """Sentinel type for an empty result slot."""

    _instance: _NoValue | None = None

    def __new__(cls) -> _NoValue:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NO_VALUE"

    def __bool__(self) -> bool:
        return False

    def __reduce__(self) -> str:
        return "NO_VALUE"


NO_VALUE: Any = _NoValue()


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskState.COMPLETED, TaskState.FAILED, TaskState.KILLED)


class Placeholder:
    """Opaque handle for a value that exists only after its batch drains.

    Returned by every submission.  Before the batch is drained ``value``
    raises :class:`UnresolvedResultError`; afterwards it holds the task's
    return value (``None`` when the task produced no value).

    ``observed`` controls whether the value is included in the list the
    batch returns; unobserved tasks still run and still fail the batch.
    """

    __slots__ = ("token", "label", "observed", "_value", "_resolved")

    def __init__(self, token: str, label: str, *, observed: bool = True) -> None:
        self.token = token
        self.label = label
        self.observed = observed
        self._value: Any = NO_VALUE
        self._resolved = False

    @property
    def resolved(self) -> bool:
        return self._resolved

    @property
    def has_value(self) -> bool:
        return self._resolved and self._value is not NO_VALUE

    @property
    def value(self) -> Any:
        if not self._resolved:
            raise UnresolvedResultError(
                f"Result {self.token} for '{self.label}' has not been drained yet"
            )
        return None if self._value is NO_VALUE else self._value

    def resolve(self, value: Any) -> None:
        self._value = value
        self._resolved = True

    def __repr__(self) -> str:
        state = repr(self._value) if self._resolved else "unresolved"
        return f"<Placeholder {self.token} {self.label!r} {state}>"


class TokenCounter:
    """Controller-wide source of placeholder tokens."""

    def __init__(self) -> None:
        self._counter = itertools.count()

    def next_token(self) -> str:
        return f"unresolved_parallel_result_{next(self._counter)}"


@dataclass
class TaskRecord:
    """One submitted unit of work running in its own process."""

    index: int
    label: str
    process: BaseProcess
    output_path: Path
    channel: ResultReader
    placeholder: Placeholder
    batch_id: str
    state: TaskState = TaskState.RUNNING
    signalled: int | None = None
    exit_code: int | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @property
    def pid(self) -> int:
        return self.process.pid  # type: ignore[return-value]

    def wait(self, timeout: float) -> bool:
        """Bounded wait for the worker to exit.

        Wakes early whenever result bytes arrive so a large result never
        stalls the worker on a full pipe.

        Returns:
            True once the process has exited (and been reaped).
        """
        deadline = time.monotonic() + timeout
        while True:
            self.channel.pump()
            waitables: list[Any] = [self.process.sentinel]
            if not (self.channel.eof or self.channel.closed):
                waitables.append(self.channel.fd)
            remaining = max(deadline - time.monotonic(), 0.0)
            ready = wait_for(waitables, remaining)
            if self.process.sentinel in ready:
                self.process.join(0)
                if self.process.exitcode is not None:
                    self.exit_code = self.process.exitcode
                    self.channel.pump()
                    return True
            if not ready or time.monotonic() >= deadline:
                return False

    def is_alive(self) -> bool:
        return self.process.is_alive()

    def signal(self, signum: int = signal.SIGTERM) -> bool:
        """Best-effort signal to the worker's process group.

        Workers lead their own group, so whatever the callable started is
        signalled too.  A worker that already exited is not an error.
        """
        if self.process.exitcode is not None:
            return False
        try:
            os.killpg(self.pid, signum)
        except ProcessLookupError:
            # not yet moved into its own group
            try:
                os.kill(self.pid, signum)
            except ProcessLookupError:
                return False
        except PermissionError:
            return False
        if self.signalled is None or signum == signal.SIGKILL:
            self.signalled = signum
        return True

    def finish(self, state: TaskState) -> None:
        self.state = state
        self.completed_at = utcnow()

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "label": self.label,
            "pid": self.pid,
            "state": self.state.value,
            "exit_code": self.exit_code,
            "duration_seconds": self.duration_seconds,
        }


class ResultTable:
    """One slot per task index; each slot is written exactly once."""

    def __init__(self, size: int = 0) -> None:
        self._slots: list[Any] = [NO_VALUE] * size
        self._written: list[bool] = [False] * size

    def grow(self) -> int:
        """Add a slot and return its index."""
        self._slots.append(NO_VALUE)
        self._written.append(False)
        return len(self._slots) - 1

    def write(self, index: int, value: Any) -> None:
        if self._written[index]:
            raise BatchStateError(f"Result slot {index} was already written")
        self._slots[index] = value
        self._written[index] = True

    def is_written(self, index: int) -> bool:
        return self._written[index]

    @property
    def is_complete(self) -> bool:
        return all(self._written)

    def __getitem__(self, index: int) -> Any:
        return self._slots[index]

    def __len__(self) -> int:
        return len(self._slots)

    def values(self) -> list[Any]:
        return list(self._slots)


@dataclass
class ExecutionBatch:
    """One foreground or background invocation and its tasks."""

    kill_on_error: bool = False
    background: bool = False
    ignore_result: bool = False
    batch_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    tasks: list[TaskRecord] = field(default_factory=list)
    placeholders: list[Placeholder] = field(default_factory=list)
    results: ResultTable = field(default_factory=ResultTable)
    timeout_deadline: float | None = None
    first_error: IsoBatchError | None = None
    sealed: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_frozen_policy", self.kill_on_error)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "kill_on_error" and hasattr(self, "_frozen_policy"):
            raise BatchStateError("kill_on_error is fixed for the lifetime of a batch")
        super().__setattr__(name, value)

    # ── Building ─────────────────────────────────────────────────────

    def reserve(self, placeholder: Placeholder) -> int:
        """Claim the next index for a submission."""
        if self.sealed:
            raise BatchStateError(
                f"Batch {self.batch_id} is already draining; no more tasks can be added"
            )
        index = self.results.grow()
        self.placeholders.append(placeholder)
        return index

    def add(self, record: TaskRecord) -> None:
        if self.sealed:
            raise BatchStateError(
                f"Batch {self.batch_id} is already draining; no more tasks can be added"
            )
        self.tasks.append(record)

    def seal(self) -> None:
        self.sealed = True

    def start_deadline(self, timeout: float | None) -> None:
        """Fix the absolute deadline for this drain (None = no deadline)."""
        if timeout is None or timeout <= 0:
            self.timeout_deadline = None
        else:
            self.timeout_deadline = time.monotonic() + timeout

    # ── Completion ───────────────────────────────────────────────────

    def record_error(self, error: IsoBatchError) -> bool:
        """Keep the first error only.  Returns True if this one was kept."""
        if self.first_error is not None:
            return False
        self.first_error = error
        return True

    @property
    def outstanding(self) -> list[TaskRecord]:
        return [t for t in self.tasks if not t.state.is_terminal]

    def resolve(self) -> None:
        """Copy every written slot into its placeholder."""
        for index, placeholder in enumerate(self.placeholders):
            if self.results.is_written(index):
                placeholder.resolve(self.results[index])

    def observed_values(self) -> list[Any]:
        """Submission-ordered values for the placeholders the caller kept."""
        return [
            None if self.results[i] is NO_VALUE else self.results[i]
            for i, placeholder in enumerate(self.placeholders)
            if placeholder.observed
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "background": self.background,
            "kill_on_error": self.kill_on_error,
            "total": len(self.tasks),
            "outstanding": len(self.outstanding),
            "tasks": [t.to_dict() for t in self.tasks],
        }


__all__ = [
    "NO_VALUE",
    "TaskState",
    "Placeholder",
    "TokenCounter",
    "TaskRecord",
    "ResultTable",
    "ExecutionBatch",
    "utcnow",
]
