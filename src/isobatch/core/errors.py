"""
Structured error types for isobatch.

Every failure the controller surfaces is an ``IsoBatchError`` carrying a
category, structured context (batch, label, pid) and an optional chained
cause. Worker-side exceptions never cross the process boundary as live
objects; they arrive as a tagged error payload and are rebuilt here as
``WorkerExecutionError``.

Manifesto:
    - **One error per batch:** The controller raises the first failure it
      observes (completion order); every failure is still logged.
    - **No lost context:** Errors name the task label and process id.
    - **Error chaining:** The original worker exception is chained as
      ``__cause__`` whenever it survives the trip back.

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────┐
        │                      IsoBatchError                          │
        │          (category, context, cause, to_dict())             │
        ├────────────────────────────────────────────────────────────┤
        │  WorkerExecutionError   BatchTimeoutError   BatchStateError │
        │  (WORKER)               (TIMEOUT)           (STATE)         │
        │                                                  │          │
        │  ResultDecodeError                        UnresolvedResult  │
        │  (SERIALIZATION)                          Error (STATE)     │
        └────────────────────────────────────────────────────────────┘

        Warning categories (non-fatal):
            SerializationWarning         value could not cross the boundary
            ProcessIsolationUnavailable  fork missing, running inline

Examples:
    >>> err = BatchTimeoutError(0.1, elapsed=0.6, outstanding=["sleeper"])
    >>> err.category
    <ErrorCategory.TIMEOUT: 'TIMEOUT'>
    >>> isinstance(err, TimeoutError)
    True

Tags:
    errors, exceptions, error-hierarchy, isobatch

Doc-Types:
    - API Reference
    - Error Handling Guide
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Error categories used for classification and log routing."""

    WORKER = "WORKER"                 # Callable raised inside the worker
    TIMEOUT = "TIMEOUT"               # Batch exceeded its deadline
    SERIALIZATION = "SERIALIZATION"   # Result channel payload problems
    STATE = "STATE"                   # Misuse of batches / placeholders
    INTERNAL = "INTERNAL"             # Bugs, unexpected state
    UNKNOWN = "UNKNOWN"               # Uncategorized errors


@dataclass
class ErrorContext:
    """Structured metadata attached to an error.

    Attributes:
        batch_id: Batch the failing task belonged to
        label: Task label used for diagnostics
        pid: Worker process id
        metadata: Additional key-value pairs
    """

    batch_id: str | None = None
    label: str | None = None
    pid: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result: dict[str, Any] = {}
        for key in ["batch_id", "label", "pid"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class IsoBatchError(Exception):
    """
    Base exception for all isobatch errors.

    Subclasses set ``default_category``. Context can be added fluently with
    :meth:`with_context`, and :meth:`to_dict` serializes the error for
    structured logging.

    Examples:
        >>> error = IsoBatchError("Something went wrong")
        >>> error.category
        <ErrorCategory.INTERNAL: 'INTERNAL'>
        >>> error.with_context(label="get_pid", pid=4242).context.pid
        4242
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> IsoBatchError:
        """Add context to this error (fluent API)."""
        for key, value in kwargs.items():
            if hasattr(self.context, key) and key != "metadata":
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# EXECUTION ERRORS
# =============================================================================


class WorkerExecutionError(IsoBatchError):
    """
    A task's callable raised inside its worker process.

    The worker reports the exception as a tagged payload (kind, message,
    formatted traceback and, when picklable, the exception itself). The
    controller turns that payload into this error and raises it once the
    whole batch has been drained.

    Attributes:
        kind: Qualified name of the original exception type
            (e.g. ``"builtins.ValueError"``)
        remote_message: ``str()`` of the original exception
        remote_traceback: Formatted traceback captured in the worker
        label: Task label
        pid: Worker process id
    """

    default_category = ErrorCategory.WORKER

    def __init__(
        self,
        kind: str,
        remote_message: str,
        *,
        label: str | None = None,
        pid: int | None = None,
        remote_traceback: str | None = None,
        cause: BaseException | None = None,
        batch_id: str | None = None,
    ):
        where = f"'{label}'" if label else "task"
        if pid is not None:
            where += f" (pid {pid})"
        super().__init__(
            f"Parallel {where} failed: {kind}: {remote_message}",
            context=ErrorContext(batch_id=batch_id, label=label, pid=pid),
            cause=cause,
        )
        self.kind = kind
        self.remote_message = remote_message
        self.remote_traceback = remote_traceback
        self.label = label
        self.pid = pid

    @property
    def short_kind(self) -> str:
        """Unqualified exception type name (``ValueError``)."""
        return self.kind.rsplit(".", 1)[-1]

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["kind"] = self.kind
        return result


class BatchTimeoutError(IsoBatchError, builtins.TimeoutError):
    """Raised when a drain exceeds its timeout.

    Every outstanding task has been killed and reaped by the time this is
    raised. Also a builtin ``TimeoutError`` for broad exception handling.

    Attributes:
        timeout: The configured timeout in seconds
        elapsed: How long the drain ran before giving up
        outstanding: Labels of the tasks that were killed
    """

    default_category = ErrorCategory.TIMEOUT

    def __init__(
        self,
        timeout: float,
        *,
        elapsed: float | None = None,
        outstanding: list[str] | None = None,
        batch_id: str | None = None,
    ):
        self.timeout = timeout
        self.elapsed = elapsed
        self.outstanding = list(outstanding or [])

        msg = f"Parallel processes timed out after {timeout}s"
        if elapsed is not None:
            msg += f" (waited {elapsed:.2f}s)"
        if self.outstanding:
            msg += f"; killed: {', '.join(self.outstanding)}"

        super().__init__(msg, context=ErrorContext(batch_id=batch_id))


class BatchStateError(IsoBatchError):
    """Batch used out of order: nested batch, submit after sealing, etc."""

    default_category = ErrorCategory.STATE


class UnresolvedResultError(IsoBatchError):
    """A placeholder was read before its batch was drained."""

    default_category = ErrorCategory.STATE


class ResultDecodeError(IsoBatchError):
    """Bytes read from a result channel could not be decoded."""

    default_category = ErrorCategory.SERIALIZATION


# =============================================================================
# WARNING CATEGORIES
# =============================================================================


class SerializationWarning(UserWarning):
    """A task's return value could not be sent back; the slot gets no value."""


class ProcessIsolationUnavailable(RuntimeWarning):
    """Forking is not available on this host; submissions run inline."""



__all__ = [
    "ErrorCategory",
    "ErrorContext",
    "IsoBatchError",
    "WorkerExecutionError",
    "BatchTimeoutError",
    "BatchStateError",
    "UnresolvedResultError",
    "ResultDecodeError",
    "SerializationWarning",
    "ProcessIsolationUnavailable",
]
