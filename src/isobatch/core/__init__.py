"""Core primitives shared by the executor: errors, settings, logging."""

from isobatch.core.errors import (
    BatchStateError,
    BatchTimeoutError,
    ErrorCategory,
    ErrorContext,
    IsoBatchError,
    ProcessIsolationUnavailable,
    ResultDecodeError,
    SerializationWarning,
    UnresolvedResultError,
    WorkerExecutionError,
)
from isobatch.core.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)
from isobatch.core.settings import IsoBatchSettings, IsolationMode, get_settings, reset_settings

__all__ = [
    # errors
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
    # logging
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
    # settings
    "IsolationMode",
    "IsoBatchSettings",
    "get_settings",
    "reset_settings",
]
