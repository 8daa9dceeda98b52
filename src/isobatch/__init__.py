"""
isobatch - run independent callables in isolated processes, collect their
results as if they had run sequentially.

- isobatch.core: errors, settings, structured logging
- isobatch.execution: task runner, completion poller, controller, adapters
- isobatch.cli: ``isobatch`` command line
"""

__version__ = "0.1.0"

from isobatch.core.errors import (  # noqa: E402
    BatchStateError,
    BatchTimeoutError,
    IsoBatchError,
    ProcessIsolationUnavailable,
    SerializationWarning,
    UnresolvedResultError,
    WorkerExecutionError,
)
from isobatch.execution import (  # noqa: E402
    Controller,
    Placeholder,
    each_in_parallel,
    get_background_results,
    get_controller,
    map_parallel,
    parallel,
    reset_controller,
    run_in_background,
    run_in_parallel,
    wait_for_processes,
)

__all__ = [
    "__version__",
    "IsoBatchError",
    "WorkerExecutionError",
    "BatchTimeoutError",
    "BatchStateError",
    "UnresolvedResultError",
    "SerializationWarning",
    "ProcessIsolationUnavailable",
    "Controller",
    "Placeholder",
    "get_controller",
    "reset_controller",
    "parallel",
    "run_in_parallel",
    "run_in_background",
    "wait_for_processes",
    "get_background_results",
    "map_parallel",
    "each_in_parallel",
]
