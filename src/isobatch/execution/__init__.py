"""Process-isolated batch execution.

Quick start::

    from isobatch.execution import run_in_parallel, map_parallel

    run_in_parallel(lambda: fetch("a"), lambda: fetch("b"))   # ["A", "B"]
    map_parallel([1, 2, 3], square)                           # [1, 4, 9]

Module map::

    models.py      TaskRecord, ExecutionBatch, ResultTable, Placeholder
    channel.py     result pipe frame format + serializers
    runner.py      TaskRunner: fork one worker per callable
    poller.py      CompletionPoller: bounded-wait drain loop
    controller.py  Controller: registries, foreground/background batches
    adapter.py     map_parallel / each_in_parallel
"""

from isobatch.execution.adapter import each_in_parallel, map_parallel
from isobatch.execution.channel import (
    ErrorPayload,
    PickleSerializer,
    ResultReader,
    Serializer,
    ValuePayload,
    decode_payload,
    encode_payload,
)
from isobatch.execution.controller import (
    BackgroundBatch,
    BatchScope,
    Controller,
    get_background_results,
    get_controller,
    parallel,
    reset_controller,
    run_in_background,
    run_in_parallel,
    wait_for_processes,
)
from isobatch.execution.models import (
    NO_VALUE,
    ExecutionBatch,
    Placeholder,
    ResultTable,
    TaskRecord,
    TaskState,
)
from isobatch.execution.poller import CompletionPoller
from isobatch.execution.runner import TaskRunner, fork_supported

__all__ = [
    # models
    "NO_VALUE",
    "TaskState",
    "Placeholder",
    "TaskRecord",
    "ResultTable",
    "ExecutionBatch",
    # channel
    "Serializer",
    "PickleSerializer",
    "ValuePayload",
    "ErrorPayload",
    "encode_payload",
    "decode_payload",
    "ResultReader",
    # runner / poller
    "TaskRunner",
    "fork_supported",
    "CompletionPoller",
    # controller
    "Controller",
    "BatchScope",
    "BackgroundBatch",
    "get_controller",
    "reset_controller",
    "parallel",
    "run_in_parallel",
    "run_in_background",
    "wait_for_processes",
    "get_background_results",
    # adapter
    "map_parallel",
    "each_in_parallel",
]
