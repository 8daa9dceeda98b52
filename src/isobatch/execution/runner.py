"""Task Runner - fork one isolated worker per submitted callable.

WHY
───
Each task runs in its own forked process so a crash, a leaked global or a
noisy ``print`` in one task cannot affect the controller or its siblings.
Forking (rather than spawning a fresh interpreter) means the callable never
has to be picklable: closures, lambdas and bound methods all work.  Only
the *return value* crosses the process boundary.

ARCHITECTURE
────────────
::

    controller                               worker (fork)
    ──────────                               ─────────────
    mkstemp()  ─► output sink  ◄──────────── fd 1 + fd 2 (dup2)
    os.pipe()  ─► read end     ◄──────────── write end: one framed result
    Process.start()                          own process group
    close write end + sink fd                SIGINT/SIGTERM → kill own
    rename sink → isobatch-<pid>.out           descendants, _exit
    return TaskRecord (non-blocking)         fn() → frame → exit 0 | 1

Related modules:
    channel.py  - frame format for the result pipe
    poller.py   - waits on the TaskRecords created here

Example::

    runner = TaskRunner(get_settings())
    record = runner.spawn(lambda: os.getpid(), "get_pid", index=0,
                          placeholder=ph, batch_id="b1")
"""

from __future__ import annotations

import copy
import multiprocessing
import os
import signal
import sys
import tempfile
import threading
import warnings
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from isobatch.core.errors import SerializationWarning
from isobatch.core.logging import get_logger
from isobatch.core.settings import IsoBatchSettings
from isobatch.execution.channel import (
    ErrorPayload,
    PickleSerializer,
    ResultReader,
    Serializer,
    ValuePayload,
    encode_payload,
    write_payload,
)
from isobatch.execution.models import Placeholder, TaskRecord, TaskState

logger = get_logger(__name__)


def fork_supported() -> bool:
    """True when this host can run tasks in forked processes."""
    return hasattr(os, "fork") and "fork" in multiprocessing.get_all_start_methods()


# ── Worker side ──────────────────────────────────────────────────────────


def _terminate_worker(signum: int, frame: Any) -> None:
    """Interrupt handler installed in every worker.

    Forwards SIGTERM to the worker's own process group (anything the
    callable forked) and exits without writing a result.
    """
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    try:
        os.killpg(os.getpgrp(), signal.SIGTERM)
    except OSError:
        pass
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass
    os._exit(128 + signum)


def _redirect_output(sink_fd: int) -> None:
    """Point fd 1 and fd 2 (and the Python-level streams) at the sink."""
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError, AttributeError):
            pass
    os.dup2(sink_fd, 1)
    os.dup2(sink_fd, 2)
    os.close(sink_fd)
    # sys.stdout may be a wrapper around some other fd (e.g. a test capture)
    sys.stdout = os.fdopen(1, "w", buffering=1, closefd=False)
    sys.stderr = os.fdopen(2, "w", buffering=1, closefd=False)


def _encode_value(value: Any, label: str, serializer: Serializer) -> bytes | None:
    """Frame a return value, degrading to no value if it can't be sent."""
    try:
        value = copy.deepcopy(value)
    except Exception:
        pass
    try:
        return encode_payload(ValuePayload(value), serializer)
    except Exception as e:
        warnings.warn(
            f"Return value of '{label}' ({type(value).__name__}) could not be "
            f"serialized and will be dropped: {e}",
            SerializationWarning,
            stacklevel=2,
        )
        logger.warning("serialization.failed", label=label, value_type=type(value).__name__, error=str(e))
        return None


def _worker_main(
    fn: Callable[[], Any],
    label: str,
    sink_fd: int,
    read_fd: int,
    write_fd: int,
    inherited_fds: tuple[int, ...],
    serializer: Serializer,
) -> None:
    """Entry point of a forked worker."""
    os.setpgrp()
    signal.signal(signal.SIGINT, _terminate_worker)
    signal.signal(signal.SIGTERM, _terminate_worker)

    os.close(read_fd)
    for fd in inherited_fds:
        try:
            os.close(fd)
        except OSError:
            pass
    _redirect_output(sink_fd)

    try:
        value = fn()
    except Exception as exc:
        data = encode_payload(ErrorPayload.from_exception(exc, serializer), serializer)
        try:
            write_payload(write_fd, data)
        finally:
            os.close(write_fd)
        sys.exit(1)

    try:
        if value is not None:
            data = _encode_value(value, label, serializer)
            if data is not None:
                write_payload(write_fd, data)
    finally:
        os.close(write_fd)


# ── Controller side ──────────────────────────────────────────────────────


class TaskRunner:
    """Forks workers and hands back :class:`TaskRecord` objects.

    ``spawn`` never waits for the worker; completion is the poller's job.

    Parameters
    ----------
    settings : IsoBatchSettings
        Provides ``output_dir`` for the per-task output sinks.
    serializer : Serializer
        Used by workers to frame their results.
    log : logger
        Any object with ``info``/``warning``/``error``.
    """

    def __init__(
        self,
        settings: IsoBatchSettings,
        serializer: Serializer | None = None,
        log: Any = None,
    ) -> None:
        self._settings = settings
        self._serializer = serializer or PickleSerializer()
        self._log = log or logger
        self._context = multiprocessing.get_context("fork")

    def _sink_dir(self) -> Path:
        path = Path(self._settings.output_dir)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def spawn(
        self,
        fn: Callable[[], Any],
        label: str,
        *,
        index: int,
        placeholder: Placeholder,
        batch_id: str,
        inherited_fds: Iterable[int] = (),
    ) -> TaskRecord:
        """Fork a worker running ``fn`` and return its record immediately."""
        sink_dir = self._sink_dir()
        sink_fd, sink_name = tempfile.mkstemp(prefix="isobatch-", suffix=".out", dir=sink_dir)
        read_fd, write_fd = os.pipe()

        process = self._context.Process(
            target=_worker_main,
            args=(fn, label, sink_fd, read_fd, write_fd, tuple(inherited_fds), self._serializer),
            name=f"isobatch:{label}",
        )
        try:
            process.start()
        except BaseException:
            os.close(read_fd)
            Path(sink_name).unlink(missing_ok=True)
            raise
        finally:
            os.close(write_fd)
            os.close(sink_fd)

        output_path = sink_dir / f"isobatch-{process.pid}.out"
        try:
            os.replace(sink_name, output_path)
        except OSError:
            output_path = Path(sink_name)

        record = TaskRecord(
            index=index,
            label=label,
            process=process,
            output_path=output_path,
            channel=ResultReader(read_fd),
            placeholder=placeholder,
            batch_id=batch_id,
        )
        self._log.info("task.forked", label=label, pid=process.pid, index=index, batch_id=batch_id)
        return record

    def cleanup(self, record: TaskRecord) -> None:
        """Close the channel and delete the output sink."""
        record.channel.close()
        try:
            record.output_path.unlink(missing_ok=True)
        except OSError as e:
            self._log.warning("task.sink_cleanup_failed", label=record.label, path=str(record.output_path), error=str(e))

    def detach(self, record: TaskRecord) -> threading.Thread:
        """Let a fire-and-forget worker be reaped without the controller.

        A daemon thread joins the process and then removes its channel and
        sink; nothing is ever reported back.
        """

        def _reap() -> None:
            record.process.join()
            record.exit_code = record.process.exitcode
            record.finish(TaskState.COMPLETED if record.exit_code == 0 else TaskState.FAILED)
            self.cleanup(record)

        thread = threading.Thread(target=_reap, name=f"isobatch-reaper-{record.pid}", daemon=True)
        thread.start()
        return thread


__all__ = ["TaskRunner", "fork_supported"]
