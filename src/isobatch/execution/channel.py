"""Result channel - the one-shot pipe from a worker back to the controller.

WHY
───
A worker's only contract with the controller is "write at most one framed
result to your pipe, then exit".  The frame is a tagged union so the
controller can tell a return value from a captured error without guessing:

::

    b""                                  absent  → slot gets NO_VALUE
    b"V" + serializer.dumps(value)       value
    b"E" + json(kind, message, tb) + b"\\n" + serializer.dumps(exc)   error

The error header is plain JSON so kind and message survive even when the
exception object itself cannot be unpickled on the controller side.

The controller end is read non-blockingly (:meth:`ResultReader.pump`) on
every polling pass so a worker writing a result larger than the pipe
buffer never blocks forever waiting for a reader.

Related modules:
    runner.py  - writes frames from inside the worker
    poller.py  - reads and classifies frames

Example::

    data = encode_payload(ValuePayload({"foo": "bar"}))
    decode_payload(data)   # ValuePayload(value={'foo': 'bar'})
"""

from __future__ import annotations

import json
import os
import pickle
import traceback
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from isobatch.core.errors import ResultDecodeError

VALUE_TAG = b"V"
ERROR_TAG = b"E"
_READ_CHUNK = 65536


@runtime_checkable
class Serializer(Protocol):
    """Turns application values into bytes and back."""

    def dumps(self, obj: Any) -> bytes: ...

    def loads(self, data: bytes) -> Any: ...


class PickleSerializer:
    """Default serializer: pickle at the highest protocol."""

    name = "pickle"

    def __init__(self, protocol: int = pickle.HIGHEST_PROTOCOL) -> None:
        self.protocol = protocol

    def dumps(self, obj: Any) -> bytes:
        return pickle.dumps(obj, protocol=self.protocol)

    def loads(self, data: bytes) -> Any:
        return pickle.loads(data)


# ── Payloads ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ValuePayload:
    """A value returned by the task's callable."""

    value: Any


@dataclass(frozen=True)
class ErrorPayload:
    """An exception raised by the task's callable.

    ``exception`` holds the serialized exception object when the worker
    could serialize it; ``kind`` and ``message`` are always present.
    """

    kind: str
    message: str
    traceback: str = ""
    exception: bytes | None = None

    @classmethod
    def from_exception(cls, exc: BaseException, serializer: Serializer | None = None) -> ErrorPayload:
        serializer = serializer or PickleSerializer()
        exc_type = type(exc)
        try:
            exc_bytes: bytes | None = serializer.dumps(exc)
        except Exception:
            exc_bytes = None
        return cls(
            kind=f"{exc_type.__module__}.{exc_type.__qualname__}",
            message=str(exc),
            traceback="".join(traceback.format_exception(exc)),
            exception=exc_bytes,
        )

    def rebuild(self, serializer: Serializer | None = None) -> BaseException | None:
        """Reconstruct the original exception, or ``None`` if it can't be."""
        if not self.exception:
            return None
        serializer = serializer or PickleSerializer()
        try:
            exc = serializer.loads(self.exception)
        except Exception:
            return None
        return exc if isinstance(exc, BaseException) else None


Payload = ValuePayload | ErrorPayload


def encode_payload(payload: Payload, serializer: Serializer | None = None) -> bytes:
    """Frame a payload for the wire.

    Raises whatever the serializer raises for an unserializable value; the
    worker is responsible for degrading that to "no value".
    """
    serializer = serializer or PickleSerializer()
    if isinstance(payload, ValuePayload):
        return VALUE_TAG + serializer.dumps(payload.value)
    header = json.dumps(
        {"kind": payload.kind, "message": payload.message, "traceback": payload.traceback}
    ).encode("utf-8")
    return ERROR_TAG + header + b"\n" + (payload.exception or b"")


def decode_payload(data: bytes, serializer: Serializer | None = None) -> Payload | None:
    """Parse a frame read from a result channel.

    Returns ``None`` for an empty channel (the worker returned nothing).

    Raises:
        ResultDecodeError: unknown tag or corrupt body.
    """
    if not data:
        return None
    serializer = serializer or PickleSerializer()
    tag, body = data[:1], data[1:]

    if tag == VALUE_TAG:
        try:
            return ValuePayload(serializer.loads(body))
        except Exception as e:
            raise ResultDecodeError(f"Could not decode result value: {e}", cause=e) from e

    if tag == ERROR_TAG:
        header, _, exc_bytes = body.partition(b"\n")
        try:
            fields = json.loads(header.decode("utf-8"))
        except ValueError as e:
            raise ResultDecodeError(f"Corrupt error payload: {e}", cause=e) from e
        return ErrorPayload(
            kind=fields.get("kind", "builtins.Exception"),
            message=fields.get("message", ""),
            traceback=fields.get("traceback", ""),
            exception=exc_bytes or None,
        )

    raise ResultDecodeError(f"Unknown result tag {tag!r}")


# ── Pipe ends ────────────────────────────────────────────────────────────


def write_payload(fd: int, data: bytes) -> None:
    """Write a whole frame to the worker's end of the channel."""
    view = memoryview(data)
    while view:
        written = os.write(fd, view)
        view = view[written:]


class ResultReader:
    """Controller-owned read end of a result channel."""

    def __init__(self, fd: int) -> None:
        self._fd = fd
        self._chunks: list[bytes] = []
        self._eof = False
        self._closed = False
        os.set_blocking(fd, False)

    @property
    def fd(self) -> int:
        return self._fd

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def eof(self) -> bool:
        return self._eof

    def pump(self) -> int:
        """Read whatever is available without blocking.

        Returns:
            Number of bytes read by this call.
        """
        if self._closed or self._eof:
            return 0
        total = 0
        while True:
            try:
                chunk = os.read(self._fd, _READ_CHUNK)
            except BlockingIOError:
                break
            if not chunk:
                self._eof = True
                break
            self._chunks.append(chunk)
            total += len(chunk)
        return total

    def read_all(self) -> bytes:
        """Everything received so far (the whole frame once the worker exited)."""
        self.pump()
        return b"".join(self._chunks)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            os.close(self._fd)
        except OSError:
            pass


__all__ = [
    "Serializer",
    "PickleSerializer",
    "ValuePayload",
    "ErrorPayload",
    "Payload",
    "encode_payload",
    "decode_payload",
    "write_payload",
    "ResultReader",
]
