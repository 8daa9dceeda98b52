"""Collection-Parallel Adapter - ``map_parallel`` over any iterable.

One forked task per element, results returned index-aligned with the
input.  Inputs of zero or one element are mapped inline: no process is
spawned and nothing is logged as forked.  Hosts without fork map inline
too, after the usual ``isolation.unavailable`` warning.

Example::

    pids = map_parallel([1, 2, 3], lambda _: os.getpid())
    words = each_in_parallel(["foo", "bar"], str.upper, label="upper")
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from isobatch.execution.controller import Controller, get_controller

T = TypeVar("T")
R = TypeVar("R")


def _call_site(depth: int = 2) -> str:
    frame = inspect.currentframe()
    try:
        for _ in range(depth):
            if frame is None:
                break
            frame = frame.f_back
        if frame is None:
            return "map_parallel"
        return f"{frame.f_code.co_filename}:{frame.f_lineno}"
    finally:
        del frame


def map_parallel(
    items: Iterable[T],
    fn: Callable[[T], R],
    *,
    label: str | None = None,
    timeout: float | None = None,
    kill_on_error: bool = False,
    controller: Controller | None = None,
) -> list[R]:
    """Apply ``fn`` to every element, each call in its own process.

    Args:
        items: Elements to map over (materialized up front).
        fn: Called once per element.
        label: Diagnostic label shared by every task (defaults to the
            caller's ``file:line``).
        timeout: Drain timeout, as for ``run_in_parallel``.
        kill_on_error: Kill the remaining tasks as soon as one fails.
        controller: Defaults to the process-wide controller.

    Returns:
        ``[fn(x) for x in items]`` in input order.
    """
    elements = list(items)
    ctl = controller or get_controller()

    if len(elements) <= 1:
        return [fn(x) for x in elements]
    if not ctl.isolation_available:
        ctl._warn_inline(stacklevel=3)
        return [fn(x) for x in elements]

    label = label or _call_site()
    with ctl.parallel(timeout=timeout, kill_on_error=kill_on_error) as scope:
        for element in elements:
            scope.submit(fn, element, label=label)
    return scope.values


def each_in_parallel(
    items: Iterable[T],
    fn: Callable[[T], R],
    label: str | None = None,
    timeout: float | None = None,
    kill_on_error: bool = False,
    **kwargs: Any,
) -> list[R]:
    """Positional-friendly alias of :func:`map_parallel`."""
    return map_parallel(
        items,
        fn,
        label=label or _call_site(),
        timeout=timeout,
        kill_on_error=kill_on_error,
        **kwargs,
    )


__all__ = ["map_parallel", "each_in_parallel"]
