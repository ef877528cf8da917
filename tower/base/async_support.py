"""
Async support for Tower.

Waiting on tasks and reconciling a VM are long, blocking sequences of
remote calls. ``async_wrap`` runs such a method in a worker thread via
:func:`asyncio.to_thread` so an event loop can drive several VMs at once;
cancellation still goes through the :class:`OperationContext` passed in.

Usage::

    tracker = TaskTracker(api)
    await tracker.await_for_tasks(ctx, ["task-1", "task-2"])
"""

from __future__ import annotations

import asyncio
import functools
import inspect
from typing import Any, Callable, Coroutine, TypeVar

T = TypeVar("T")


def async_wrap(
    fn: Callable[..., T],
) -> Callable[..., Coroutine[Any, Any, T]]:
    """Return an async version of *fn* that runs it in a thread.

    Args:
        fn: A synchronous callable to wrap.

    Returns:
        An async callable with the same parameters and return type.
    """

    @functools.wraps(fn)
    async def _wrapper(*args: Any, **kwargs: Any) -> T:
        return await asyncio.to_thread(fn, *args, **kwargs)

    return _wrapper


class AsyncMixin:
    """Mixin that adds an ``a<method>`` awaitable for each public method.

    Only plain functions defined on the class itself are wrapped;
    properties and existing coroutines are left alone.
    """

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        for name, attr in list(vars(cls).items()):
            if name.startswith("_"):
                continue
            if inspect.isfunction(attr) and not inspect.iscoroutinefunction(attr):
                async_name = f"a{name}"
                if not hasattr(cls, async_name):
                    setattr(cls, async_name, async_wrap(attr))
