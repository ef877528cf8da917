"""
Cancellable operation context.

Every blocking call in the package (remote requests, backoff sleeps, task
polls) takes an :class:`OperationContext`. A context can be cancelled from
another thread and may carry a deadline; children created with
:meth:`OperationContext.with_timeout` stop when their parent stops.

Usage::

    ctx = OperationContext(timeout=600)
    tracker.wait_for_tasks(ctx, ["task-1"])

    # from another thread
    ctx.cancel()
"""

from __future__ import annotations

import threading
import time
import weakref

from tower.base.exceptions import (
    ContextError,
    DeadlineExceededError,
    OperationCancelledError,
)


class OperationContext:
    """Cancellation and deadline carrier shared by one logical operation."""

    def __init__(
        self,
        timeout: float | None = None,
        parent: OperationContext | None = None,
    ) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: weakref.WeakSet[OperationContext] = weakref.WeakSet()
        self._error: ContextError | None = None
        self._parent = parent
        self.deadline: float | None = None
        if timeout is not None:
            self.deadline = time.monotonic() + timeout
        if parent is not None:
            if parent.deadline is not None and (
                self.deadline is None or parent.deadline < self.deadline
            ):
                self.deadline = parent.deadline
            parent._adopt(self)

    def _adopt(self, child: OperationContext) -> None:
        with self._lock:
            if self._error is None:
                self._children.add(child)
                return
            error = self._error
        child._stop(error)

    def _stop(self, error: ContextError) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = error
            children = list(self._children)
        self._event.set()
        for child in children:
            child._stop(error)
        if self._parent is not None:
            self._parent._release(self)

    def _release(self, child: OperationContext) -> None:
        with self._lock:
            self._children.discard(child)

    def cancel(self, reason: str = "operation cancelled") -> None:
        """Cancel this context and every context derived from it."""
        self._stop(OperationCancelledError(reason))

    def remaining(self) -> float | None:
        """Seconds left before the deadline, ``None`` when unbounded."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def err(self) -> ContextError | None:
        """Return the stop reason, or ``None`` while the context is live."""
        if self._error is None and self.deadline is not None:
            if time.monotonic() >= self.deadline:
                self._stop(DeadlineExceededError("context deadline exceeded"))
        return self._error

    @property
    def done(self) -> bool:
        return self.err() is not None

    def check(self) -> None:
        """Raise the stop reason if the context is no longer live."""
        error = self.err()
        if error is not None:
            raise error

    def sleep(self, seconds: float) -> None:
        """Block for *seconds*, waking early and raising on cancel or deadline."""
        self.check()
        remaining = self.remaining()
        if remaining is not None and remaining < seconds:
            self._event.wait(remaining)
            # the deadline falls inside this sleep
            self._stop(DeadlineExceededError("context deadline exceeded"))
            self.check()
        self._event.wait(max(0.0, seconds))
        self.check()

    def with_timeout(self, seconds: float) -> OperationContext:
        """Derive a child that also stops after *seconds*."""
        return OperationContext(timeout=seconds, parent=self)

    def detached(self, timeout: float | None = None) -> OperationContext:
        """Return a fresh context that ignores this one's cancellation."""
        return OperationContext(timeout=timeout)


def background() -> OperationContext:
    """Return a context that is never cancelled and has no deadline."""
    return OperationContext()
