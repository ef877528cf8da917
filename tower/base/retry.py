"""
Retry utilities with configurable exponential backoff.

Provides :func:`call_with_retry` for wrapping a single remote call and a
decorator built on it for loaders wired up by the factory. Sleeps go through the
:class:`~tower.base.context.OperationContext` so cancellation and deadlines
interrupt a backoff immediately.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Iterator, TypeVar

from pydantic import BaseModel, ConfigDict, Field, model_validator

from tower.base.context import OperationContext, background
from tower.base.exceptions import RetriesExhaustedError, TransientApiError

logger = logging.getLogger("tower")

T = TypeVar("T")

# Default set of exception types considered transient / retryable.
_DEFAULT_RETRYABLE: tuple[type[BaseException], ...] = (
    TransientApiError,
    ConnectionError,
    TimeoutError,
)


class RetryPolicy(BaseModel):
    """Backoff parameters shared by every remote call.

    Non-positive values fall back to the defaults and a ``ratio`` of 1 or
    less falls back to 2, so a zero-valued policy behaves like the default.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    max_retries: int = 3
    initial_backoff: float = 1.0
    ratio: float = 2.0
    max_delay: float = 10.0
    retryable_exceptions: tuple[type[BaseException], ...] = Field(
        default=_DEFAULT_RETRYABLE
    )

    @model_validator(mode="before")
    @classmethod
    def apply_defaults(cls, values: dict[str, Any]) -> dict[str, Any]:
        """Replace out-of-range values with the defaults."""
        values = {k: v for k, v in values.items() if v is not None}
        if values.get("max_retries", 3) <= 0:
            values["max_retries"] = 3
        if values.get("initial_backoff", 1.0) <= 0:
            values["initial_backoff"] = 1.0
        if values.get("ratio", 2.0) <= 1:
            values["ratio"] = 2.0
        if values.get("max_delay", 0) <= 0:
            values["max_delay"] = 10 * values.get("initial_backoff", 1.0)
        return values


DEFAULT_POLICY = RetryPolicy()


def backoff_delays(policy: RetryPolicy = DEFAULT_POLICY) -> Iterator[float]:
    """Yield the sleep before each retry: non-decreasing, capped at ``max_delay``."""
    backoff = policy.initial_backoff
    for _ in range(policy.max_retries):
        backoff = min(backoff * policy.ratio, policy.max_delay)
        yield backoff


def call_with_retry(
    fn: Callable[[], T],
    ctx: OperationContext | None = None,
    policy: RetryPolicy = DEFAULT_POLICY,
) -> T:
    """Call *fn* until it succeeds, backing off exponentially between attempts.

    Args:
        fn: Zero-argument callable performing one remote call.
        ctx: Context checked at every backoff sleep.
        policy: Backoff parameters.

    Returns:
        Whatever *fn* returns on its first successful attempt.

    Raises:
        RetriesExhaustedError: After ``policy.max_retries`` retryable failures;
            the last failure is chained as ``__cause__``.
        OperationCancelledError, DeadlineExceededError: If *ctx* stops during
            a backoff sleep.
        Exception: Any non-retryable exception raised by *fn*, unchanged.
    """
    ctx = ctx or background()
    name = getattr(fn, "__qualname__", repr(fn))
    delays = backoff_delays(policy)
    last_exc: BaseException | None = None
    for attempt in range(1, policy.max_retries + 1):
        try:
            return fn()
        except policy.retryable_exceptions as exc:
            last_exc = exc
            if attempt == policy.max_retries:
                logger.error(
                    "All %d attempts failed for %s: %s",
                    policy.max_retries,
                    name,
                    exc,
                )
                break
            delay = next(delays)
            logger.warning(
                "Attempt %d/%d for %s failed (%s), retrying in %.1fs…",
                attempt,
                policy.max_retries,
                name,
                exc,
                delay,
            )
            ctx.sleep(delay)
    raise RetriesExhaustedError(policy.max_retries) from last_exc


def retry(
    max_retries: int = 3,
    initial_backoff: float = 1.0,
    ratio: float = 2.0,
    max_delay: float | None = None,
    retryable_exceptions: tuple[type[BaseException], ...] | None = None,
    policy: RetryPolicy | None = None,
) -> Callable:
    """Decorator: retry a function on transient exceptions with exponential backoff.

    The decorated function may receive an ``OperationContext`` through a
    ``ctx`` keyword argument; it is used for the backoff sleeps.

    Args:
        max_retries: Maximum number of total attempts.
        initial_backoff: Base delay in seconds; the first sleep is
            ``initial_backoff * ratio``.
        ratio: Multiplier applied to the delay after each failure.
        max_delay: Cap on the delay between retries.
        retryable_exceptions: Exception types that trigger a retry.
            Defaults to TransientApiError, ConnectionError, TimeoutError.
        policy: Complete policy to use instead of the individual settings.

    Returns:
        Decorated function that retries on transient failures.
    """
    policy = policy or RetryPolicy(
        max_retries=max_retries,
        initial_backoff=initial_backoff,
        ratio=ratio,
        max_delay=max_delay,
        retryable_exceptions=retryable_exceptions or _DEFAULT_RETRYABLE,
    )

    def decorator(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            ctx = kwargs.get("ctx")
            return call_with_retry(lambda: fn(*args, **kwargs), ctx=ctx, policy=policy)

        return wrapper

    return decorator
