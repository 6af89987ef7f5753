"""Generic resilience primitives: bounded retry and timeout racing.

Neither primitive knows anything about sessions. Domain code composes them,
usually as ``with_retry(lambda: with_timeout(op(), timeout), retry)`` so each
attempt gets its own deadline.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import OperationTimeoutError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[Exception], bool]


def _always_retry(exc: Exception) -> bool:  # noqa: ARG001
    return True


@dataclass(frozen=True)
class RetryOptions:
    """Retry policy.

    Delays are in milliseconds. `jitter_ratio` perturbs each delay by up to
    that fraction in either direction.
    """

    max_attempts: int = 3
    base_delay_ms: float = 50
    max_delay_ms: float = 1000
    jitter_ratio: float = 0.2
    should_retry: RetryPredicate = _always_retry

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1 (got {self.max_attempts})")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("retry delays must be non-negative")
        if not 0 <= self.jitter_ratio <= 1:
            raise ValueError(f"jitter_ratio must be within [0, 1] (got {self.jitter_ratio})")


@dataclass(frozen=True)
class TimeoutOptions:
    timeout_ms: float
    timeout_message: str | None = None

    def __post_init__(self) -> None:
        if self.timeout_ms < 0:
            raise ValueError(f"timeout_ms must be non-negative (got {self.timeout_ms})")


def compute_delay_ms(attempt: int, options: RetryOptions, rng: Callable[[], float] = random.random) -> float:
    """Backoff delay before retrying after failed attempt number `attempt` (1-based)."""
    delay = min(options.base_delay_ms * (2 ** (attempt - 1)), options.max_delay_ms)
    if options.jitter_ratio and delay:
        # rng() in [0, 1) maps to a factor in [1 - ratio, 1 + ratio)
        delay *= 1 + options.jitter_ratio * (2 * rng() - 1)
    return max(delay, 0.0)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
    *,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    rng: Callable[[], float] = random.random,
) -> T:
    """Run `operation` until it succeeds or the retry policy gives up.

    Raises:
        The original exception, unchanged, when `should_retry` declines it.
        RetryExhaustedError wrapping the last failure once every attempt failed.
    """
    options = options or RetryOptions()
    last_error: Exception | None = None

    for attempt in range(1, options.max_attempts + 1):
        try:
            return await operation()
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            if not options.should_retry(exc):
                raise
            if attempt >= options.max_attempts:
                break

            delay_ms = compute_delay_ms(attempt, options, rng)
            logger.warning(
                "Attempt %d/%d failed (%s: %s); retrying in %.0fms",
                attempt,
                options.max_attempts,
                type(exc).__name__,
                exc,
                delay_ms,
            )
            await sleep(delay_ms / 1000)

    assert last_error is not None
    raise RetryExhaustedError(options.max_attempts, last_error) from last_error


def _log_detached_outcome(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Operation finished after its deadline with %s: %s", type(exc).__name__, exc)


async def with_timeout(
    operation: Awaitable[T] | Callable[[], Awaitable[T]],
    options: TimeoutOptions,
) -> T:
    """Wait for `operation` for at most `options.timeout_ms`.

    `operation` may be an awaitable already in flight or a factory producing
    one. On deadline the operation is abandoned, not cancelled.

    Raises:
        OperationTimeoutError when the deadline elapses first.
    """
    awaitable = operation() if callable(operation) and not inspect.isawaitable(operation) else operation
    task = asyncio.ensure_future(awaitable)  # type: ignore[arg-type]

    done, _pending = await asyncio.wait({task}, timeout=options.timeout_ms / 1000)
    if task in done:
        return task.result()

    task.add_done_callback(_log_detached_outcome)
    message = options.timeout_message or f"Operation timed out after {options.timeout_ms:g}ms"
    raise OperationTimeoutError(message, options.timeout_ms)
