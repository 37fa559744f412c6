"""Retry with exponential backoff and per-call timeouts for provider calls.

Only transient failures are retried: rate limits, 5xx responses, timeouts,
dropped connections and "unavailable"/"overloaded" responses. Everything else
(auth failures, validation errors, other 4xx) fails on the first attempt.
"""

import asyncio
import re
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .errors import OperationTimeoutError, RetryCancelledError
from .logging_config import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
DEFAULT_BASE_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 30000

RetryCallback = Callable[[int, BaseException, float], None]

_RETRYABLE_STATUS = re.compile(r"\b(429|500|502|503|504)\b")

_RATE_LIMIT_PATTERNS = (
    "rate limit",
    "rate_limit",
    "too many requests",
    "quota exceeded",
    "resource_exhausted",
)

_NETWORK_PATTERNS = (
    "timeout",
    "timed out",
    "etimedout",
    "econnreset",
    "econnrefused",
    "socket hang up",
    "network error",
    "fetch failed",
    "connection reset",
    "connection refused",
    "connection aborted",
)

_UNAVAILABLE_PATTERNS = (
    "service unavailable",
    "temporarily unavailable",
    "overloaded",
)


def _status_code(error: Any) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def is_retryable_error(error: Any) -> bool:
    """Check whether a failure is transient and worth retrying.

    Accepts any raised value; anything that is not an exception is classified
    by its string form.
    """
    if isinstance(error, RetryCancelledError):
        return False
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True

    status = _status_code(error)
    if status is not None:
        return status == 429 or 500 <= status <= 504

    message = str(error).lower()

    if _RETRYABLE_STATUS.search(message):
        return True
    if any(pattern in message for pattern in _RATE_LIMIT_PATTERNS):
        return True
    if any(pattern in message for pattern in _NETWORK_PATTERNS):
        return True
    return any(pattern in message for pattern in _UNAVAILABLE_PATTERNS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay_ms: float = DEFAULT_BASE_DELAY_MS,
    max_delay_ms: float = DEFAULT_MAX_DELAY_MS,
    on_retry: Optional[RetryCallback] = None,
    cancel_event: Optional[asyncio.Event] = None,
) -> T:
    """Run ``operation`` with exponential backoff on retryable failures.

    The delay before retry ``n`` (1-based) is ``base_delay_ms * 2**(n-1)``,
    capped at ``max_delay_ms``.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        max_retries: Retries after the first attempt (total calls <= max_retries + 1).
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound for any single delay.
        on_retry: Called as ``on_retry(attempt, error, delay_ms)`` before each wait.
        cancel_event: When set before an attempt or during a wait, the loop
            stops with RetryCancelledError.

    Returns:
        The operation's result.

    Raises:
        RetryCancelledError: If cancelled.
        Exception: The last error from the operation, unchanged, when it is
            not retryable or retries are exhausted.
    """

    async def _sleep(seconds: float) -> None:
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise RetryCancelledError("Retry cancelled while waiting")

    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay_ms = retry_state.next_action.sleep * 1000
        logger.debug(
            "Attempt %s failed (%s), retrying in %.0fms",
            retry_state.attempt_number,
            error,
            delay_ms,
        )
        if on_retry is not None:
            on_retry(retry_state.attempt_number, error, delay_ms)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(
            multiplier=base_delay_ms / 1000,
            exp_base=2,
            min=0,
            max=max_delay_ms / 1000,
        ),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=_before_sleep,
        sleep=_sleep,
        reraise=True,
    )

    async for attempt in retrying:
        if cancel_event is not None and cancel_event.is_set():
            raise RetryCancelledError("Retry cancelled")
        with attempt:
            return await operation()

    # AsyncRetrying either returns from inside the loop or raises
    raise RuntimeError("Retry loop exited without a result")


async def with_timeout(awaitable: Awaitable[T], timeout_s: float, context: str = "Operation") -> T:
    """Bound a single provider call.

    Raises:
        ValueError: If timeout_s is not positive.
        OperationTimeoutError: If the call does not finish in time.
    """
    if timeout_s <= 0:
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise ValueError(f"Invalid timeout value: {timeout_s}. Must be positive.")
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
    except asyncio.TimeoutError as e:
        raise OperationTimeoutError(context, timeout_s) from e
