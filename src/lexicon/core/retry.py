"""Retry-with-backoff for unreliable collaborator calls.

:func:`retry_async` wraps a zero-argument coroutine factory and re-invokes
it on failure, built on tenacity's :class:`~tenacity.AsyncRetrying`.

Attempt accounting
------------------
``max_attempts`` counts *retries*, not calls: the operation runs once, then
up to ``max_attempts`` more times, so ``max_attempts=3`` means at most four
calls.  The delay before retry ``i`` (zero-based) is
``initial_delay_ms * 2**i``.  No jitter is applied.

Errors
------
The last failure propagates unchanged (``reraise=True``), so callers see the
original exception type and message.  :class:`ServiceUnavailable` and
:class:`ValidationFailure` are never retried: retrying cannot fix them.

Caller obligation
-----------------
The wrapped operation may run several times and must be safe to repeat.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from lexicon.core.errors import ServiceUnavailable, ValidationFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")

NON_RETRYABLE: tuple[type[BaseException], ...] = (ServiceUnavailable, ValidationFailure)

FailureHook = Callable[[int, BaseException, float], None]


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    initial_delay_ms: int,
    *,
    retry_if: Callable[[BaseException], bool] | None = None,
    on_failure: FailureHook | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *operation* with exponential backoff.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per call.
        max_attempts: Retries after the first call.
        initial_delay_ms: Delay before the first retry, in milliseconds.
        retry_if: Optional extra predicate; a failure is retried only if it
            returns ``True``.
        on_failure: Called as ``on_failure(attempt_number, exc, next_delay_s)``
            for every failed attempt that is about to be retried.  Exceptions
            raised by the hook are logged and ignored.
        sleep: Awaitable sleep function, injectable for tests.

    Returns:
        The operation's first successful result.

    Raises:
        ValueError: If ``max_attempts`` or ``initial_delay_ms`` is negative.
        Exception: The last failure, unchanged, once retries are exhausted or
            a failure is not retryable.
    """
    if max_attempts < 0:
        raise ValueError("max_attempts must be >= 0")
    if initial_delay_ms < 0:
        raise ValueError("initial_delay_ms must be >= 0")

    def _should_retry(exc: BaseException) -> bool:
        if not isinstance(exc, Exception) or isinstance(exc, NON_RETRYABLE):
            return False
        return retry_if(exc) if retry_if is not None else True

    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome is not None else None
        delay = state.next_action.sleep if state.next_action is not None else 0.0
        logger.debug(
            "Attempt %d failed (%s); retrying in %.3fs.",
            state.attempt_number,
            exc,
            delay,
        )
        if on_failure is not None and exc is not None:
            try:
                on_failure(state.attempt_number, exc, delay)
            except Exception:
                logger.exception("Retry failure hook raised; ignoring.")

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts + 1),
        wait=wait_exponential(multiplier=initial_delay_ms / 1000.0, exp_base=2, min=0),
        retry=retry_if_exception(_should_retry),
        before_sleep=_before_sleep,
        reraise=True,
        sleep=sleep,
    )
    return await retrying(operation)
