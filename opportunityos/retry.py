"""Retry with exponential backoff for collaborator HTTP calls.

Usage:
    @retry(max_attempts=2, base_delay=5.0)
    def call_service():
        ...
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Callable, Optional, Sequence, Type

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

logger = logging.getLogger("opportunityos.retry")


def _sleep(seconds: float) -> None:
    time.sleep(seconds)


def retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 30.0,
    retryable_exceptions: Sequence[Type[Exception]] = (Exception,),
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
):
    """Decorator retrying the wrapped call; ``max_attempts`` counts the first call.

    The delay before retry ``n`` is ``base_delay * backoff ** (n - 1)``, capped at ``max_delay``.
    """
    retryable = tuple(retryable_exceptions)

    def decorator(func):
        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception()
            delay = state.next_action.sleep
            logger.warning(
                "Attempt %d/%d for %s failed (%s: %s), retrying in %.1fs",
                state.attempt_number,
                max_attempts,
                func.__name__,
                type(exc).__name__,
                exc,
                delay,
            )
            if on_retry:
                on_retry(state.attempt_number, exc, delay)

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            retrying = Retrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=base_delay, exp_base=backoff, max=max_delay),
                retry=retry_if_exception_type(retryable),
                before_sleep=_before_sleep,
                sleep=_sleep,
                reraise=True,
            )
            try:
                return retrying(func, *args, **kwargs)
            except retryable as exc:
                logger.error(
                    "All %d attempts failed for %s",
                    max_attempts,
                    func.__name__,
                    extra={"error_type": type(exc).__name__},
                )
                raise

        return wrapper

    return decorator
