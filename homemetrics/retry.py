"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig
from .errors import RateLimitedError, TransientMailboxError

logger = structlog.get_logger()

RETRYABLE_MAILBOX_ERRORS: tuple[type[BaseException], ...] = (
    RateLimitedError,
    TransientMailboxError,
)


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "call_retrying",
        attempt=state.attempt_number,
        error=str(exc) if exc else None,
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = RETRYABLE_MAILBOX_ERRORS,
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Only rate-limit and transient mailbox errors are retried by default;
    anything else is re-raised on the first attempt.

    Usage::

        @with_retry(config.retry)
        async def search() -> list[str]: ...
    """
    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception_type(retryable_exceptions),
        before_sleep=_log_retry,
        reraise=True,
    )
