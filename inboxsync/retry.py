"""Tenacity retry wrapper driven by RetryConfig."""

from __future__ import annotations

from collections.abc import Callable

import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

logger = structlog.get_logger()


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "provider_call_retrying",
        attempt=state.attempt_number,
        error=str(exc),
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (Exception,),
    non_retryable_exceptions: tuple[type[BaseException], ...] = (),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    An exception is retried when it is an instance of one of
    *retryable_exceptions* and not of *non_retryable_exceptions*.  The
    last exception is re-raised once the attempt budget is spent.

    Usage::

        @with_retry(config.retry, non_retryable_exceptions=(ProviderNotFound,))
        async def list_history(cursor: str) -> dict: ...
    """

    def _should_retry(exc: BaseException) -> bool:
        if non_retryable_exceptions and isinstance(exc, non_retryable_exceptions):
            return False
        return isinstance(exc, retryable_exceptions)

    return retry(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(
            multiplier=config.multiplier,
            min=config.initial_wait_seconds,
            max=config.max_wait_seconds,
        ),
        retry=retry_if_exception(_should_retry),
        before_sleep=_log_retry,
        reraise=True,
    )
