"""Tenacity retry wrapper for platform HTTP calls."""

from __future__ import annotations

from collections.abc import Callable

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .config import RetryConfig

logger = structlog.get_logger()


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    logger.warning(
        "platform_call_retrying",
        call=getattr(state.fn, "__name__", "unknown"),
        attempt=state.attempt_number,
        error=str(exc),
    )


def with_retry(
    config: RetryConfig,
    *,
    retryable_exceptions: tuple[type[BaseException], ...] = (httpx.TransportError,),
) -> Callable:
    """Return a tenacity retry decorator configured from *config*.

    Only *retryable_exceptions* are retried; anything else propagates on
    the first failure.  The final exception is re-raised unchanged.

    Usage::

        @with_retry(config.retry)
        async def fetch_token() -> TokenResponse: ...
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
