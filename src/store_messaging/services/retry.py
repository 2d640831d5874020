"""Backoff for transient storage failures."""

from typing import Any, Awaitable, Callable, TypeVar

import structlog
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..domain.errors import MessagingError

logger = structlog.get_logger()

T = TypeVar("T")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, MessagingError) and exc.retryable


def _log_retry(retry_state) -> None:
    logger.warning(
        "transient_error_retrying",
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


async def call_with_retry(
    operation: Callable[..., Awaitable[T]],
    *args: Any,
    attempts: int = 3,
    max_wait: float = 2.0,
    **kwargs: Any,
) -> T:
    """Run ``operation``, retrying only ``TransientError`` with exponential backoff.

    Non-retryable errors and the last transient failure propagate unchanged.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=0.05, max=max_wait),
        retry=retry_if_exception(_is_retryable),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await operation(*args, **kwargs)
    return result
