"""
Reliability patterns for the Residence Manager.

Provides opt-in retry logic for idempotent reads and performance tracking for
async operations.
"""

import time
from functools import wraps
from typing import Awaitable, Callable, Tuple, Type, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from residence.core.exceptions import NetworkError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying operation",
        function=getattr(retry_state.fn, "__name__", "unknown"),
        attempt=retry_state.attempt_number,
        error=str(exc),
        error_type=type(exc).__name__,
    )


def with_retry(
    max_attempts: int = 3,
    backoff_max: float = 10.0,
    retry_exceptions: Tuple[Type[BaseException], ...] = (NetworkError,),
):
    """Decorator to add retry logic with exponential backoff to a coroutine function.

    ``max_attempts=1`` runs the call exactly once.
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        if max_attempts <= 1:
            return func

        @wraps(func)
        async def wrapper(*args, **kwargs):
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=1, min=0.5, max=backoff_max),
                retry=retry_if_exception_type(retry_exceptions),
                before_sleep=_log_before_sleep,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)

        return wrapper

    return decorator


def track_performance(operation_name: str):
    """
    Decorator to track duration of async operations.

    Args:
        operation_name: Name of the operation for logging
    """

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.error(
                    "Operation failed",
                    operation=operation_name,
                    duration_seconds=round(time.perf_counter() - start_time, 4),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

            logger.debug(
                "Operation completed",
                operation=operation_name,
                duration_seconds=round(time.perf_counter() - start_time, 4),
            )
            return result

        return wrapper

    return decorator
