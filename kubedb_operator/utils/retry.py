"""
Retry utilities for Kubernetes API calls.

Both helpers are built on tenacity: a decorator retrying transient Kubernetes
API failures with exponential backoff, and the read-modify-write primitive
used for every optimistic-concurrency update the operator makes.
"""
import asyncio
import functools
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from kubernetes_asyncio.client import ApiException
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from kubedb_operator.config.logging import get_logger
from kubedb_operator.exceptions import ConflictError

logger = get_logger(__name__)

T = TypeVar("T")

# HTTP status codes that are retryable
RETRYABLE_STATUS_CODES = {
    408,  # Request Timeout
    429,  # Too Many Requests (rate limiting)
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}


# Connection-level failures are retried like a 503.
TRANSIENT_ERRORS: Tuple[Type[Exception], ...] = (ConnectionError, TimeoutError, asyncio.TimeoutError)


def is_retryable_k8s_error(exception: Exception) -> bool:
    """
    Determine if a Kubernetes API exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if isinstance(exception, ApiException):
        return exception.status in RETRYABLE_STATUS_CODES
    return isinstance(exception, TRANSIENT_ERRORS)


def retry_on_k8s_error(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
) -> Callable:
    """
    Decorator to retry Kubernetes API calls with exponential backoff.

    Only transient failures are retried; 404 and 409 responses propagate on
    the first attempt so callers can translate them.

    Args:
        max_retries: Retries after the first attempt
        initial_delay: Delay before the first retry in seconds
        max_delay: Upper bound for any single delay in seconds
        exponential_base: Growth factor between consecutive delays
        retry_on: Extra exception types treated as transient
    """

    def should_retry(error: BaseException) -> bool:
        if retry_on and isinstance(error, retry_on):
            return True
        return isinstance(error, Exception) and is_retryable_k8s_error(error)

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        def log_retry(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception()
            logger.warning(
                "k8s_api_call_failed_retrying",
                function=func.__name__,
                attempt=retry_state.attempt_number,
                max_retries=max_retries,
                delay_seconds=retry_state.next_action.sleep,
                error_type=type(error).__name__,
                error=str(error),
                status_code=getattr(error, "status", None),
            )

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_retries + 1),
                wait=wait_exponential(multiplier=initial_delay, exp_base=exponential_base, max=max_delay),
                retry=retry_if_exception(should_retry),
                before_sleep=log_retry,
                reraise=True,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        result = await func(*args, **kwargs)
                        if attempt.retry_state.attempt_number > 1:
                            logger.info(
                                "k8s_api_call_succeeded_after_retry",
                                function=func.__name__,
                                attempt=attempt.retry_state.attempt_number,
                            )
                        return result
            except Exception as e:
                if should_retry(e):
                    logger.error(
                        "k8s_api_call_failed_max_retries",
                        function=func.__name__,
                        max_retries=max_retries,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                raise
            raise AssertionError("unreachable")

        return wrapper

    return decorator


async def compare_and_swap(
    fetch: Callable[[], Awaitable[T]],
    mutate: Callable[[T], T],
    write: Callable[[T], Awaitable[T]],
    *,
    max_attempts: int = 5,
    backoff_min: float = 0.1,
    backoff_max: float = 5.0,
    description: str = "update",
) -> T:
    """
    Read-modify-write with retry on optimistic-concurrency conflicts.

    Each attempt fetches the current object, applies ``mutate`` to it and
    writes the result back. A ``ConflictError`` from ``write`` restarts the
    whole cycle; any other exception (including one raised by ``mutate``)
    propagates immediately.

    Args:
        fetch: Returns the current stored object
        mutate: Pure function producing the desired object from the current one
        write: Version-checked write; raises ConflictError on a stale version
        max_attempts: Total read-modify-write cycles before giving up
        backoff_min: Smallest delay between cycles in seconds
        backoff_max: Largest delay between cycles in seconds
        description: Label used in log events

    Returns:
        The object as stored by the successful write

    Raises:
        ConflictError: If every attempt conflicted
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=backoff_min, min=backoff_min, max=backoff_max),
        retry=retry_if_exception_type(ConflictError),
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            attempt_number = attempt.retry_state.attempt_number
            if attempt_number > 1:
                logger.info(
                    "compare_and_swap_retrying",
                    description=description,
                    attempt=attempt_number,
                    max_attempts=max_attempts,
                )
            current = await fetch()
            return await write(mutate(current))
    raise AssertionError("unreachable")
