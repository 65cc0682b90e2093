"""Retry utilities for network operations with exponential backoff"""

import logging
import random
import time
from enum import Enum
from functools import wraps
from typing import Callable, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryableErrorType(Enum):
    """Types of errors that should trigger retries"""

    NETWORK = "network"  # Connection errors, timeouts
    TEMPORARY = "temporary"  # 5xx errors, rate limiting
    PERMANENT = "permanent"  # 4xx errors (except rate limiting), auth failures


NETWORK_INDICATORS = [
    "connection",
    "timeout",
    "timed out",
    "network",
    "dns",
    "resolve",
    "refused",
    "unreachable",
    "reset",
    "broken pipe",
    "no route to host",
    "temporary failure",
]


def is_retryable_error(error: Exception, error_message: str = "") -> Tuple[bool, RetryableErrorType]:
    """Determine if an error is retryable and what type it is

    Errors that carry an explicit ``retryable`` attribute are trusted.
    HTTP errors carrying a status code (``error.status_code`` or
    ``error.response.status_code``) are classified by that code. Anything
    else falls back to inspecting the message.

    Args:
        error: The exception that occurred
        error_message: Optional error message string

    Returns:
        Tuple of (is_retryable, error_type)
    """
    retryable = getattr(error, "retryable", None)
    if retryable is not None:
        if retryable:
            return True, RetryableErrorType.TEMPORARY
        return False, RetryableErrorType.PERMANENT

    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)

    if isinstance(status, int):
        if status == 429 or status >= 500:
            return True, RetryableErrorType.TEMPORARY
        if 400 <= status < 500:
            return False, RetryableErrorType.PERMANENT

    combined = f"{error} {error_message}".lower()

    if any(indicator in combined for indicator in NETWORK_INDICATORS):
        return True, RetryableErrorType.NETWORK

    if "429" in combined or "rate limit" in combined or "too many requests" in combined:
        return True, RetryableErrorType.TEMPORARY

    if "401" in combined or "403" in combined or "unauthorized" in combined or "forbidden" in combined:
        return False, RetryableErrorType.PERMANENT

    if "404" in combined or "not found" in combined or "unknown" in combined:
        return False, RetryableErrorType.PERMANENT

    return False, RetryableErrorType.PERMANENT


def compute_delay(attempt: int, initial_delay: float, max_delay: float,
                  exponential_base: float, jitter: bool) -> float:
    """Backoff delay before retry number ``attempt + 1`` (attempt is zero-based)"""
    delay = min(initial_delay * (exponential_base**attempt), max_delay)
    if jitter:
        jitter_amount = delay * 0.1  # 10% jitter
        delay = delay + random.uniform(-jitter_amount, jitter_amount)
        delay = max(0.0, delay)
    return delay


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    retryable_errors: Optional[List[RetryableErrorType]] = None,
) -> Callable:
    """Decorator for retrying functions with exponential backoff

    Args:
        max_retries: Maximum number of retry attempts (default: 3)
        initial_delay: Initial delay in seconds before first retry (default: 1.0)
        max_delay: Maximum delay between retries in seconds (default: 60.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add random jitter to prevent thundering herd (default: True)
        retryable_errors: List of error types to retry (None = retry all retryable types)

    Returns:
        Decorator function
    """
    if retryable_errors is None:
        retryable_errors = [RetryableErrorType.NETWORK, RetryableErrorType.TEMPORARY]

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    result = func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(f"{func.__name__} succeeded on attempt {attempt + 1}")
                    return result

                except Exception as e:
                    is_retryable, error_type = is_retryable_error(e)

                    if not is_retryable or error_type not in retryable_errors:
                        raise

                    if attempt >= max_retries:
                        logger.error(
                            f"{func.__name__} failed after {max_retries + 1} attempts. "
                            f"Last error ({error_type.value}): {e}"
                        )
                        raise

                    delay = compute_delay(attempt, initial_delay, max_delay, exponential_base, jitter)
                    logger.warning(
                        f"{func.__name__} failed on attempt {attempt + 1}/{max_retries + 1} "
                        f"({error_type.value} error: {e}). "
                        f"Retrying in {delay:.2f}s..."
                    )
                    time.sleep(delay)

            # Only reached when max_retries < 0
            return func(*args, **kwargs)

        return wrapper

    return decorator
