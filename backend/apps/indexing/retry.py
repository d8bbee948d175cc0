"""
Retry utilities with exponential backoff.

Used in two places: the job queue schedules failed attempts with
job_backoff_seconds(), and synchronous LLM calls wrap themselves in
retry_with_backoff().
"""
import time
import random
import logging
from typing import Callable, Type, Tuple, Optional

import httpx

from apps.indexing.errors import is_permanent

logger = logging.getLogger(__name__)


class RetryExhausted(Exception):
    """Raised when all retries have been exhausted."""

    def __init__(self, message: str, attempts: int, last_exception: Exception):
        super().__init__(message)
        self.attempts = attempts
        self.last_exception = last_exception


# Queue-level retry for pipeline jobs (attempts counts the first run)
JOB_RETRY_CONFIG = {
    'max_attempts': 3,
    'initial_backoff': 2.0,  # 2 seconds
    'backoff_multiplier': 2.0,
    'max_backoff': 300.0,
    'jitter_percent': 0.10,  # ±10%
}

# Retry configuration for LLM generation (ask / brief endpoints)
GENERATION_RETRY_CONFIG = {
    'max_retries': 2,        # Total 3 attempts
    'initial_backoff': 1.0,  # 1 second
    'backoff_multiplier': 2.0,
    'max_backoff': 5.0,
    'jitter_percent': 0.10,  # ±10%
}


def calculate_backoff(
    attempt: int,
    initial_backoff: float,
    backoff_multiplier: float,
    max_backoff: float,
    jitter_percent: float
) -> float:
    """
    Calculate backoff time with exponential increase and jitter.

    Args:
        attempt: Current retry attempt (0-indexed)
        initial_backoff: Base backoff in seconds
        backoff_multiplier: Exponential multiplier
        max_backoff: Maximum backoff cap
        jitter_percent: Random jitter range (0.25 = ±25%)

    Returns:
        Backoff time in seconds
    """
    backoff = initial_backoff * (backoff_multiplier ** attempt)
    backoff = min(backoff, max_backoff)

    jitter_range = backoff * jitter_percent
    jitter = random.uniform(-jitter_range, jitter_range)
    backoff += jitter

    return max(0.0, backoff)


def job_backoff_seconds(attempts: int, base: Optional[float] = None) -> float:
    """
    Delay before the next attempt of a job that has failed `attempts` times.

    Exponential: base * 2 ** (attempts - 1), so 2s, 4s, 8s... with the default base.
    """
    config = JOB_RETRY_CONFIG
    return calculate_backoff(
        max(0, attempts - 1),
        config['initial_backoff'] if base is None else base,
        config['backoff_multiplier'],
        config['max_backoff'],
        config['jitter_percent'],
    )


def is_retriable_error(exception: Exception) -> bool:
    """
    Determine if an exception is retriable.

    Returns True for:
    - Transport errors (connect, read timeouts, resets)
    - 5xx status codes
    - Overload / busy messages

    Returns False for:
    - Permanent pipeline errors (bad input, consistency)
    - 4xx errors (client error, won't help to retry)
    """
    if is_permanent(exception):
        return False

    if isinstance(exception, httpx.TransportError):
        return True

    if isinstance(exception, httpx.HTTPStatusError):
        return exception.response.status_code >= 500

    error_msg = str(exception).lower()

    retriable_patterns = [
        'connection',
        'timeout',
        'timed out',
        'temporarily unavailable',
        '503',
        '502',
        '500',
        'overloaded',
        'busy',
    ]

    for pattern in retriable_patterns:
        if pattern in error_msg:
            return True

    non_retriable_patterns = [
        '404',
        '400',
        '401',
        '403',
        'model not found',
        'invalid',
        'not supported',
    ]

    for pattern in non_retriable_patterns:
        if pattern in error_msg:
            return False

    # Default: retriable for unknown errors (optimistic)
    return True


def retry_with_backoff(
    func: Callable,
    config: dict,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
):
    """
    Execute a function with retry and exponential backoff.

    Args:
        func: Callable to execute
        config: Retry configuration dict
        exceptions: Tuple of exception types to catch
        on_retry: Optional callback(attempt, exception, backoff) called before each retry
        sleep: Sleep function (tests pass a no-op)

    Returns:
        Result of func() if successful

    Raises:
        RetryExhausted: If all retries fail
        Exception: If a non-retriable exception is raised
    """
    max_retries = config['max_retries']
    attempt = 0
    last_exception = None

    while attempt <= max_retries:
        try:
            return func()
        except exceptions as e:
            last_exception = e

            if not is_retriable_error(e):
                logger.warning(f"Non-retriable error on attempt {attempt + 1}: {e}")
                raise

            if attempt >= max_retries:
                break

            backoff = calculate_backoff(
                attempt,
                config['initial_backoff'],
                config['backoff_multiplier'],
                config['max_backoff'],
                config['jitter_percent']
            )

            logger.warning(
                f"Retriable error on attempt {attempt + 1}/{max_retries + 1}: {e}. "
                f"Retrying in {backoff:.2f}s"
            )

            if on_retry:
                on_retry(attempt, e, backoff)

            sleep(backoff)
            attempt += 1

    raise RetryExhausted(
        f"All {max_retries + 1} attempts failed. Last error: {last_exception}",
        attempts=attempt + 1,
        last_exception=last_exception
    )
