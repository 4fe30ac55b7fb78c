"""
Retry utilities with exponential backoff for transient provider errors.

Google Drive, Microsoft Graph and Supabase Storage all fail temporarily now
and then: rate limiting (HTTP 429), overloaded backends (HTTP 5xx) and
dropped connections. Those go away if the caller waits and tries again, so
every remote call made by the storage drivers goes through
``retry_on_transient_error``.

The wait doubles after each failed attempt (capped at ``max_delay``) and is
multiplied by a random factor in [0.5, 1.5) so that many workers retrying
the same outage do not hit the provider in lock step.

USAGE:
------
    from utils.retry import retry_on_transient_error, TRANSIENT_HTTP_STATUS_CODES

    def is_retryable(exc):
        if isinstance(exc, GraphError):
            return exc.status_code in TRANSIENT_HTTP_STATUS_CODES
        return is_transient_network_error(exc)

    @retry_on_transient_error(is_retryable=is_retryable, max_retries=3)
    def call_graph():
        return session.get(url, timeout=30)
"""

import logging
import random
import time
from functools import wraps
from typing import Callable, Optional


logger = logging.getLogger(__name__)


def log_retry(exc: Exception, attempt: int, delay: float) -> None:
    """Default on_retry hook: report the failed attempt as a warning."""
    status = getattr(exc, "status_code", None)
    error_desc = f"HTTP {status}" if status else type(exc).__name__
    logger.warning("%s on attempt %d, retrying in %.1fs", error_desc, attempt, delay)


def retry_on_transient_error(
    is_retryable: Callable[[Exception], bool],
    max_retries: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    on_retry: Optional[Callable[[Exception, int, float], None]] = log_retry,
):
    """
    Retry the decorated call while it fails with transient errors.

    Args:
        is_retryable: Called with the raised exception; returns True if the
                      error is transient. Each driver supplies its own
                      classification (HTTP status, SDK exception types).
        max_retries: Retry attempts after the first try, so up to
                     ``max_retries + 1`` calls in total. 0 disables retrying.
        base_delay: Delay in seconds before the first retry.
        max_delay: Upper bound on any single delay, before jitter.
        on_retry: Called as ``on_retry(exc, attempt, delay)`` before each
                  sleep. Defaults to logging a warning.

    Returns:
        A decorator applying the retry policy to a function.

    Raises:
        The original exception immediately if it is not retryable, or the
        last exception once retries are exhausted.
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except Exception as exc:
                    if not is_retryable(exc) or attempt >= max_retries:
                        raise

                    delay = min(base_delay * (2 ** attempt), max_delay)
                    delay *= 0.5 + random.random()
                    attempt += 1

                    if on_retry:
                        on_retry(exc, attempt, delay)
                    time.sleep(delay)

        return wrapper
    return decorator


# ---------------------------------------------------------------------------
# Common retry condition helpers
# ---------------------------------------------------------------------------

# HTTP status codes that indicate a temporary provider-side problem
TRANSIENT_HTTP_STATUS_CODES = {
    429,  # Too Many Requests
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}

# Network exception types that are typically transient.
# requests.RequestException and httplib2 socket errors both derive from OSError.
TRANSIENT_NETWORK_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    OSError,
)


def is_transient_network_error(exc: Exception) -> bool:
    """Check if an exception is a transient network error."""
    return isinstance(exc, TRANSIENT_NETWORK_EXCEPTIONS)
