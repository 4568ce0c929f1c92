"""
Retry with exponential backoff and jitter
"""
import time
import random
import logging
import functools
from dataclasses import dataclass, replace
from typing import Callable, Optional, TypeVar

from .errors import RetryError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_MESSAGES = (
    "network", "timeout", "timed out", "econnreset", "connection", "pool",
    "rate limit", "429", "too many requests", "500", "502", "503", "504",
)


def default_is_retryable(error: BaseException) -> bool:
    """Network, timeout, rate-limit and server errors are worth another try"""
    flagged = getattr(error, "retryable", None)
    if isinstance(flagged, bool):
        return flagged

    status = getattr(error, "status_code", None)
    if status is None:
        status = getattr(error, "status", None)
    if isinstance(status, int):
        return status == 429 or status >= 500

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True
    message = str(error).lower()
    return any(token in message for token in RETRYABLE_MESSAGES)


def _openai_is_retryable(error: BaseException) -> bool:
    if isinstance(getattr(error, "retryable", None), bool):
        return error.retryable
    message = str(error).lower()
    if any(token in message for token in ("rate limit", "timeout", "429", "500", "503")):
        return True
    return default_is_retryable(error)


@dataclass
class RetryOptions:
    retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.1
    is_retryable: Callable[[BaseException], bool] = default_is_retryable
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None


RETRY_PRESETS = {
    "openai": RetryOptions(retries=3, base_delay=1.0, max_delay=30.0, jitter=0.2,
                           is_retryable=_openai_is_retryable),
    "storage": RetryOptions(retries=3, base_delay=0.5, max_delay=10.0),
    "database": RetryOptions(retries=2, base_delay=0.2, max_delay=5.0),
    "quick": RetryOptions(retries=2, base_delay=0.1, max_delay=1.0),
}


def calculate_delay(attempt: int, base_delay: float, max_delay: float, jitter: float,
                    rand: Callable[[], float] = random.random) -> float:
    """base * 2^attempt, capped, scaled by (1 - jitter/2 + rand * jitter)"""
    capped = min(base_delay * (2 ** attempt), max_delay)
    return capped * (1 - jitter / 2 + rand() * jitter)


def retry(fn: Callable[[], T], options: Optional[RetryOptions] = None,
          sleep: Callable[[float], None] = time.sleep, **overrides) -> T:
    """Call fn until it succeeds, a non-retryable error occurs, or retries run out"""
    opts = replace(options or RetryOptions(), **overrides)
    last_error: Optional[BaseException] = None

    for attempt in range(opts.retries + 1):
        try:
            return fn()
        except Exception as e:
            last_error = e
            if attempt >= opts.retries:
                break
            if not opts.is_retryable(e):
                raise

            delay = calculate_delay(attempt, opts.base_delay, opts.max_delay, opts.jitter)
            if opts.on_retry is not None:
                opts.on_retry(attempt + 1, e, delay)
            else:
                logger.warning(f"🔄 Attempt {attempt + 1}/{opts.retries} failed, "
                               f"retrying in {delay:.2f}s: {e}")
            sleep(delay)

    attempts = opts.retries + 1
    raise RetryError(f"Operation failed after {attempts} attempts", attempts, last_error) from last_error


def with_retry(options: Optional[RetryOptions] = None, sleep: Callable[[float], None] = time.sleep,
               **overrides):
    """Decorator form of retry()"""
    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return retry(lambda: fn(*args, **kwargs), options, sleep=sleep, **overrides)
        return wrapper
    return decorator
