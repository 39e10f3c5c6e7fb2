"""Retry helpers with capped exponential backoff.

Every retrying call site in the pipeline (embedding sub-batches, summary
calls, store writes) uses the same delay schedule:

    delay = min(max_delay, initial_delay * backoff_factor ** attempt)

where ``attempt`` counts retries already made (0 for the first retry).

Usage:
    @with_retry(max_attempts=3, initial_delay=1.0)
    def fetch_page():
        ...

    policy = RetryPolicy(max_attempts=4, retryable_exceptions=(RetryableStoreError,))
    policy.call(store.upsert_metadata, rows)
"""

import functools
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

from .exceptions import RetryableStoreError, TransientApiError
from .logging_config import get_logger

logger = get_logger('retry')

T = TypeVar('T')

DEFAULT_RETRYABLE: Tuple[Type[Exception], ...] = (
    TransientApiError,
    RetryableStoreError,
    TimeoutError,
    ConnectionError,
)


def backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
) -> float:
    """Delay before retry number ``attempt`` (0-indexed), capped at max_delay."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    return min(max_delay, initial_delay * (backoff_factor ** attempt))


def _hinted_delay(exc: Exception, delay: float, max_delay: float) -> float:
    """Prefer a provider's retry_after hint when the exception carries one."""
    retry_after = getattr(exc, 'retry_after', None)
    if retry_after:
        return min(float(retry_after), max_delay)
    return delay


def with_retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = False,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE,
    on_retry: Optional[Callable[[Exception, int, float], None]] = None,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for retrying functions with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including initial)
        initial_delay: Delay before the first retry in seconds
        max_delay: Maximum delay between retries in seconds
        backoff_factor: Multiplier for delay after each retry
        jitter: Scale each delay by a random factor in [0.5, 1.5)
        retryable_exceptions: Tuple of exception types to retry
        on_retry: Optional callback called before each retry
                  with (exception, attempt_number, delay)

    Returns:
        Decorated function with retry behavior

    Example:
        @with_retry(max_attempts=3)
        def embed(texts):
            return client.embeddings.create(input=texts, model=MODEL)

        # Will retry up to 2 times with delays: 1s, 2s
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        name = getattr(func, '__name__', repr(func))

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> T:
            for attempt in range(1, max_attempts + 1):
                try:
                    return func(*args, **kwargs)

                except retryable_exceptions as e:
                    if attempt == max_attempts:
                        logger.error(f"Failed after {max_attempts} attempts: {name}: {e}")
                        raise

                    delay = backoff_delay(attempt - 1, initial_delay, max_delay, backoff_factor)
                    delay = _hinted_delay(e, delay, max_delay)
                    if jitter:
                        delay = delay * (0.5 + random.random())

                    logger.warning(
                        f"Attempt {attempt}/{max_attempts} failed for {name}: {e}. "
                        f"Retrying in {delay:.1f}s..."
                    )

                    if on_retry:
                        on_retry(e, attempt, delay)

                    time.sleep(delay)

            # max_attempts >= 1 guarantees the loop returns or raises
            raise AssertionError("unreachable")

        return wrapper
    return decorator


def retry_with_backoff(
    func: Callable[..., T],
    *args,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    backoff_factor: float = 2.0,
    jitter: bool = False,
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE,
    **kwargs
) -> T:
    """Functional interface for retrying a single call.

    Example:
        result = retry_with_backoff(
            client.embeddings.create,
            model=MODEL,
            input=texts,
            max_attempts=5,
        )
    """
    decorated = with_retry(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        backoff_factor=backoff_factor,
        jitter=jitter,
        retryable_exceptions=retryable_exceptions,
    )(func)

    return decorated(*args, **kwargs)


@dataclass(frozen=True)
class RetryPolicy:
    """The backoff schedule shared by generators and the persistence writer."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = False
    retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-indexed)."""
        return backoff_delay(attempt, self.initial_delay, self.max_delay, self.backoff_factor)

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Call ``func`` under this policy."""
        return retry_with_backoff(
            func,
            *args,
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            backoff_factor=self.backoff_factor,
            jitter=self.jitter,
            retryable_exceptions=self.retryable_exceptions,
            **kwargs
        )

    @classmethod
    def from_config(cls, config, retryable_exceptions: Tuple[Type[Exception], ...] = DEFAULT_RETRYABLE) -> 'RetryPolicy':
        """Build a policy from a ``RetryConfig`` section."""
        return cls(
            max_attempts=config.max_attempts,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            backoff_factor=config.backoff_factor,
            jitter=config.jitter,
            retryable_exceptions=retryable_exceptions,
        )
