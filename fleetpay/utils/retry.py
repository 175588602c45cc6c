"""Retry logic with exponential backoff and jitter.

Used to re-run a database unit of work that was aborted by a lock or
serialization conflict. The retried callable must be idempotent as a whole:
each attempt starts from a rolled-back session.

Usage:
    result = retry_sync(
        lambda: run_unit_of_work(),
        config=RetryConfig(max_retries=3, retryable_exceptions=(ConcurrencyConflictError,)),
    )
"""

import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TypeVar

from fleetpay.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Attributes:
        max_retries: Maximum number of retry attempts (default: 3)
        base_delay: Base delay in seconds before first retry (default: 1.0)
        max_delay: Maximum delay in seconds between retries (default: 60.0)
        backoff_factor: Exponential backoff multiplier (default: 2.0)
        jitter: Whether to add random jitter to delays (default: True)
        jitter_range: Range for jitter as fraction of delay (default: 0.1 = ±10%)
        retryable_exceptions: Tuple of exception types to retry (default: all)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.1
    retryable_exceptions: tuple[type[Exception], ...] = field(default_factory=lambda: (Exception,))

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if not 0 <= self.jitter_range <= 1:
            raise ValueError("jitter_range must be between 0 and 1")

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay for a given retry attempt (0-indexed)."""
        delay = min(self.base_delay * (self.backoff_factor**attempt), self.max_delay)

        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0, delay + random.uniform(-jitter_amount, jitter_amount))

        return delay


def retry_sync(
    func: Callable[[], T],
    config: RetryConfig | None = None,
    on_retry: Callable[[Exception, int], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``func`` until it succeeds or retries are exhausted.

    Args:
        func: Function to retry (takes no arguments)
        config: Retry configuration (uses defaults if None)
        on_retry: Optional callback called before each retry
                 Signature: def on_retry(error: Exception, attempt: int)
        sleep: Sleep function, replaceable in tests

    Returns:
        The return value of func() on success

    Raises:
        The last exception if all retries are exhausted, or any
        non-retryable exception immediately.
    """
    config = config or RetryConfig()

    for attempt in range(config.max_retries + 1):
        try:
            return func()

        except Exception as e:
            if not isinstance(e, config.retryable_exceptions):
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "retry_exhausted",
                    attempts=attempt + 1,
                    exception=type(e).__name__,
                    error=str(e),
                )
                raise

            delay = config.calculate_delay(attempt)

            logger.info(
                "retry_attempt",
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 3),
                exception=type(e).__name__,
                error=str(e),
            )

            if on_retry:
                try:
                    on_retry(e, attempt + 1)
                except Exception as callback_error:
                    logger.warning("retry_callback_failed", error=str(callback_error))

            sleep(delay)

    raise RuntimeError("retry_sync: unexpected code path")

