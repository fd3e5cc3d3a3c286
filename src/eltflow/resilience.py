"""
Retry primitives for warehouse submissions.

Runs fail fast by default. With retry enabled, a statement that fails with a
transient warehouse error (lost connection, lock contention, throttling) is
submitted again after a bounded, exponentially growing pause.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class RetryConfig:
    """Retry policy for one run, read from ``schedule.retry``."""

    enabled: bool = False
    max_retries: int = 3
    initial_backoff_ms: int = 1000
    max_backoff_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter: bool = True  # Spread concurrent workers' retries apart

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f'max_retries cannot be negative (got {self.max_retries})')
        if min(self.initial_backoff_ms, self.max_backoff_ms) < 0:
            raise ValueError(
                f'backoff must be non-negative (got {self.initial_backoff_ms}ms initial, {self.max_backoff_ms}ms max)'
            )
        if self.backoff_multiplier < 1.0:
            raise ValueError(f'backoff_multiplier below 1.0 would shrink delays (got {self.backoff_multiplier})')


class ErrorClassifier:
    """Decide whether a warehouse error is worth another attempt."""

    # Substrings of lower-cased error messages
    TRANSIENT_MARKERS = (
        # network
        'timeout',
        'timed out',
        'connection reset',
        'connection refused',
        'connection aborted',
        'could not connect',
        'broken pipe',
        'temporary failure',
        # warehouse load
        '429',
        '503',
        '504',
        'too many requests',
        'service unavailable',
        'throttl',
        'rate limit',
        'queue is full',
        # lock contention
        'database is locked',
        'database table is locked',
        'deadlock',
    )

    @classmethod
    def is_transient(cls, error: Optional[str]) -> bool:
        if not error:
            return False
        message = error.lower()
        return any(marker in message for marker in cls.TRANSIENT_MARKERS)


class ExponentialBackoff:
    """Successive retry delays for one failing statement."""

    def __init__(self, config: RetryConfig):
        self.config = config
        self.attempt = 0

    def _base_delay_ms(self) -> float:
        grown = self.config.initial_backoff_ms * self.config.backoff_multiplier**self.attempt
        return min(grown, self.config.max_backoff_ms)

    def next_delay(self) -> Optional[float]:
        """Seconds to wait before the next attempt, or None once retries are used up."""
        if self.attempt >= self.config.max_retries:
            return None

        delay_ms = self._base_delay_ms()
        if self.config.jitter:
            delay_ms *= random.uniform(0.5, 1.5)
        self.attempt += 1
        return delay_ms / 1000.0

    def reset(self):
        self.attempt = 0


def call_with_retry(
    fn: Callable[[], T],
    config: RetryConfig,
    description: str,
    cancel_event: Optional[threading.Event] = None,
) -> T:
    """Call ``fn``, retrying transient failures when retry is enabled.

    Waits between attempts on ``cancel_event`` so a cancelled run stops retrying
    immediately. The last error is re-raised once retries are exhausted.
    """
    backoff = ExponentialBackoff(config)
    while True:
        try:
            return fn()
        except Exception as e:
            if not config.enabled or not ErrorClassifier.is_transient(str(e)):
                raise
            delay = backoff.next_delay()
            if delay is None:
                logger.error(f'{description} failed after {config.max_retries} retries: {e}')
                raise
            logger.warning(f'{description} hit a transient error, retrying in {delay:.2f}s: {e}')
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise
            else:
                time.sleep(delay)
