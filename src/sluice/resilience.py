"""Retry policy for infrastructure errors.

Gate checks, namespace teardown and webhook delivery distinguish a dependency
that could not be reached from an operation that completed and failed. Only
the former is retried, with exponential backoff and jitter, up to a bound.

Example:
    >>> from sluice.config import RetryConfig
    >>> policy = RetryPolicy(RetryConfig(max_attempts=3, initial_delay_ms=0))
    >>>
    >>> @policy.wrap
    ... def teardown():
    ...     return provisioner.destroy(namespace)
"""

from __future__ import annotations

import functools
import random
import time
from collections.abc import Callable
from typing import ParamSpec, TypeVar

import structlog

from sluice.config import RetryConfig
from sluice.errors import InfrastructureError

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

DEFAULT_RETRYABLE: tuple[type[Exception], ...] = (
    InfrastructureError,
    ConnectionError,
    TimeoutError,
)


class RetryPolicy:
    """Retry policy with exponential backoff and jitter.

    Retry Timeline (default config):
    - Attempt 1: Immediate
    - Attempt 2: ~1s delay (with jitter)
    - Attempt 3: ~2s delay (with jitter)

    Attributes:
        config: RetryConfig with max_attempts, delays, and jitter settings.
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        retryable_exceptions: tuple[type[Exception], ...] | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize RetryPolicy.

        Args:
            config: Retry configuration. Uses defaults if None.
            retryable_exceptions: Exception types to retry on.
                Defaults to (InfrastructureError, ConnectionError, TimeoutError).
            sleep: Sleep function, replaceable in tests.
        """
        self._config = config or RetryConfig()
        self._retryable_exceptions = retryable_exceptions or DEFAULT_RETRYABLE
        self._sleep = sleep

    @property
    def config(self) -> RetryConfig:
        """Return the retry configuration."""
        return self._config

    def calculate_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Uses exponential backoff: delay = initial * (multiplier ^ attempt),
        capped at max_delay_ms, with optional ±25% jitter.

        Args:
            attempt: Current attempt number (0-indexed).

        Returns:
            Delay in seconds.
        """
        base_delay_ms = min(
            self._config.initial_delay_ms * (self._config.backoff_multiplier**attempt),
            self._config.max_delay_ms,
        )

        if self._config.jitter and base_delay_ms > 0:
            jitter_range = base_delay_ms * 0.25
            base_delay_ms += random.uniform(-jitter_range, jitter_range)

        return max(base_delay_ms, 0.0) / 1000.0

    def should_retry(self, exception: Exception) -> bool:
        """Check if an exception is retryable."""
        return isinstance(exception, self._retryable_exceptions)

    def call(self, func: Callable[[], T], *, operation: str = "operation") -> T:
        """Call ``func`` and retry on retryable exceptions.

        Args:
            func: Zero-argument callable.
            operation: Name used in log events.

        Returns:
            The callable's return value.

        Raises:
            Exception: The last retryable exception once attempts are exhausted,
                or any non-retryable exception immediately.
        """
        max_attempts = self._config.max_attempts
        for attempt in range(max_attempts):
            try:
                return func()
            except Exception as e:
                if not self.should_retry(e):
                    raise

                remaining = max_attempts - attempt - 1
                if remaining == 0:
                    logger.warning(
                        "retry_exhausted",
                        operation=operation,
                        attempts=max_attempts,
                        error=str(e),
                    )
                    raise

                delay = self.calculate_delay(attempt)
                logger.debug(
                    "retry_attempt",
                    operation=operation,
                    attempt=attempt + 1,
                    max_attempts=max_attempts,
                    delay_seconds=delay,
                    error=str(e),
                )
                self._sleep(delay)

        raise RuntimeError("Retry loop exited unexpectedly")  # pragma: no cover

    def wrap(self, func: Callable[P, T]) -> Callable[P, T]:
        """Decorator form of :meth:`call`."""

        @functools.wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return self.call(lambda: func(*args, **kwargs), operation=func.__name__)

        return wrapper


__all__ = ["DEFAULT_RETRYABLE", "RetryPolicy"]
