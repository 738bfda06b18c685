"""Bounded retry policy for provider operations.

Only ``TransientProviderError`` is retried. Delays grow exponentially from
``base_delay`` and are capped at ``max_delay``; a random jitter of up to
``jitter`` times the delay is added so that parallel actions do not retry
in lockstep.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .config import Config
from .provider import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when a transient error persisted through every attempt."""

    def __init__(self, attempts: int, last_error: TransientProviderError) -> None:
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Explicit retry schedule.

    Attributes:
        max_attempts: Total attempts, including the first one.
        base_delay: Delay in seconds before the second attempt.
        max_delay: Upper bound for a single delay (before jitter).
        jitter: Fraction of the delay added at random.
    """

    max_attempts: int = 3
    base_delay: float = 5.0
    max_delay: float = 60.0
    jitter: float = 0.2

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")

    @classmethod
    def from_config(cls, config: Config) -> RetryPolicy:
        return cls(
            max_attempts=config.retry_max_attempts,
            base_delay=config.retry_backoff_base_seconds,
            max_delay=config.retry_backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds after failed ``attempt`` (1-based), jitter included."""
        backoff = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return backoff + random.uniform(0, backoff * self.jitter)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        describe: str = "operation",
        on_attempt: Callable[[int], None] | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds or attempts are exhausted.

        Args:
            operation: Zero-argument coroutine factory, called once per attempt.
            describe: Human-readable name for logging.
            on_attempt: Called with the attempt number before each attempt.

        Returns:
            The operation's result.

        Raises:
            RetryExhaustedError: If every attempt raised TransientProviderError.
            Exception: Any non-transient error propagates immediately.
        """
        for attempt in range(1, self.max_attempts + 1):
            if on_attempt is not None:
                on_attempt(attempt)
            try:
                return await operation()
            except TransientProviderError as e:
                if attempt == self.max_attempts:
                    logger.error(
                        "Transient error persisted, giving up",
                        extra={"operation": describe, "attempts": attempt, "error": str(e)},
                    )
                    raise RetryExhaustedError(attempt, e) from e

                wait_time = self.delay_for(attempt)
                logger.warning(
                    "Transient provider error, retrying",
                    extra={
                        "operation": describe,
                        "attempt": attempt,
                        "max_attempts": self.max_attempts,
                        "wait_seconds": round(wait_time, 2),
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

        raise AssertionError("unreachable")
