# buildloop/queue/backoff.py
"""Retry policy value objects."""

from dataclasses import dataclass

from buildloop.config.schema import QueueConfig


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Exponential retry policy of one queue.

    The first retry waits ``base_delay``; every further retry multiplies the
    wait by ``multiplier`` up to ``max_delay``.
    """

    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 300.0
    max_attempts: int = 3

    def __post_init__(self) -> None:
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Backoff delays must be non-negative")
        if self.multiplier < 1:
            raise ValueError("Backoff multiplier must be >= 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_config(cls, config: QueueConfig) -> "BackoffPolicy":
        return cls(
            base_delay=config.backoff_delay,
            multiplier=config.backoff_multiplier,
            max_delay=config.backoff_max_delay,
            max_attempts=config.attempts,
        )

    def delay_for(self, attempts: int) -> float:
        """
        Seconds to wait before the next attempt.

        Args:
            attempts: Attempts made so far (>= 1)
        """
        exponent = max(attempts - 1, 0)
        return min(self.base_delay * self.multiplier**exponent, self.max_delay)

    def should_retry(self, attempts: int, max_attempts: int | None = None) -> bool:
        return attempts < (max_attempts or self.max_attempts)


@dataclass(frozen=True)
class JobOptions:
    """Per-job overrides of the queue defaults."""

    max_attempts: int | None = None
    timeout_seconds: float | None = None
    priority: int = 0
    delay: float = 0.0
    repeat_every: float | None = None
