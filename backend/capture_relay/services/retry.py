from __future__ import annotations

from datetime import timedelta

from capture_relay.config import Settings


class RetryPolicy:
    """Exponential backoff with a hard cap on the delay."""

    def __init__(self, base_delay_seconds: int = 30, max_delay_seconds: int = 3600) -> None:
        if base_delay_seconds < 0 or max_delay_seconds < base_delay_seconds:
            raise ValueError("Retry delays must satisfy 0 <= base <= max")
        self.base_delay_seconds = base_delay_seconds
        self.max_delay_seconds = max_delay_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            base_delay_seconds=settings.queue_retry_base_delay_seconds,
            max_delay_seconds=settings.queue_retry_max_delay_seconds,
        )

    def delay(self, attempt: int) -> timedelta:
        """Delay before the retry following failed attempt ``attempt`` (1-indexed).

        min(base * 2^(attempt-1), max_delay)
        """
        attempt = max(attempt, 1)
        delay = min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)
        return timedelta(seconds=delay)

    @staticmethod
    def should_retry(attempts: int, max_attempts: int) -> bool:
        return attempts < max_attempts
