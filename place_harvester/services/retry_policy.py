"""
Retry budget and backoff schedule for page jobs.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times a job may be retried and how long to wait between tries.

    The delay before retry ``n`` (0-based) is ``base_delay * 2 ** n`` capped at
    ``max_delay``; with the defaults that is 2s, 4s, 8s.
    """
    max_retries: int = 3
    base_delay: float = 2.0
    max_delay: float = 10.0

    def can_retry(self, retry_count: int) -> bool:
        """True while ``retry_count`` retries have not used up the budget."""
        return retry_count < self.max_retries

    def delay_for(self, retry_count: int) -> float:
        """
        Backoff before the next attempt.

        Args:
            retry_count: Retries already performed for the job

        Returns:
            Delay in seconds
        """
        if retry_count < 0:
            retry_count = 0
        return min(self.base_delay * (2 ** retry_count), self.max_delay)

    @property
    def max_attempts(self) -> int:
        """First dispatch plus every retry."""
        return self.max_retries + 1

    @classmethod
    def from_config(cls, config) -> 'RetryPolicy':
        return cls(
            max_retries=config.max_retries,
            base_delay=config.backoff_base,
            max_delay=config.backoff_cap,
        )
