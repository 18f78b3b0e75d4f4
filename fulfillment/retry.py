"""Redelivery backoff policy and HTTP status classification.

Attempt n (0-based) is redelivered after ``base_delay * 2**n`` seconds while
``n < max_attempts``; after that the message is dead-lettered.
With the defaults that is 5s, 10s, 20s.
"""

from __future__ import annotations

from dataclasses import dataclass


def is_retryable_status(status: int) -> bool:
    """Whether an HTTP status (0 = transport error) is worth redelivering.

    Every 4xx, including 408 and 429, is terminal.
    """
    return status == 0 or status >= 500


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: int = 5

    def should_retry(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def delay_for(self, attempt: int) -> int:
        """Redelivery delay in seconds for a failed attempt."""
        return self.base_delay * (2 ** max(attempt, 0))
