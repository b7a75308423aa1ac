"""Exponential backoff shared by delivery retries and reconnects."""

from dataclasses import dataclass


def backoff_delay(attempt: int, initial: float, maximum: float, factor: float = 2.0) -> float:
    """
    Delay before retry number `attempt` (1-based): initial * factor**(attempt-1),
    capped at maximum.  Non-decreasing in attempt.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-based")
    # Avoid float overflow on long outages; the cap is reached long before.
    exponent = min(attempt - 1, 64)
    return min(initial * factor ** exponent, maximum)


@dataclass(frozen=True)
class BackoffPolicy:
    initial: float = 1.0
    maximum: float = 60.0
    factor: float = 2.0

    def delay(self, attempt: int) -> float:
        return backoff_delay(attempt, self.initial, self.maximum, self.factor)
