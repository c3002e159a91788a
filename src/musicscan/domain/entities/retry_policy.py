"""Retry backoff for failed queue items.

Hey future me - this is a STEP function, not exponential! max_attempts is small (3)
and the cron interval already throttles throughput, so 5/10/15 minutes is plenty:
- attempt 1 failed → retry in 5 minutes
- attempt 2 failed → retry in 10 minutes
- attempt 3+ failed → 15 minutes (cap)
"""

from datetime import timedelta

BACKOFF_STEP_MINUTES = 5
BACKOFF_CAP_MINUTES = 15


def backoff(attempts: int) -> timedelta:
    """Return the delay before an item that failed `attempts` times is eligible again.

    Args:
        attempts: Number of attempts made so far (>= 1)

    Returns:
        Delay as timedelta
    """
    if attempts < 1:
        raise ValueError(f"attempts must be >= 1, got {attempts}")
    return timedelta(minutes=min(BACKOFF_STEP_MINUTES * attempts, BACKOFF_CAP_MINUTES))
