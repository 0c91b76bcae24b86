"""Retry policy for failed deliveries.

Backoff is expressed as a delay to reschedule with, never as a sleep, so the
drain loop stays non-blocking.
"""
from datetime import timedelta
from typing import Sequence

RETRY_DELAYS_SECONDS = (1, 2, 4, 8, 16)


def next_delay(retry_count: int, delays: Sequence[int] = RETRY_DELAYS_SECONDS) -> timedelta:
    """
    Delay before the next attempt after `retry_count` failed retries.

    Uses the escalating table; counts past its end keep the last entry.
    An empty table falls back to 2^retry_count seconds.
    """
    if retry_count < 0:
        retry_count = 0
    if not delays:
        return timedelta(seconds=2 ** retry_count)
    index = min(retry_count, len(delays) - 1)
    return timedelta(seconds=delays[index])


def attempts_exhausted(attempts: int, max_retries: int) -> bool:
    """True once `attempts` deliveries have been made and no retry budget remains."""
    return attempts >= max_retries + 1
