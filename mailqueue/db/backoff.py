"""
Exponential backoff for job retries.
"""

import random
from datetime import timedelta


def compute_backoff(
    attempts: int,
    base_seconds: float = 5.0,
    max_seconds: float = 600.0,
    jitter: float = 0.1,
) -> timedelta:
    """
    Calculate the delay before the next attempt of a failed job.

    Formula:
        delay = min(base * 2 ** (attempts - 1), max)
        delay = delay + uniform(0, jitter * delay)

    Args:
        attempts: Number of attempts made so far, counting the one that just failed.
        base_seconds: Delay after the first failure.
        max_seconds: Upper bound before jitter.
        jitter: Fraction of the delay added at random to spread out retries.

    Returns:
        timedelta: The delay to add to the current time.
    """
    # 2 ** 30 seconds is far beyond any sane max
    exponent = min(max(attempts - 1, 0), 30)
    delay = min(base_seconds * (2**exponent), max_seconds)

    if jitter > 0:
        delay += random.uniform(0, jitter * delay)

    return timedelta(seconds=delay)
