"""
Exponential backoff with jitter, tracked per key.
"""

import random
from typing import Callable, Dict, Hashable

# Exponent cap, so the delay saturates at max_delay instead of overflowing
MAX_EXPONENT = 10


def backoff_delay(
    retry_count: int,
    base_delay: float,
    max_delay: float,
    jitter_factor: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Compute the delay before the next retry.

    ``min(base * 2**retry_count, max)`` scaled by a random factor in
    ``[1 - jitter, 1 + jitter]`` to prevent thundering herds.

    Args:
        retry_count: Number of consecutive failures so far (0 for the first).
        base_delay: Base delay in seconds.
        max_delay: Maximum delay in seconds before jitter.
        jitter_factor: Jitter factor ±X (0.1 = ±10%).
        rand: Source of uniform randomness in [0, 1).

    Returns:
        Delay in seconds.
    """
    delay = min(base_delay * (2 ** min(retry_count, MAX_EXPONENT)), max_delay)
    return delay * (1 + (rand() * 2 - 1) * jitter_factor)


class Backoff:
    """Counts consecutive failures per key and hands out growing delays."""

    def __init__(
        self,
        base_delay: float = 2.0,
        max_delay: float = 300.0,
        jitter_factor: float = 0.1,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_factor = jitter_factor
        self._failures: Dict[Hashable, int] = {}

    def failure(self, key: Hashable) -> float:
        """Record a failure for ``key`` and return the delay to wait."""
        retry_count = self._failures.get(key, 0)
        self._failures[key] = retry_count + 1
        return backoff_delay(
            retry_count, self.base_delay, self.max_delay, self.jitter_factor
        )

    def reset(self, key: Hashable) -> None:
        self._failures.pop(key, None)

    def failures(self, key: Hashable) -> int:
        return self._failures.get(key, 0)
