from __future__ import annotations

import random
from typing import Iterator

def next_backoff(prev: float, cap: float) -> float:
    """Double `prev`, never above `cap`."""
    return min(prev * 2.0, cap)

def jitter(v: float, *, ratio: float = 0.2) -> float:
    """Spread `v` uniformly over [v*(1-ratio), v*(1+ratio)]."""
    return v * (1.0 - ratio + 2.0 * ratio * random.random())

def retry_delays(max_retries: int, initial: float = 0.5, cap: float = 8.0) -> Iterator[float]:
    """
    Delays to wait *between* attempts for a bounded retry policy.
    max_retries=4, initial=0.5 -> 0.5, 1.0, 2.0 (one fewer than attempts).
    """
    v = initial
    for _ in range(max(0, max_retries - 1)):
        yield v
        v = next_backoff(v, cap)
