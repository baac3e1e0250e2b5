"""
Retry delay computation.
"""

import random
from typing import Optional


def compute_backoff(
    attempt: int,
    base: float = 1.0,
    max_delay: float = 60.0,
    jitter: float = 0.5,
    rng: Optional[random.Random] = None,
    floor: Optional[float] = None
) -> float:
    """
    Delay before retry number ``attempt`` (0-based).

    ``min(max_delay, base * 2**attempt)`` spread by up to ``jitter`` of itself
    in either direction. ``floor`` (a Retry-After hint) raises the result.
    """
    if attempt < 0:
        raise ValueError("attempt must be non-negative")

    # Cap the exponent so huge attempt counts cannot overflow
    delay = min(max_delay, base * (2 ** min(attempt, 62)))

    if jitter > 0 and delay > 0:
        rng = rng or random
        delay += delay * jitter * (2 * rng.random() - 1)

    delay = max(0.0, delay)
    if floor is not None and floor > delay:
        delay = floor
    return delay
