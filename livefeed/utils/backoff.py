"""
Exponential backoff helpers shared by the resolver and probes.
"""

import random
from typing import Callable


def nominal_backoff_delay(
    attempt: int,
    initial: float,
    multiplier: float,
    max_delay: float,
) -> float:
    """Un-jittered delay for a zero-based attempt index, capped at max_delay."""
    return min(initial * (multiplier ** attempt), max_delay)


def compute_backoff_delay(
    attempt: int,
    initial: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 30.0,
    jitter_ratio: float = 0.1,
    rand: Callable[[], float] = random.random,
) -> float:
    """
    Delay in seconds before retry number ``attempt`` (zero-based).

    The result lies within ``jitter_ratio`` of the nominal exponential value,
    so consecutive callers spread out instead of retrying in lockstep.
    """
    delay = nominal_backoff_delay(attempt, initial, multiplier, max_delay)
    if jitter_ratio:
        spread = delay * jitter_ratio
        delay += rand() * spread * 2 - spread
    return max(delay, 0.0)
