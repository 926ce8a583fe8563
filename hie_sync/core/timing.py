"""
Pacing helpers for bursty outbound I/O.
"""

import asyncio
import random
from typing import Iterator, List, Sequence, TypeVar

T = TypeVar("T")


def jitter_seconds(max_seconds: float, min_fraction: float = 0.1) -> float:
    """
    Random delay in [min_fraction * max, max).

    Draws below the minimum fraction are shifted up by it, so the delay is
    never shorter than min_fraction of the max.
    """
    if max_seconds <= 0:
        return 0.0
    multiplier = random.random()
    if multiplier < min_fraction:
        multiplier += min_fraction
    return multiplier * max_seconds


async def sleep_random(max_seconds: float, min_fraction: float = 0.1) -> float:
    """Sleep for a jittered delay and return how long it slept."""
    delay = jitter_seconds(max_seconds, min_fraction)
    if delay > 0:
        await asyncio.sleep(delay)
    return delay


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Split items into consecutive lists of at most `size` elements."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    for start in range(0, len(items), size):
        yield list(items[start : start + size])
