from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    initial: float = 1.0,
    cap: float | None = None,
) -> float:
    """Compute exponential backoff with jitter.

    ``attempt`` counts failures so far, starting at 1 for the first retry.
    """
    delay = initial * base ** max(attempt - 1, 0)
    if cap is not None:
        delay = min(delay, cap)
    return delay + random.uniform(0, jitter) if jitter else delay
