from __future__ import annotations

import random


def compute_backoff(
    attempt: int,
    base: float = 5.0,
    jitter: float = 0.0,
    exponential: bool = False,
) -> float:
    """Delay before retrying after the given (1-based) failed ``attempt``.

    Fixed ``base`` seconds by default; ``exponential`` grows it as
    ``base ** attempt``. ``jitter`` adds up to that many random seconds.
    """
    delay = base ** attempt if exponential else base
    if jitter:
        delay += random.uniform(0, jitter)
    return delay
