from __future__ import annotations

import random
from datetime import timedelta

RETRY_BASE_DELAY = timedelta(minutes=2)
RETRY_MAX_DELAY = timedelta(minutes=32)
RETRY_JITTER_RATIO = 0.1
MIN_RETRY_DELAY = timedelta(seconds=1)


def compute_retry_delay(attempts: int, *, rng: random.Random | None = None) -> timedelta:
    """Exponential backoff capped at RETRY_MAX_DELAY with +/-10% jitter."""
    exponent = max(0, attempts)
    max_seconds = RETRY_MAX_DELAY.total_seconds()
    # Cap the exponent before multiplying so large attempt counts stay cheap.
    delay_seconds = min(RETRY_BASE_DELAY.total_seconds() * (2 ** min(exponent, 16)), max_seconds)

    source = rng if rng is not None else random
    jitter_seconds = delay_seconds * RETRY_JITTER_RATIO * source.uniform(-1.0, 1.0)
    return max(MIN_RETRY_DELAY, timedelta(seconds=delay_seconds + jitter_seconds))
