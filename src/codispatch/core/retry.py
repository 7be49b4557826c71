from __future__ import annotations

BACKOFF_BASE_MS = 15_000
BACKOFF_CAP_MS = 180_000


def backoff_ms(attempt: int, base_ms: int = BACKOFF_BASE_MS, cap_ms: int = BACKOFF_CAP_MS) -> int:
    """Delay before re-dispatching a task that just failed ``attempt``."""
    exponent = max(0, int(attempt) - 1)
    # cap is reached long before 2**32
    if exponent >= 32:
        return cap_ms
    return min(cap_ms, base_ms * (2 ** exponent))


def backoff_seconds(attempt: int) -> float:
    return backoff_ms(attempt) / 1000.0


def is_retryable(attempts: int, max_attempts: int) -> bool:
    return attempts < max_attempts
