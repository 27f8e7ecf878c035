from __future__ import annotations

import random
from collections.abc import Callable
from dataclasses import dataclass

from .models import ErrorKind

NON_RETRYABLE_KINDS = frozenset(
    {ErrorKind.VALIDATION, ErrorKind.NON_RETRYABLE, ErrorKind.CANCELLED, ErrorKind.NO_HANDLER}
)


def base_backoff(attempts: int, base_delay: float, max_delay: float) -> float:
    """Backoff before jitter: doubles per attempt, capped at ``max_delay``."""
    exponent = max(attempts, 1) - 1
    # cap the exponent so huge attempt counts cannot overflow the float
    return min(max_delay, base_delay * 2 ** min(exponent, 64))


def next_attempt_delay(
    attempts: int,
    base_delay: float,
    max_delay: float,
    rand: Callable[[float, float], float] = random.uniform,
) -> float:
    return base_backoff(attempts, base_delay, max_delay) * rand(0.5, 1.5)


def should_retry(attempts: int, max_retries: int, error_kind: ErrorKind | None = None) -> bool:
    if attempts > max_retries:
        return False
    return error_kind not in NON_RETRYABLE_KINDS


@dataclass(slots=True)
class RetryPolicy:
    base_delay: float = 2.0
    max_delay: float = 300.0
    jitter: bool = True

    def delay_for(self, attempts: int) -> float:
        if not self.jitter:
            return base_backoff(attempts, self.base_delay, self.max_delay)
        return next_attempt_delay(attempts, self.base_delay, self.max_delay)

    def should_retry(self, attempts: int, max_retries: int, error_kind: ErrorKind | None = None) -> bool:
        return should_retry(attempts, max_retries, error_kind)
