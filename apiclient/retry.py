from __future__ import annotations

import random
from collections.abc import Callable

from .classifier import ClassifiedFailure, FailureKind

RETRYABLE_KINDS = {FailureKind.SERVER_ERROR, FailureKind.TRANSPORT_ERROR}


class RetryPolicy:
    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        jitter: float = 0.0,
        retry_condition: Callable[[ClassifiedFailure], bool] | None = None,
    ) -> None:
        self.max_attempts = max(0, max_attempts)
        self.base_delay = max(0.0, base_delay)
        self.jitter = max(0.0, jitter)
        self._retry_condition = retry_condition

    def is_retryable(self, failure: ClassifiedFailure) -> bool:
        if failure.kind not in RETRYABLE_KINDS:
            return False
        # a dead server will not come back within the backoff window
        if failure.is_connection_refused:
            return False
        if self._retry_condition is not None:
            return self._retry_condition(failure)
        return True

    def backoff(self, attempt: int) -> float:
        delay = self.base_delay * 2**attempt
        if self.jitter:
            delay += random.uniform(0, self.jitter * delay)
        return delay

    def should_retry(self, failure: ClassifiedFailure, attempt: int) -> float | None:
        """Return the delay in seconds before the next attempt, or ``None``.

        ``attempt`` counts the retries already made for this request, so the
        delays run ``base, 2*base, 4*base, ...`` up to ``max_attempts`` retries.
        """
        if attempt >= self.max_attempts:
            return None
        if not self.is_retryable(failure):
            return None
        return self.backoff(attempt)
