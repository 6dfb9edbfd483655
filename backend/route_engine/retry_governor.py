from __future__ import annotations

import time
from collections.abc import Callable

from .models import ResolutionState
from .settings import settings


class RetryGovernor:
    """Rate limit and attempt numbering for manual retries.

    Holds policy only; the counters live on the resolver's ResolutionState.
    """

    def __init__(
        self,
        *,
        min_interval_ms: int | None = None,
        max_attempts: int | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.min_interval_ms = int(
            settings.retry_min_interval_ms if min_interval_ms is None else min_interval_ms
        )
        self.max_attempts = max(1, int(settings.retry_max_attempts if max_attempts is None else max_attempts))
        self._clock = clock or time.monotonic

    def admit(self, state: ResolutionState) -> bool:
        now = self._clock()
        if state.last_retry_at is not None:
            elapsed_ms = (now - state.last_retry_at) * 1000.0
            if elapsed_ms < self.min_interval_ms:
                return False
        state.retry_count += 1
        state.last_retry_at = now
        return True

    def reset(self, state: ResolutionState) -> None:
        state.retry_count = 0

    def exhausted(self, state: ResolutionState) -> bool:
        return state.retry_count >= self.max_attempts

    def failure_message(self, state: ResolutionState, *, online: bool) -> str:
        reason = "routing providers unavailable" if online else "still offline"
        if self.exhausted(state):
            return (
                f"Retries exhausted ({state.retry_count}/{self.max_attempts}): {reason}. "
                "Using basic navigation."
            )
        return f"Retry {state.retry_count}/{self.max_attempts} failed: {reason}."
