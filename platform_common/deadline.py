"""Wall-clock budget tracking for handlers with a hard deadline."""

from __future__ import annotations

import time
from typing import Any, Callable, Optional

from botocore.config import Config

from .errors import DeadlineExceeded

_MIN_ATTEMPT_SECONDS = 1.0


class Deadline:
    """Tracks the remaining budget of a single handler invocation."""

    def __init__(self, budget_seconds: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if budget_seconds <= 0:
            raise ValueError("budget_seconds must be positive")
        self._clock = clock
        self._budget = float(budget_seconds)
        self._expires_at = clock() + self._budget

    @classmethod
    def for_lambda(
        cls,
        budget_seconds: float,
        context: Optional[Any],
        *,
        safety_margin_seconds: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> "Deadline":
        """Cap ``budget_seconds`` by the time Lambda has left for this invocation."""

        budget = float(budget_seconds)
        remaining_ms = getattr(context, "get_remaining_time_in_millis", None)
        if callable(remaining_ms):
            lambda_budget = remaining_ms() / 1000.0 - safety_margin_seconds
            budget = min(budget, max(lambda_budget, 0.001))
        return cls(budget, clock=clock)

    @property
    def budget_seconds(self) -> float:
        return self._budget

    def remaining(self) -> float:
        return max(self._expires_at - self._clock(), 0.0)

    def expired(self) -> bool:
        return self._clock() >= self._expires_at

    def check(self, stage: str) -> None:
        """Raise :class:`DeadlineExceeded` if the budget is spent."""

        if self.expired():
            raise DeadlineExceeded(stage, self._budget)

    def client_config(self, *, connect_timeout: float, read_timeout: float, max_attempts: int = 3) -> Config:
        """Build a botocore ``Config`` whose worst case fits the remaining budget.

        Each attempt may spend ``connect_timeout + read_timeout`` and retries
        back off between attempts. Attempts are dropped first, then the
        timeouts are shrunk, until the total fits.
        """

        remaining = self.remaining()
        attempts = max(1, max_attempts)
        while attempts > 1 and remaining - _backoff_allowance(attempts) < attempts * _MIN_ATTEMPT_SECONDS:
            attempts -= 1
        per_attempt = max((remaining - _backoff_allowance(attempts)) / attempts, _MIN_ATTEMPT_SECONDS)
        connect = min(connect_timeout, per_attempt / 2)
        read = min(read_timeout, per_attempt - connect)
        return Config(
            connect_timeout=connect,
            read_timeout=read,
            retries={"total_max_attempts": attempts, "mode": "standard"},
        )


def _backoff_allowance(attempts: int) -> float:
    # Standard mode sleeps at most 2**n seconds before retry n.
    return float(sum(2 ** retry for retry in range(1, attempts)))


__all__ = ["Deadline"]
