"""Rate-limit engine exceptions."""

from __future__ import annotations


class RateLimitConfigError(ValueError):
    """Invalid bucket or limiter parameters (programmer error, never retried)."""


class CircuitOpenError(Exception):
    """Raised by :meth:`AdaptiveRateLimiter.execute` while the breaker is open.

    The wrapped operation is never attempted. ``wait_seconds`` tells the
    caller how long until the breaker closes on its own.
    """

    def __init__(self, wait_seconds: float) -> None:
        self.wait_seconds = wait_seconds
        super().__init__(f"circuit breaker is open, wait {wait_seconds:.0f}s")


class TokenUnavailableError(Exception):
    """No token could be acquired after one wait-and-retry cycle."""

    def __init__(self, wait_ms: int) -> None:
        self.wait_ms = wait_ms
        super().__init__(f"no rate-limit token available, next in {wait_ms}ms")
