"""Token bucket with lazy, time-based refill."""

from __future__ import annotations

import math
import time
from collections.abc import Callable
from dataclasses import dataclass

from gitpulse.engines.rate_limit.errors import RateLimitConfigError


@dataclass(frozen=True)
class TokenBucketConfig:
    capacity: int
    refill_rate: float


class TokenBucket:
    """Burst up to ``capacity`` tokens while enforcing ``refill_rate`` per second.

    Tokens are refilled lazily: every public call first credits
    ``elapsed * refill_rate`` tokens (capped at capacity) and then evaluates
    the request, so no background timer is needed. ``take`` never blocks;
    callers that need to wait use :meth:`time_until_next_token`.
    """

    def __init__(
        self,
        capacity: int,
        refill_rate: float,
        initial_tokens: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        _validate_capacity(capacity)
        _validate_rate(refill_rate)
        self._capacity = capacity
        self._refill_rate = float(refill_rate)
        self._clock = clock
        start = capacity if initial_tokens is None else initial_tokens
        self._tokens = float(max(0.0, min(start, capacity)))
        self._last_refill = clock()

    # ── public ─────────────────────────────────────────────────────────────

    def take(self, count: int = 1) -> bool:
        """Consume *count* tokens if available; return whether it succeeded."""
        self._validate_count(count)
        self._refill()
        if self._tokens >= count:
            self._tokens -= count
            return True
        return False

    def tokens_available(self) -> float:
        self._refill()
        return self._tokens

    def time_until_next_token(self) -> int:
        """Milliseconds until at least one token is available (0 if one is)."""
        self._refill()
        if self._tokens >= 1:
            return 0
        return math.ceil((1 - self._tokens) / self._refill_rate * 1000)

    def time_until_tokens(self, count: int) -> int:
        """Milliseconds until *count* tokens are available."""
        self._validate_count(count)
        self._refill()
        if self._tokens >= count:
            return 0
        return math.ceil((count - self._tokens) / self._refill_rate * 1000)

    def set_refill_rate(self, refill_rate: float) -> None:
        _validate_rate(refill_rate)
        # Credit the elapsed interval at the old rate before switching.
        self._refill()
        self._refill_rate = float(refill_rate)

    def set_capacity(self, capacity: int) -> None:
        _validate_capacity(capacity)
        self._refill()
        self._capacity = capacity
        self._tokens = min(self._tokens, capacity)

    def reset(self, tokens: float | None = None) -> None:
        """Refill to capacity, or to *tokens* clamped into [0, capacity]."""
        target = self._capacity if tokens is None else tokens
        self._tokens = float(max(0.0, min(target, self._capacity)))
        self._last_refill = self._clock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def refill_rate(self) -> float:
        return self._refill_rate

    @property
    def config(self) -> TokenBucketConfig:
        return TokenBucketConfig(capacity=self._capacity, refill_rate=self._refill_rate)

    # ── internal ───────────────────────────────────────────────────────────

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self._capacity, self._tokens + elapsed * self._refill_rate)
        self._last_refill = now

    def _validate_count(self, count: int) -> None:
        if count <= 0:
            raise RateLimitConfigError(f"token count must be positive, got {count}")
        if count > self._capacity:
            raise RateLimitConfigError(
                f"token count {count} exceeds bucket capacity {self._capacity}"
            )


def _validate_capacity(capacity: int) -> None:
    if capacity <= 0:
        raise RateLimitConfigError(f"capacity must be positive, got {capacity}")


def _validate_rate(refill_rate: float) -> None:
    if refill_rate <= 0:
        raise RateLimitConfigError(f"refill rate must be positive, got {refill_rate}")
