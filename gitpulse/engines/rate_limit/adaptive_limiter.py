"""AdaptiveRateLimiter: token-gated execution, jittered backoff, circuit breaker."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import structlog

from gitpulse.core.config import env_float, env_int
from gitpulse.engines.rate_limit.errors import CircuitOpenError, TokenUnavailableError
from gitpulse.engines.rate_limit.token_bucket import TokenBucket, TokenBucketConfig

log = structlog.get_logger("gitpulse.rate_limit")

T = TypeVar("T")

_RATE_LIMIT_STATUSES = frozenset({429})
_RATE_LIMIT_TEXT = ("rate limit", "too many requests", "429")


@dataclass(frozen=True)
class RateLimiterConfig:
    capacity: int = 10
    refill_rate: float = 2.0
    initial_backoff: float = 60.0  # seconds
    max_backoff_multiplier: float = 8.0
    jitter: float = 0.1
    circuit_breaker_threshold: int = 5
    circuit_breaker_pause: float = 60.0  # seconds

    @classmethod
    def from_env(cls) -> RateLimiterConfig:
        d = cls()
        return cls(
            capacity=env_int("LIMITER_CAPACITY", d.capacity),
            refill_rate=env_float("LIMITER_REFILL_RATE", d.refill_rate),
            initial_backoff=env_float("LIMITER_INITIAL_BACKOFF", d.initial_backoff),
            max_backoff_multiplier=env_float(
                "LIMITER_MAX_BACKOFF_MULTIPLIER", d.max_backoff_multiplier
            ),
            jitter=env_float("LIMITER_JITTER", d.jitter),
            circuit_breaker_threshold=env_int(
                "LIMITER_BREAKER_THRESHOLD", d.circuit_breaker_threshold
            ),
            circuit_breaker_pause=env_float("LIMITER_BREAKER_PAUSE", d.circuit_breaker_pause),
        )


@dataclass(frozen=True)
class RateLimiterMetrics:
    """Point-in-time copy of the limiter counters."""

    total_requests: int = 0
    rate_limit_hits: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    current_backoff_multiplier: float = 1.0
    circuit_breaker_open: bool = False
    circuit_breaker_trips: int = 0


# ── classification ─────────────────────────────────────────────────────────


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _header(exc: BaseException, name: str) -> str | None:
    headers = getattr(exc, "headers", None)
    if headers is None:
        headers = getattr(getattr(exc, "response", None), "headers", None)
    if headers is None:
        return None
    try:
        return headers.get(name)
    except AttributeError:
        return None


def is_rate_limit_error(exc: BaseException) -> bool:
    """Return True when *exc* signals provider throttling.

    Typed errors expose ``rate_limited``; otherwise a 429, or a 403 that
    carries ``Retry-After`` or an exhausted ``X-RateLimit-Remaining``,
    qualifies. Unrecognised shapes fall back to message text.
    """
    flag = getattr(exc, "rate_limited", None)
    if isinstance(flag, bool):
        return flag

    status = _status_code(exc)
    if status in _RATE_LIMIT_STATUSES:
        return True
    if status == 403:
        if getattr(exc, "retry_after", None) is not None or _header(exc, "Retry-After"):
            return True
        return _header(exc, "X-RateLimit-Remaining") == "0"
    if status is not None:
        return False

    text = str(exc).lower()
    return any(marker in text for marker in _RATE_LIMIT_TEXT)


def retry_after_seconds(exc: BaseException, now: datetime | None = None) -> float | None:
    """Provider-supplied retry delay in seconds, or None.

    Accepts a numeric ``retry_after`` attribute or a ``Retry-After`` header in
    either delta-seconds or HTTP-date form.
    """
    value = getattr(exc, "retry_after", None)
    if isinstance(value, (int, float)):
        return max(float(value), 0.0)

    raw = value if isinstance(value, str) else _header(exc, "Retry-After")
    if not raw:
        return None
    raw = raw.strip()
    if raw.isdigit():
        return float(raw)
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


# ── limiter ────────────────────────────────────────────────────────────────


class AdaptiveRateLimiter:
    """Wrap remote calls with a token bucket, backoff, and a circuit breaker.

    The limiter never retries the wrapped call. After a rate-limit failure it
    sleeps the computed backoff and re-raises so the caller decides what to
    do next (the orchestrator blocks the job). Non-rate-limit errors pass
    through untouched.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or RateLimiterConfig()
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._bucket = TokenBucket(
            self._config.capacity, self._config.refill_rate, clock=clock
        )
        self._backoff_multiplier = 1.0
        self._consecutive_failures = 0
        self._open_until: float | None = None
        self._metrics = RateLimiterMetrics()

    # ── public ─────────────────────────────────────────────────────────────

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        self._bump(total_requests=1)

        wait = self._circuit_wait()
        if wait is not None:
            raise CircuitOpenError(wait)

        await self._acquire_token()

        try:
            result = await operation()
        except Exception as exc:
            if is_rate_limit_error(exc):
                await self._on_rate_limit(exc)
            else:
                self._bump(failed_requests=1)
            raise

        self._backoff_multiplier = 1.0
        self._consecutive_failures = 0
        self._bump(successful_requests=1)
        return result

    def calculate_backoff(self, exc: BaseException | None = None) -> float:
        """Seconds to wait after a rate-limit failure, before doubling."""
        if exc is not None:
            hinted = retry_after_seconds(exc)
            if hinted is not None:
                return hinted
        base = self._config.initial_backoff * self._backoff_multiplier
        spread = base * self._config.jitter
        return max(base + self._rng.uniform(-spread, spread), 0.0)

    @property
    def metrics(self) -> RateLimiterMetrics:
        return replace(
            self._metrics,
            current_backoff_multiplier=self._backoff_multiplier,
            circuit_breaker_open=self.circuit_open,
        )

    def reset_metrics(self) -> None:
        self._metrics = RateLimiterMetrics()

    @property
    def circuit_open(self) -> bool:
        return self._open_until is not None and self._clock() < self._open_until

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def backoff_multiplier(self) -> float:
        return self._backoff_multiplier

    def close_circuit_breaker(self) -> None:
        """Force the breaker closed and reset the failure streak."""
        self._open_until = None
        self._consecutive_failures = 0
        log.info("rate_limiter.circuit_closed", limiter=self.name, forced=True)

    @property
    def token_bucket_config(self) -> TokenBucketConfig:
        return self._bucket.config

    def set_refill_rate(self, refill_rate: float) -> None:
        self._bucket.set_refill_rate(refill_rate)

    def set_capacity(self, capacity: int) -> None:
        self._bucket.set_capacity(capacity)

    # ── internal ───────────────────────────────────────────────────────────

    def _bump(self, **deltas: int) -> None:
        self._metrics = replace(
            self._metrics,
            **{key: getattr(self._metrics, key) + value for key, value in deltas.items()},
        )

    def _circuit_wait(self) -> float | None:
        if self._open_until is None:
            return None
        remaining = self._open_until - self._clock()
        if remaining > 0:
            return remaining
        # Pause elapsed: close automatically.
        self._open_until = None
        self._consecutive_failures = 0
        log.info("rate_limiter.circuit_closed", limiter=self.name, forced=False)
        return None

    async def _acquire_token(self) -> None:
        if self._bucket.take(1):
            return
        wait_ms = self._bucket.time_until_next_token()
        await self._sleep(wait_ms / 1000)
        if not self._bucket.take(1):
            raise TokenUnavailableError(self._bucket.time_until_next_token())

    async def _on_rate_limit(self, exc: BaseException) -> None:
        self._consecutive_failures += 1
        self._bump(rate_limit_hits=1)

        backoff = self.calculate_backoff(exc)
        self._backoff_multiplier = min(
            self._backoff_multiplier * 2, self._config.max_backoff_multiplier
        )

        if self._consecutive_failures >= self._config.circuit_breaker_threshold:
            self._open_until = self._clock() + self._config.circuit_breaker_pause
            self._bump(circuit_breaker_trips=1)
            log.warning(
                "rate_limiter.circuit_open",
                limiter=self.name,
                consecutive_failures=self._consecutive_failures,
                pause_seconds=self._config.circuit_breaker_pause,
            )

        log.warning(
            "rate_limiter.backoff",
            limiter=self.name,
            backoff_seconds=round(backoff, 2),
            multiplier=self._backoff_multiplier,
            consecutive_failures=self._consecutive_failures,
        )
        await self._sleep(backoff)


class RateLimiterRegistry:
    """One limiter per external resource key (e.g. per installation).

    Owned by the application wiring and passed into orchestration calls, so
    one tenant's backoff or open breaker never throttles another tenant.
    """

    def __init__(
        self,
        config: RateLimiterConfig | None = None,
        factory: Callable[[str], AdaptiveRateLimiter] | None = None,
    ) -> None:
        self._config = config or RateLimiterConfig()
        self._factory = factory or (
            lambda key: AdaptiveRateLimiter(self._config, name=key)
        )
        self._limiters: dict[str, AdaptiveRateLimiter] = {}

    def get(self, key: object) -> AdaptiveRateLimiter:
        k = str(key)
        limiter = self._limiters.get(k)
        if limiter is None:
            limiter = self._factory(k)
            self._limiters[k] = limiter
        return limiter

    def discard(self, key: object) -> None:
        self._limiters.pop(str(key), None)

    def __contains__(self, key: object) -> bool:
        return str(key) in self._limiters

    def __len__(self) -> int:
        return len(self._limiters)
