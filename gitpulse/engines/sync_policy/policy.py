"""Sync decision policy: installation state + trigger -> start / skip / block.

Everything here is pure. ``evaluate`` depends only on its arguments, so
callers (the sync command, the status projector, the maintenance sweeps)
can share it without coordinating.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from gitpulse.core.config import env_float, env_int

SyncTrigger = Literal["manual", "cron", "webhook", "maintenance", "recovery"]
SyncAction = Literal["start", "skip", "block"]
SyncReason = Literal[
    "ready",
    "no_user",
    "no_repositories",
    "already_syncing",
    "cooldown_active",
    "rate_limited",
]

TRIGGERS: tuple[str, ...] = ("manual", "cron", "webhook", "maintenance", "recovery")

DEFAULT_BUDGET = 5000
DEFAULT_SINCE_DAYS = 30


@dataclass(frozen=True)
class SyncPolicyConfig:
    manual_cooldown: timedelta = timedelta(minutes=5)
    min_budget: int = 100
    webhook_budget_reserve: int = 500
    stale_bypass: timedelta = timedelta(hours=48)

    @classmethod
    def from_env(cls) -> SyncPolicyConfig:
        d = cls()
        return cls(
            manual_cooldown=timedelta(
                seconds=env_float(
                    "MANUAL_COOLDOWN_SECONDS", d.manual_cooldown.total_seconds()
                )
            ),
            min_budget=env_int("MIN_SYNC_BUDGET", d.min_budget),
            webhook_budget_reserve=env_int("WEBHOOK_BUDGET_RESERVE", d.webhook_budget_reserve),
            stale_bypass=timedelta(
                hours=env_float("STALE_BYPASS_HOURS", d.stale_bypass.total_seconds() / 3600)
            ),
        )


DEFAULT_POLICY = SyncPolicyConfig()


@dataclass(frozen=True)
class InstallationState:
    """The subset of installation + job state the policy looks at."""

    has_active_job: bool = False
    has_user: bool = True
    repository_count: int = 1
    last_synced_at: datetime | None = None
    last_manual_sync_at: datetime | None = None
    rate_limit_remaining: int | None = None
    rate_limit_reset: datetime | None = None


@dataclass(frozen=True)
class SyncDecision:
    action: SyncAction
    reason: SyncReason
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def cooldown_ms(self) -> int | None:
        return self.metadata.get("cooldown_ms")

    @property
    def blocked_until(self) -> datetime | None:
        return self.metadata.get("blocked_until")


def evaluate(
    state: InstallationState,
    trigger: SyncTrigger,
    now: datetime,
    config: SyncPolicyConfig = DEFAULT_POLICY,
) -> SyncDecision:
    """Decide whether a sync for *state* may start at *now*.

    Checks run in order: linked user, repositories, active job, manual
    cooldown (bypassed for stale installations), remaining budget.
    """
    if not state.has_user:
        return SyncDecision("skip", "no_user")
    if state.repository_count <= 0:
        return SyncDecision("skip", "no_repositories")

    if state.has_active_job:
        return SyncDecision("skip", "already_syncing")

    if trigger == "manual":
        decision = _evaluate_cooldown(state, now, config)
        if decision is not None:
            return decision

    decision = _evaluate_budget(state, trigger, now, config)
    if decision is not None:
        return decision

    return SyncDecision("start", "ready")


def _evaluate_cooldown(
    state: InstallationState, now: datetime, config: SyncPolicyConfig
) -> SyncDecision | None:
    if state.last_manual_sync_at is None:
        return None
    remaining = state.last_manual_sync_at + config.manual_cooldown - now
    if remaining <= timedelta(0):
        return None
    if is_stale(state, now, config):
        return None
    return SyncDecision(
        "skip",
        "cooldown_active",
        {"cooldown_ms": math.ceil(remaining.total_seconds() * 1000)},
    )


def _evaluate_budget(
    state: InstallationState, trigger: str, now: datetime, config: SyncPolicyConfig
) -> SyncDecision | None:
    available = DEFAULT_BUDGET if state.rate_limit_remaining is None else state.rate_limit_remaining
    required = config.min_budget
    if trigger == "cron":
        required += config.webhook_budget_reserve
    if available >= required:
        return None
    # A reset in the past means the provider has refilled the budget.
    if state.rate_limit_reset is not None and state.rate_limit_reset <= now:
        return None
    return SyncDecision(
        "block",
        "rate_limited",
        {
            "blocked_until": state.rate_limit_reset,
            "required_budget": required,
            "available_budget": available,
        },
    )


def is_stale(
    state: InstallationState, now: datetime, config: SyncPolicyConfig = DEFAULT_POLICY
) -> bool:
    """Never synced, or last synced longer ago than the stale-bypass window."""
    if state.last_synced_at is None:
        return True
    return now - state.last_synced_at > config.stale_bypass


def can_start(decision: SyncDecision) -> bool:
    return decision.action == "start"


def reason_to_user_message(reason: str, metadata: dict[str, Any] | None = None) -> str:
    """Fixed, user-safe message for a decision reason."""
    if reason == "ready":
        return "Sync started"
    if reason == "no_user":
        return "Installation not configured"
    if reason == "no_repositories":
        return "No repositories selected for sync"
    if reason == "cooldown_active":
        cooldown_ms = (metadata or {}).get("cooldown_ms")
        mins = math.ceil(cooldown_ms / 60_000) if cooldown_ms else 5
        return f"Please wait {mins} minute{'' if mins == 1 else 's'} before syncing again"
    if reason == "rate_limited":
        return "GitHub API rate limit reached. Please try again later."
    if reason == "already_syncing":
        return "A sync is already in progress"
    return "Sync could not be started"


def calculate_sync_since(
    last_synced_at: datetime | None,
    now: datetime,
    overlap: timedelta = timedelta(hours=1),
) -> datetime:
    """Start of the next sync window, overlapping the previous one."""
    if last_synced_at is not None:
        return last_synced_at - overlap
    return now - timedelta(days=DEFAULT_SINCE_DAYS)
