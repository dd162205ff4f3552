"""Sync policy engine: pure start / skip / block decisions."""

from gitpulse.engines.sync_policy.policy import (
    DEFAULT_POLICY,
    TRIGGERS,
    InstallationState,
    SyncDecision,
    SyncPolicyConfig,
    SyncTrigger,
    calculate_sync_since,
    can_start,
    evaluate,
    is_stale,
    reason_to_user_message,
)

__all__ = [
    "DEFAULT_POLICY",
    "TRIGGERS",
    "InstallationState",
    "SyncDecision",
    "SyncPolicyConfig",
    "SyncTrigger",
    "calculate_sync_since",
    "can_start",
    "evaluate",
    "is_stale",
    "reason_to_user_message",
]
