"""Tests for the pure sync policy (no DB required)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from gitpulse.engines.sync_policy import (
    InstallationState,
    SyncPolicyConfig,
    calculate_sync_since,
    can_start,
    evaluate,
    reason_to_user_message,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def _state(**overrides) -> InstallationState:
    values = {
        "last_synced_at": NOW - timedelta(hours=1),
        "rate_limit_remaining": 4000,
        "rate_limit_reset": NOW + timedelta(minutes=30),
    }
    values.update(overrides)
    return InstallationState(**values)


class TestEvaluate:
    def test_start_when_ready(self):
        decision = evaluate(_state(), "manual", NOW)
        assert decision.action == "start"
        assert decision.reason == "ready"
        assert can_start(decision)

    def test_active_job_skips(self):
        decision = evaluate(_state(has_active_job=True), "cron", NOW)
        assert (decision.action, decision.reason) == ("skip", "already_syncing")

    def test_active_job_checked_before_cooldown(self):
        state = _state(has_active_job=True, last_manual_sync_at=NOW - timedelta(seconds=10))
        assert evaluate(state, "manual", NOW).reason == "already_syncing"

    def test_manual_cooldown_reports_remaining_ms(self):
        state = _state(last_manual_sync_at=NOW - timedelta(minutes=2))
        decision = evaluate(state, "manual", NOW)
        assert (decision.action, decision.reason) == ("skip", "cooldown_active")
        assert decision.cooldown_ms == 3 * 60 * 1000

    def test_cooldown_only_applies_to_manual(self):
        state = _state(last_manual_sync_at=NOW - timedelta(minutes=2))
        assert evaluate(state, "webhook", NOW).action == "start"

    def test_cooldown_expired(self):
        state = _state(last_manual_sync_at=NOW - timedelta(minutes=5))
        assert evaluate(state, "manual", NOW).action == "start"

    def test_stale_installation_bypasses_cooldown(self):
        state = _state(
            last_manual_sync_at=NOW - timedelta(minutes=1),
            last_synced_at=NOW - timedelta(hours=49),
        )
        assert evaluate(state, "manual", NOW).action == "start"

    def test_low_budget_blocks_until_reset(self):
        reset = NOW + timedelta(minutes=20)
        decision = evaluate(_state(rate_limit_remaining=50, rate_limit_reset=reset), "manual", NOW)
        assert (decision.action, decision.reason) == ("block", "rate_limited")
        assert decision.blocked_until == reset
        assert decision.metadata["available_budget"] == 50

    def test_low_budget_with_past_reset_starts(self):
        state = _state(rate_limit_remaining=0, rate_limit_reset=NOW - timedelta(seconds=1))
        assert evaluate(state, "manual", NOW).action == "start"

    def test_cron_reserves_webhook_budget(self):
        state = _state(rate_limit_remaining=550)
        assert evaluate(state, "manual", NOW).action == "start"
        decision = evaluate(state, "cron", NOW)
        assert decision.action == "block"
        assert decision.metadata["required_budget"] == 600

    def test_unknown_budget_counts_as_full(self):
        state = _state(rate_limit_remaining=None, rate_limit_reset=None)
        assert evaluate(state, "cron", NOW).action == "start"

    def test_no_user(self):
        assert evaluate(_state(has_user=False), "manual", NOW).reason == "no_user"

    def test_no_repositories(self):
        assert evaluate(_state(repository_count=0), "manual", NOW).reason == "no_repositories"

    def test_custom_thresholds(self):
        config = SyncPolicyConfig(manual_cooldown=timedelta(hours=1), min_budget=10)
        state = _state(last_manual_sync_at=NOW - timedelta(minutes=30), rate_limit_remaining=20)
        decision = evaluate(state, "manual", NOW, config)
        assert decision.cooldown_ms == 30 * 60 * 1000
        assert evaluate(state, "webhook", NOW, config).action == "start"

    def test_is_pure(self):
        state = _state(last_manual_sync_at=NOW - timedelta(minutes=1))
        assert evaluate(state, "manual", NOW) == evaluate(state, "manual", NOW)


class TestHelpers:
    @pytest.mark.parametrize(
        ("reason", "metadata", "expected"),
        [
            ("ready", None, "Sync started"),
            ("cooldown_active", {"cooldown_ms": 61_000}, "Please wait 2 minutes before syncing again"),
            ("cooldown_active", {"cooldown_ms": 1_000}, "Please wait 1 minute before syncing again"),
            ("rate_limited", None, "GitHub API rate limit reached. Please try again later."),
            ("already_syncing", None, "A sync is already in progress"),
        ],
    )
    def test_reason_messages(self, reason, metadata, expected):
        assert reason_to_user_message(reason, metadata) == expected

    def test_sync_since_overlaps_previous_window(self):
        last = NOW - timedelta(hours=5)
        assert calculate_sync_since(last, NOW) == last - timedelta(hours=1)

    def test_sync_since_defaults_to_thirty_days(self):
        assert calculate_sync_since(None, NOW) == NOW - timedelta(days=30)
