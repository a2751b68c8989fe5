"""Tests for backend.core.governor: activity, cooldown and daily limit admission."""

from __future__ import annotations

import uuid
from datetime import UTC, date, datetime, timedelta

import pytest

from backend.core.exceptions import RateLimitedError
from backend.core.governor import COOLDOWN, DAILY_LIMIT, INACTIVE, ExecutionGovernor
from backend.core.registry import ActiveAutomationRegistry
from backend.models.automation import Rule, RuleSettings
from backend.models.enums import AutomationKind

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


def _rule(**settings: int) -> Rule:
    return Rule(owner_id=uuid.uuid4(), name="rule", settings=RuleSettings(**settings))


@pytest.fixture()
def registry() -> ActiveAutomationRegistry:
    return ActiveAutomationRegistry()


@pytest.fixture()
def governor(registry: ActiveAutomationRegistry) -> ExecutionGovernor:
    return ExecutionGovernor(registry)


class TestAdmission:
    def test_fresh_rule_is_allowed(self, governor: ExecutionGovernor) -> None:
        assert governor.check(_rule(), now=NOW).allowed

    def test_inactive_rule_is_refused_even_when_forced(self, governor: ExecutionGovernor) -> None:
        rule = _rule()
        rule.is_active = False
        admission = governor.check(rule, now=NOW, force=True)
        assert not admission.allowed
        assert admission.reason == INACTIVE

    def test_inactive_is_not_rate_limited(self, governor: ExecutionGovernor) -> None:
        rule = _rule()
        rule.is_active = False
        assert governor.enforce(rule, now=NOW).reason == INACTIVE


class TestCooldown:
    def test_rejects_inside_window(
        self, governor: ExecutionGovernor, registry: ActiveAutomationRegistry
    ) -> None:
        rule = _rule(cooldown_period_seconds=60)
        registry.record_execution(rule.id, AutomationKind.rule, rule.owner_id, NOW)
        admission = governor.check(rule, now=NOW + timedelta(seconds=59))
        assert admission.reason == COOLDOWN
        assert admission.retry_after_seconds == 1

    def test_allows_at_window_end(
        self, governor: ExecutionGovernor, registry: ActiveAutomationRegistry
    ) -> None:
        rule = _rule(cooldown_period_seconds=60)
        registry.record_execution(rule.id, AutomationKind.rule, rule.owner_id, NOW)
        assert governor.check(rule, now=NOW + timedelta(seconds=60)).allowed

    def test_force_bypasses(
        self, governor: ExecutionGovernor, registry: ActiveAutomationRegistry
    ) -> None:
        rule = _rule(cooldown_period_seconds=60)
        registry.record_execution(rule.id, AutomationKind.rule, rule.owner_id, NOW)
        assert governor.check(rule, now=NOW, force=True).allowed

    def test_enforce_raises(
        self, governor: ExecutionGovernor, registry: ActiveAutomationRegistry
    ) -> None:
        rule = _rule(cooldown_period_seconds=300)
        registry.record_execution(rule.id, AutomationKind.rule, rule.owner_id, NOW)
        with pytest.raises(RateLimitedError) as exc_info:
            governor.enforce(rule, now=NOW + timedelta(seconds=100))
        assert exc_info.value.reason == COOLDOWN
        assert exc_info.value.retry_after_seconds == 200
        assert exc_info.value.status_code == 429


class TestDailyLimit:
    def test_limit_reached_today(self, governor: ExecutionGovernor) -> None:
        rule = _rule(max_executions_per_day=2)
        rule.statistics.executions_today = 2
        rule.statistics.last_reset_date = NOW.date()
        admission = governor.check(rule, now=NOW)
        assert admission.reason == DAILY_LIMIT
        # retry at local midnight
        assert admission.retry_after_seconds == 12 * 3600

    def test_counter_from_yesterday_does_not_count(self, governor: ExecutionGovernor) -> None:
        rule = _rule(max_executions_per_day=2)
        rule.statistics.executions_today = 2
        rule.statistics.last_reset_date = date(2026, 3, 1)
        assert governor.check(rule, now=NOW).allowed
