"""Admission control for rule executions: activity, cooldown and daily limit."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta, tzinfo

from backend.core.exceptions import RateLimitedError
from backend.core.registry import ActiveAutomationRegistry
from backend.models.automation import Rule

logger = logging.getLogger(__name__)

INACTIVE = "inactive"
RUNNING = "running"
COOLDOWN = "cooldown"
DAILY_LIMIT = "daily_limit"

RATE_LIMIT_REASONS = frozenset({COOLDOWN, DAILY_LIMIT})


@dataclass(slots=True)
class Admission:
    allowed: bool
    reason: str | None = None
    message: str | None = None
    retry_after_seconds: int | None = None


class ExecutionGovernor:
    """Decide whether a rule may run now.

    Reentrancy is the registry lock's job, not the governor's.  Cooldown is read from
    the registry (seeded from ``statistics.last_executed`` on rehydrate), so bursts are
    rejected without touching storage.  The daily counter is read as it would be after
    a calendar roll-over in the configured timezone.
    """

    def __init__(self, registry: ActiveAutomationRegistry, *, tz: tzinfo = UTC) -> None:
        self._registry = registry
        self._tz = tz

    def check(self, rule: Rule, *, now: datetime, force: bool = False) -> Admission:
        if not rule.is_active:
            return Admission(False, INACTIVE, "Rule is not active")
        if force:
            return Admission(True)

        cooldown = rule.settings.cooldown_period_seconds
        last = self._registry.last_executed(rule.id)
        if cooldown > 0 and last is not None:
            ready_at = last + timedelta(seconds=cooldown)
            if now < ready_at:
                remaining = math.ceil((ready_at - now).total_seconds())
                return Admission(
                    False,
                    COOLDOWN,
                    f"Rule is in cooldown for another {remaining}s",
                    retry_after_seconds=remaining,
                )

        local = now.astimezone(self._tz)
        stats = rule.statistics
        today_count = (
            stats.executions_today
            if stats.last_reset_date is not None and stats.last_reset_date >= local.date()
            else 0
        )
        if today_count >= rule.settings.max_executions_per_day:
            midnight = datetime.combine(
                local.date() + timedelta(days=1), datetime.min.time(), local.tzinfo
            )
            return Admission(
                False,
                DAILY_LIMIT,
                f"Daily execution limit of {rule.settings.max_executions_per_day} reached",
                retry_after_seconds=math.ceil((midnight - local).total_seconds()),
            )
        return Admission(True)

    def enforce(self, rule: Rule, *, now: datetime, force: bool = False) -> Admission:
        """Like ``check`` but raise ``RateLimitedError`` for cooldown / daily limit."""
        admission = self.check(rule, now=now, force=force)
        if admission.reason in RATE_LIMIT_REASONS:
            logger.info(
                "Rule %s rate limited: %s",
                rule.id,
                admission.message,
                extra={"rule_id": str(rule.id), "reason": admission.reason},
            )
            raise RateLimitedError(
                admission.message or "Rate limited",
                reason=admission.reason or COOLDOWN,
                retry_after_seconds=admission.retry_after_seconds,
            )
        return admission


__all__ = [
    "COOLDOWN",
    "DAILY_LIMIT",
    "INACTIVE",
    "RATE_LIMIT_REASONS",
    "RUNNING",
    "Admission",
    "ExecutionGovernor",
]
