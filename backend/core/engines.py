"""Wiring for the rule and mode engines.

``build_engines`` constructs every engine component around one shared registry so the
rule engine, the mode engine and the action executor agree on locks, cooldowns and
pending deactivations.  The API layer holds the resulting ``AutomationEngines``.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo

from backend.config import Settings
from backend.core.actions import ActionExecutor
from backend.core.conditions import ConditionEvaluator
from backend.core.governor import ExecutionGovernor
from backend.core.mode_engine import ModeEngine
from backend.core.registry import ActiveAutomationRegistry
from backend.core.rule_engine import RuleEngine
from backend.core.scheduler import ScheduledTask, TaskScheduler
from backend.core.triggers import TriggerMatcher
from backend.core.validation import ReferenceValidator
from backend.integrations.device_proxy import DeviceProxy
from backend.models.automation import utcnow
from backend.models.repository import AutomationStore
from backend.models.schemas import DispatchResult
from backend.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

TIME_TICK_JOB_ID = "automation_time_tick"


@dataclass(slots=True)
class AutomationEngines:
    """Container for the engines sharing one registry."""

    rules: RuleEngine
    modes: ModeEngine
    registry: ActiveAutomationRegistry
    evaluator: ConditionEvaluator
    scheduler: TaskScheduler
    clock: Callable[[], datetime] = utcnow
    tick_job: ScheduledTask | None = None

    async def startup(self, *, tick_seconds: int | None = None) -> None:
        """Rebuild the registry from storage and start the clock tick."""
        rules = await self.rules.rehydrate()
        modes = await self.modes.rehydrate()
        if tick_seconds:
            self.tick_job = self.scheduler.schedule_interval(
                self.handle_time_tick,
                seconds=tick_seconds,
                job_id=TIME_TICK_JOB_ID,
                name="Automation Time Tick",
            )
        logger.info("Automation engines started: %d rule(s), %d active mode(s)", rules, modes)

    def handle_device_state_change(
        self,
        device_id: uuid.UUID,
        old_state: Mapping[str, Any] | None,
        new_state: Mapping[str, Any] | None,
    ) -> DispatchResult:
        return DispatchResult(
            device_id=device_id,
            rules=self.rules.handle_device_state_change(device_id, old_state, new_state),
            modes=self.modes.handle_device_state_change(device_id, old_state, new_state),
        )

    async def handle_time_tick(self, now: datetime | None = None) -> None:
        now = now or self.clock()
        fired = self.rules.handle_time_tick(now) + self.modes.handle_time_tick(now)
        if fired:
            logger.info("Time tick %s fired %d automation(s)", now.isoformat(), len(fired))

    async def drain(self) -> None:
        await asyncio.gather(self.rules.drain(), self.modes.drain())

    async def shutdown(self) -> None:
        """Stop the tick, wait for in-flight executions and drop every pending timer."""
        if self.tick_job is not None:
            self.tick_job.cancel()
            self.tick_job = None
        await self.drain()
        self.registry.shutdown()


def build_engines(
    store: AutomationStore,
    proxy: DeviceProxy,
    notifications: NotificationService,
    scheduler: TaskScheduler,
    settings: Settings,
    *,
    clock: Callable[[], datetime] = utcnow,
    rng: random.Random | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> AutomationEngines:
    tz = ZoneInfo(settings.timezone)
    registry = ActiveAutomationRegistry()
    validator = ReferenceValidator(store)
    matcher = TriggerMatcher(tz=tz)
    evaluator = ConditionEvaluator(proxy, tz=tz, clock=clock)
    executor = ActionExecutor(
        proxy,
        store,
        notifications,
        group_sequence_interval_ms=settings.group_sequence_interval_ms,
        rng=rng,
        sleep=sleep,
    )
    rules = RuleEngine(
        store,
        registry,
        evaluator,
        matcher,
        ExecutionGovernor(registry, tz=tz),
        executor,
        validator=validator,
        clock=clock,
        tz=tz,
        log_capacity=settings.execution_log_capacity,
    )
    modes = ModeEngine(
        store,
        registry,
        executor,
        scheduler,
        proxy,
        matcher,
        validator=validator,
        clock=clock,
        tz=tz,
        log_capacity=settings.execution_log_capacity,
        high_priority_threshold=settings.high_priority_threshold,
    )
    executor.bind_mode_engine(modes)
    return AutomationEngines(
        rules=rules,
        modes=modes,
        registry=registry,
        evaluator=evaluator,
        scheduler=scheduler,
        clock=clock,
    )


__all__ = ["TIME_TICK_JOB_ID", "AutomationEngines", "build_engines"]
