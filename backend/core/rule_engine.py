"""Rule engine for HomeFlow.

Orchestrates one rule execution as
``admission -> condition evaluation -> action execution -> recording`` and dispatches
device-state events and clock ticks to the rules whose triggers fire.  Event-driven
executions run as background tasks so a slow rule never delays matching for others.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Coroutine, Mapping
from datetime import UTC, datetime, tzinfo
from typing import Any

from backend.core.actions import ActionExecutor
from backend.core.conditions import ConditionEvaluator
from backend.core.exceptions import (
    AutomationError,
    ConflictError,
    NotFoundError,
    RateLimitedError,
)
from backend.core.governor import RUNNING, ExecutionGovernor
from backend.core.registry import ActiveAutomationRegistry
from backend.core.triggers import TriggerMatcher
from backend.core.validation import ReferenceValidator
from backend.models.automation import Rule, utcnow
from backend.models.enums import AutomationKind, TriggeredBy
from backend.models.repository import AutomationStore
from backend.models.schemas import (
    ActionPreview,
    ConditionOutcome,
    RuleCreate,
    RuleExecutionResult,
    RuleStatistics,
    RuleTestRequest,
    RuleTestResult,
    RuleUpdate,
)

logger = logging.getLogger(__name__)


class RuleEngine:
    """Create, execute and dispatch rules."""

    def __init__(
        self,
        store: AutomationStore,
        registry: ActiveAutomationRegistry,
        evaluator: ConditionEvaluator,
        matcher: TriggerMatcher,
        governor: ExecutionGovernor,
        executor: ActionExecutor,
        *,
        validator: ReferenceValidator | None = None,
        clock: Callable[[], datetime] = utcnow,
        tz: tzinfo = UTC,
        log_capacity: int = 100,
    ) -> None:
        self._store = store
        self._registry = registry
        self._evaluator = evaluator
        self._matcher = matcher
        self._governor = governor
        self._executor = executor
        self._validator = validator or ReferenceValidator(store)
        self._clock = clock
        self._tz = tz
        self._log_capacity = log_capacity
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_rule(self, owner_id: uuid.UUID, payload: RuleCreate) -> Rule:
        if await self._store.find_rule_by_name(owner_id, payload.name) is not None:
            raise ConflictError(f"A rule named '{payload.name}' already exists")
        await self._validator.validate(
            owner_id,
            triggers=payload.triggers,
            conditions=payload.conditions,
            actions=payload.actions,
        )
        now = self._now()
        rule = Rule(owner_id=owner_id, created_at=now, updated_at=now, **dict(payload))
        await self._store.save_rule(rule)
        if rule.is_active:
            self._track(rule)
        logger.info(
            "Rule created: %s (%s)", rule.name, rule.id, extra={"owner_id": str(owner_id)}
        )
        return rule

    async def update_rule(
        self, rule_id: uuid.UUID, owner_id: uuid.UUID, payload: RuleUpdate
    ) -> Rule:
        await self._load(rule_id, owner_id)
        async with self._registry.claim(rule_id, AutomationKind.rule, owner_id):
            rule = await self._load(rule_id, owner_id)
            changes = {name: getattr(payload, name) for name in payload.model_fields_set}
            if changes.get("name") not in (None, rule.name):
                existing = await self._store.find_rule_by_name(owner_id, changes["name"])
                if existing is not None and existing.id != rule.id:
                    raise ConflictError(f"A rule named '{changes['name']}' already exists")
            changes = {key: value for key, value in changes.items() if value is not None}
            updated = rule.model_copy(update={**changes, "updated_at": self._now()})
            await self._validator.validate(
                owner_id,
                triggers=updated.triggers,
                conditions=updated.conditions,
                actions=updated.actions,
            )
            await self._store.save_rule(updated)

        if updated.is_active:
            self._track(updated)
        else:
            self._registry.untrack(updated.id)
        logger.info("Rule updated: %s (%s)", updated.name, updated.id)
        return updated

    async def delete_rule(self, rule_id: uuid.UUID, owner_id: uuid.UUID) -> None:
        await self._load(rule_id, owner_id)
        async with self._registry.claim(rule_id, AutomationKind.rule, owner_id):
            await self._store.delete_rule(rule_id)
        self._registry.forget(rule_id)
        logger.info("Rule deleted: %s", rule_id)

    async def get_rule(self, rule_id: uuid.UUID, owner_id: uuid.UUID) -> Rule:
        return await self._load(rule_id, owner_id)

    async def list_rules(self, owner_id: uuid.UUID) -> list[Rule]:
        return await self._store.list_rules(owner_id)

    async def get_statistics(self, owner_id: uuid.UUID) -> RuleStatistics:
        """Counters summed over every rule the owner has."""
        rules = await self._store.list_rules(owner_id)
        return RuleStatistics(
            total_rules=len(rules),
            active_rules=sum(1 for rule in rules if rule.is_active),
            **RuleStatistics.totals(rule.statistics for rule in rules),
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_rule(
        self,
        rule_id: uuid.UUID,
        owner_id: uuid.UUID,
        *,
        force: bool = False,
        skip_conditions: bool = False,
        context: Mapping[str, Any] | None = None,
        triggered_by: str = TriggeredBy.manual,
    ) -> RuleExecutionResult:
        """Run a rule once.

        Raises:
            NotFoundError: If the rule does not exist or belongs to someone else.
            RateLimitedError: On cooldown or daily limit (unless ``force``).
        """
        await self._load(rule_id, owner_id)
        if self._registry.is_running(rule_id):
            logger.info("Rule %s already executing; rejected", rule_id)
            return RuleExecutionResult(
                rule_id=rule_id,
                executed=False,
                reason="Rule is already executing",
                triggered_by=triggered_by,
            )

        async with self._registry.claim(rule_id, AutomationKind.rule, owner_id):
            # reload under the lock so statistics are never written from a stale copy
            rule = await self._load(rule_id, owner_id)
            return await self._run(
                rule,
                force=force,
                skip_conditions=skip_conditions,
                context=context or {},
                triggered_by=triggered_by,
            )

    async def _run(
        self,
        rule: Rule,
        *,
        force: bool,
        skip_conditions: bool,
        context: Mapping[str, Any],
        triggered_by: str,
    ) -> RuleExecutionResult:
        admission = self._governor.enforce(rule, now=self._clock(), force=force)
        if not admission.allowed:
            logger.info("Rule %s not executed: %s", rule.id, admission.message)
            return RuleExecutionResult(
                rule_id=rule.id,
                executed=False,
                reason=admission.message,
                triggered_by=triggered_by,
            )

        conditions_passed: bool | None = None
        outcomes: list[ConditionOutcome] = []
        if not skip_conditions:
            conditions_passed, outcomes = await self._evaluator.evaluate_all(
                rule.conditions, rule.settings.condition_logic, context
            )
            if not conditions_passed:
                logger.info("Rule %s conditions not met", rule.id)
                return RuleExecutionResult(
                    rule_id=rule.id,
                    executed=False,
                    reason="Conditions not met",
                    triggered_by=triggered_by,
                    conditions_passed=False,
                    conditions=outcomes,
                )

        started = time.perf_counter()
        report = await self._executor.run_sequence(rule.actions, rule.owner_id, context)
        duration_ms = (time.perf_counter() - started) * 1000
        finished = self._now()

        rule.record_run(
            status=report.status,
            duration_ms=duration_ms,
            triggered_by=triggered_by,
            at=finished,
            error=report.first_error,
            actions_succeeded=report.succeeded,
            actions_failed=report.failed,
            capacity=self._log_capacity,
        )
        self._registry.record_execution(rule.id, AutomationKind.rule, rule.owner_id, finished)
        await self._store.save_rule(rule)

        logger.info(
            "Rule %s executed: %s in %.1fms",
            rule.id,
            report.status.value,
            duration_ms,
            extra={
                "rule_id": str(rule.id),
                "triggered_by": str(triggered_by),
                "actions_failed": report.failed,
            },
        )
        return RuleExecutionResult(
            rule_id=rule.id,
            executed=True,
            triggered_by=triggered_by,
            duration_ms=duration_ms,
            conditions_passed=conditions_passed,
            conditions=outcomes,
            execution=report,
            statistics=rule.statistics,
        )

    async def test_rule(
        self, rule_id: uuid.UUID, owner_id: uuid.UUID, request: RuleTestRequest
    ) -> RuleTestResult:
        """Evaluate a rule against mock data without touching its state.

        With ``dry_run=False`` the actions are actually applied when the rule would
        execute, but statistics, the execution log and cooldown stay untouched.
        """
        rule = await self._load(rule_id, owner_id)

        admission = self._governor.check(rule, now=self._clock())
        blocked_by = None if admission.allowed else admission.reason
        if blocked_by is None and self._registry.is_running(rule.id):
            blocked_by = RUNNING

        triggers_matched, trigger_outcomes = self._matcher.evaluate_mock(
            rule.triggers, rule.settings.trigger_logic, request.mock_trigger
        )
        conditions_passed, condition_outcomes = await self._evaluator.evaluate_all(
            rule.conditions,
            rule.settings.condition_logic,
            request.context,
            overrides={mock.id: mock.result for mock in request.mock_conditions},
        )
        would_execute = triggers_matched and conditions_passed and blocked_by is None

        previews = [
            ActionPreview(
                action_id=action.id,
                type=action.type,
                order=action.order,
                is_enabled=action.is_enabled,
                would_execute=would_execute and action.is_enabled,
            )
            for action in rule.ordered_actions()
        ]

        execution = None
        if would_execute and not request.dry_run:
            execution = await self._executor.run_sequence(
                rule.actions, rule.owner_id, request.context
            )

        logger.info(
            "Rule %s tested: would_execute=%s blocked_by=%s", rule.id, would_execute, blocked_by
        )
        return RuleTestResult(
            rule_id=rule.id,
            dry_run=request.dry_run,
            triggers=trigger_outcomes,
            triggers_matched=triggers_matched,
            conditions=condition_outcomes,
            conditions_passed=conditions_passed,
            actions=previews,
            would_execute=would_execute,
            blocked_by=blocked_by,
            execution=execution,
        )

    # ------------------------------------------------------------------
    # Event and tick dispatch
    # ------------------------------------------------------------------

    def handle_device_state_change(
        self,
        device_id: uuid.UUID,
        old_state: Mapping[str, Any] | None,
        new_state: Mapping[str, Any] | None,
    ) -> list[uuid.UUID]:
        """Schedule one execution per tracked rule whose triggers fire; returns their ids."""
        context = {
            "event": {
                "device_id": str(device_id),
                "old_state": dict(old_state or {}),
                "new_state": dict(new_state or {}),
            }
        }
        dispatched: list[uuid.UUID] = []
        for runtime in self._registry.tracked(AutomationKind.rule):
            if not self._matcher.fires_on_state_change(
                runtime.triggers, runtime.trigger_logic, device_id, old_state, new_state
            ):
                continue
            dispatched.append(runtime.automation_id)
            self._spawn(
                self._execute_in_background(
                    runtime.automation_id,
                    runtime.owner_id,
                    context,
                    TriggeredBy.device_state_change,
                )
            )
        if dispatched:
            logger.info("Device %s state change dispatched %d rule(s)", device_id, len(dispatched))
        return dispatched

    def handle_time_tick(self, now: datetime | None = None) -> list[uuid.UUID]:
        """Fire rules whose time triggers match this minute, at most once per minute."""
        now = now or self._clock()
        minute = now.replace(second=0, microsecond=0)
        dispatched: list[uuid.UUID] = []
        for runtime in self._registry.tracked(AutomationKind.rule):
            if runtime.last_fired_minute == minute:
                continue
            if not self._matcher.fires_on_tick(runtime.triggers, runtime.trigger_logic, now):
                continue
            runtime.last_fired_minute = minute
            dispatched.append(runtime.automation_id)
            self._spawn(
                self._execute_in_background(
                    runtime.automation_id,
                    runtime.owner_id,
                    {"tick": now.isoformat()},
                    TriggeredBy.schedule,
                )
            )
        return dispatched

    async def _execute_in_background(
        self,
        rule_id: uuid.UUID,
        owner_id: uuid.UUID,
        context: Mapping[str, Any],
        triggered_by: str,
    ) -> None:
        try:
            await self.execute_rule(rule_id, owner_id, context=context, triggered_by=triggered_by)
        except RateLimitedError as exc:
            logger.info("Rule %s skipped (%s): %s", rule_id, exc.reason, exc.message)
        except NotFoundError:
            logger.warning("Rule %s vanished; removing from registry", rule_id)
            self._registry.forget(rule_id)
        except AutomationError as exc:
            logger.warning("Rule %s not executed: %s", rule_id, exc.message)
        except Exception:
            logger.exception("Background execution of rule %s failed", rule_id)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Registry lifecycle
    # ------------------------------------------------------------------

    async def rehydrate(self) -> int:
        """Register every persisted active rule and seed its cooldown timestamp."""
        rules = await self._store.list_active_rules()
        for rule in rules:
            self._track(rule)
            if rule.statistics.last_executed is not None:
                self._registry.record_execution(
                    rule.id, AutomationKind.rule, rule.owner_id, rule.statistics.last_executed
                )
        logger.info("Rehydrated %d active rule(s)", len(rules))
        return len(rules)

    async def drain(self) -> None:
        """Wait for dispatched background executions to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _track(self, rule: Rule) -> None:
        self._registry.track(
            rule.id, AutomationKind.rule, rule.owner_id, rule.triggers, rule.settings.trigger_logic
        )

    async def _load(self, rule_id: uuid.UUID, owner_id: uuid.UUID) -> Rule:
        rule = await self._store.get_rule(rule_id, owner_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found", rule_id=str(rule_id))
        return rule

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)


__all__ = ["RuleEngine"]
