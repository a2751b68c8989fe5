"""Pydantic schemas for HomeFlow requests and engine results."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, computed_field

from .automation import (
    Action,
    AutoActivation,
    AutomationStatistics,
    Condition,
    Duration,
    Mode,
    RuleSettings,
    Trigger,
)
from .enums import ExecutionStatus, ModeCommand

# ---------------------------------------------------------------------------
# Rule / mode CRUD
# ---------------------------------------------------------------------------


class RuleCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    is_active: bool = True
    priority: int = Field(default=5, ge=1, le=10)
    triggers: list[Trigger] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)
    settings: RuleSettings = Field(default_factory=RuleSettings)


class RuleUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    is_active: bool | None = None
    priority: int | None = Field(default=None, ge=1, le=10)
    triggers: list[Trigger] | None = None
    conditions: list[Condition] | None = None
    actions: list[Action] | None = None
    settings: RuleSettings | None = None


class ModeSettingsIn(BaseModel):
    restore_on_exit: bool = False


class ModeCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    priority: int = Field(default=5, ge=1, le=10)
    actions: list[Action] = Field(default_factory=list)
    settings: ModeSettingsIn = Field(default_factory=ModeSettingsIn)
    auto_activate: AutoActivation = Field(default_factory=AutoActivation)


class ModeUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    priority: int | None = Field(default=None, ge=1, le=10)
    actions: list[Action] | None = None
    settings: ModeSettingsIn | None = None
    auto_activate: AutoActivation | None = None


# ---------------------------------------------------------------------------
# Engine requests
# ---------------------------------------------------------------------------


class ExecuteRuleRequest(BaseModel):
    force: bool = False
    skip_conditions: bool = False
    context: dict[str, Any] = Field(default_factory=dict)


class MockTrigger(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)


class MockConditionResult(BaseModel):
    id: str
    result: bool


class RuleTestRequest(BaseModel):
    mock_trigger: MockTrigger | None = None
    mock_conditions: list[MockConditionResult] = Field(default_factory=list)
    context: dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = True


class ActivateModeRequest(BaseModel):
    force: bool = False
    duration: Duration | None = None
    overrides: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Action id -> settings merged over that action's settings for this run",
    )


class DeviceStateChangeEvent(BaseModel):
    device_id: uuid.UUID
    old_state: dict[str, Any] = Field(default_factory=dict)
    new_state: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class ConditionOutcome(BaseModel):
    id: str
    type: str
    result: bool
    mocked: bool = False


class TriggerOutcome(BaseModel):
    id: str
    type: str
    evaluated: bool
    matched: bool


class DeviceOutcome(BaseModel):
    device_id: uuid.UUID
    success: bool
    error: str | None = None


class GroupControlReport(BaseModel):
    group_id: uuid.UUID
    succeeded: list[uuid.UUID] = Field(default_factory=list)
    failed: list[DeviceOutcome] = Field(default_factory=list)

    @property
    def device_count(self) -> int:
        return len(self.succeeded) + len(self.failed)


class RestorationReport(BaseModel):
    restored: list[uuid.UUID] = Field(default_factory=list)
    failed: list[DeviceOutcome] = Field(default_factory=list)


class ActionOutcome(BaseModel):
    action_id: str
    type: str
    success: bool
    error: str | None = None
    group: GroupControlReport | None = None
    detail: dict[str, Any] = Field(default_factory=dict)


class ExecutionReport(BaseModel):
    """Ordered outcomes of one pass over an automation's actions."""

    outcomes: list[ActionOutcome] = Field(default_factory=list)
    aborted: bool = False

    @computed_field  # type: ignore[prop-decorator]
    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if not outcome.success)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> ExecutionStatus:
        if self.failed == 0:
            return ExecutionStatus.success
        if self.succeeded > 0:
            return ExecutionStatus.partial
        return ExecutionStatus.failure

    @property
    def first_error(self) -> str | None:
        for outcome in self.outcomes:
            if not outcome.success:
                return outcome.error
        return None


class RuleExecutionResult(BaseModel):
    rule_id: uuid.UUID
    executed: bool
    reason: str | None = None
    triggered_by: str
    duration_ms: float = 0.0
    conditions_passed: bool | None = None
    conditions: list[ConditionOutcome] = Field(default_factory=list)
    execution: ExecutionReport | None = None
    statistics: AutomationStatistics | None = None


class ActionPreview(BaseModel):
    action_id: str
    type: str
    order: int
    is_enabled: bool
    would_execute: bool


class RuleTestResult(BaseModel):
    rule_id: uuid.UUID
    dry_run: bool = True
    triggers: list[TriggerOutcome] = Field(default_factory=list)
    triggers_matched: bool
    conditions: list[ConditionOutcome] = Field(default_factory=list)
    conditions_passed: bool
    actions: list[ActionPreview] = Field(default_factory=list)
    would_execute: bool
    blocked_by: str | None = None
    execution: ExecutionReport | None = None


class ModeActivationResult(BaseModel):
    mode_id: uuid.UUID
    command: ModeCommand = ModeCommand.activate
    execution: ExecutionReport
    deactivated_modes: list[uuid.UUID] = Field(default_factory=list)
    snapshot_size: int = 0
    scheduled_deactivation: datetime | None = None
    mode: Mode


class ModeDeactivationResult(BaseModel):
    mode_id: uuid.UUID
    command: ModeCommand = ModeCommand.deactivate
    restoration: RestorationReport | None = None
    mode: Mode


class DispatchResult(BaseModel):
    device_id: uuid.UUID
    rules: list[uuid.UUID] = Field(default_factory=list)
    modes: list[uuid.UUID] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Owner-level statistics
# ---------------------------------------------------------------------------


class ExecutionTotals(BaseModel):
    """Execution counters summed over a set of automations."""

    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 0.0
    average_execution_ms: float = 0.0

    @staticmethod
    def totals(statistics: Iterable[AutomationStatistics]) -> dict[str, Any]:
        executions = successes = failures = 0
        weighted_ms = 0.0
        for stats in statistics:
            executions += stats.execution_count
            successes += stats.success_count
            failures += stats.failure_count
            weighted_ms += stats.average_execution_ms * stats.execution_count
        return {
            "total_executions": executions,
            "successful_executions": successes,
            "failed_executions": failures,
            "success_rate": round(successes / executions, 4) if executions else 0.0,
            "average_execution_ms": round(weighted_ms / executions, 2) if executions else 0.0,
        }


class RuleStatistics(ExecutionTotals):
    total_rules: int = 0
    active_rules: int = 0


class ModeStatistics(ExecutionTotals):
    total_modes: int = 0
    active_modes: int = 0
    auto_activate_modes: int = 0
    total_activations: int = 0


__all__ = [
    "ActionOutcome",
    "ActionPreview",
    "ActivateModeRequest",
    "ConditionOutcome",
    "DeviceOutcome",
    "DeviceStateChangeEvent",
    "DispatchResult",
    "ExecuteRuleRequest",
    "ExecutionReport",
    "ExecutionTotals",
    "GroupControlReport",
    "MockConditionResult",
    "MockTrigger",
    "ModeActivationResult",
    "ModeCreate",
    "ModeDeactivationResult",
    "ModeSettingsIn",
    "ModeStatistics",
    "ModeUpdate",
    "RestorationReport",
    "RuleCreate",
    "RuleExecutionResult",
    "RuleStatistics",
    "RuleTestRequest",
    "RuleTestResult",
    "RuleUpdate",
    "TriggerOutcome",
]
