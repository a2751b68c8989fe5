"""Pydantic domain models for rules, modes and their trigger/condition/action payloads.

Triggers, conditions and actions are tagged unions keyed on ``type``.  Every union
carries an ``unknown`` variant so that a persisted payload with an unrecognised type
still loads; the engines then handle it explicitly (never fires / evaluates false /
fails as an action) instead of crashing the pipeline.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from datetime import UTC, date, datetime, timedelta
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag

from .enums import (
    ActionType,
    ConditionType,
    DayOfWeek,
    ExecutionStatus,
    GroupTarget,
    LogicMode,
    ModeCommand,
    Operator,
    TimeUnit,
    TriggerType,
)

_HHMM = r"^([01]?[0-9]|2[0-3]):[0-5][0-9]$"


def utcnow() -> datetime:
    return datetime.now(UTC)


def _short_id() -> str:
    return uuid.uuid4().hex[:12]


def _tagged_by_type(known: frozenset[str]) -> Callable[[Any], str]:
    """Build a discriminator that routes unrecognised ``type`` values to ``unknown``."""

    def _discriminate(value: Any) -> str:
        raw = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
        tag = str(raw) if raw is not None else ""
        return tag if tag in known else "unknown"

    return _discriminate


class Duration(BaseModel):
    value: float = Field(gt=0)
    unit: TimeUnit = TimeUnit.minutes

    def to_timedelta(self) -> timedelta:
        if self.unit == TimeUnit.hours:
            return timedelta(hours=self.value)
        if self.unit == TimeUnit.minutes:
            return timedelta(minutes=self.value)
        return timedelta(seconds=self.value)

    @property
    def seconds(self) -> float:
        return self.to_timedelta().total_seconds()


# ---------------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------------


class _TriggerBase(BaseModel):
    id: str = Field(default_factory=_short_id)
    is_enabled: bool = True


class TimeTrigger(_TriggerBase):
    type: Literal["time"] = "time"
    at: str = Field(pattern=_HHMM)
    days: list[DayOfWeek] = Field(default_factory=list)


class DeviceStateTrigger(_TriggerBase):
    type: Literal["device_state"] = "device_state"
    device_id: uuid.UUID
    property: str = "power_state"
    operator: Operator = Operator.changes
    value: Any = None
    second_value: Any = None


class SensorValueTrigger(_TriggerBase):
    """Fires when a numeric/equality threshold is crossed between two states."""

    type: Literal["sensor_value"] = "sensor_value"
    device_id: uuid.UUID
    property: str
    operator: Operator = Operator.greater_than
    value: Any = None
    second_value: Any = None


class UserActionTrigger(_TriggerBase):
    type: Literal["user_action"] = "user_action"
    action: str = ""


class SystemEventTrigger(_TriggerBase):
    type: Literal["system_event"] = "system_event"
    event: str = ""


class WebhookTrigger(_TriggerBase):
    type: Literal["webhook"] = "webhook"
    token: str = ""


class LocationTrigger(_TriggerBase):
    type: Literal["location"] = "location"
    zone: str = ""
    event: Literal["enter", "exit"] = "enter"


class SunriseTrigger(_TriggerBase):
    type: Literal["sunrise"] = "sunrise"
    offset_minutes: int = 0


class SunsetTrigger(_TriggerBase):
    type: Literal["sunset"] = "sunset"
    offset_minutes: int = 0


class ManualTrigger(_TriggerBase):
    type: Literal["manual"] = "manual"


class UnknownTrigger(_TriggerBase):
    model_config = ConfigDict(extra="allow")

    type: str


Trigger = Annotated[
    Union[
        Annotated[TimeTrigger, Tag("time")],
        Annotated[DeviceStateTrigger, Tag("device_state")],
        Annotated[SensorValueTrigger, Tag("sensor_value")],
        Annotated[UserActionTrigger, Tag("user_action")],
        Annotated[SystemEventTrigger, Tag("system_event")],
        Annotated[WebhookTrigger, Tag("webhook")],
        Annotated[LocationTrigger, Tag("location")],
        Annotated[SunriseTrigger, Tag("sunrise")],
        Annotated[SunsetTrigger, Tag("sunset")],
        Annotated[ManualTrigger, Tag("manual")],
        Annotated[UnknownTrigger, Tag("unknown")],
    ],
    Discriminator(_tagged_by_type(frozenset(t.value for t in TriggerType))),
]

STATE_TRIGGERS = (DeviceStateTrigger, SensorValueTrigger)


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------


class _ConditionBase(BaseModel):
    id: str = Field(default_factory=_short_id)
    is_enabled: bool = True


class DeviceStateCondition(_ConditionBase):
    type: Literal["device_state"] = "device_state"
    device_id: uuid.UUID
    property: str = "power_state"
    operator: Operator = Operator.equals
    value: Any = None
    second_value: Any = None


class TimeRangeCondition(_ConditionBase):
    type: Literal["time_range"] = "time_range"
    start: str = Field(pattern=_HHMM)
    end: str = Field(pattern=_HHMM)


class DayOfWeekCondition(_ConditionBase):
    type: Literal["day_of_week"] = "day_of_week"
    days: list[DayOfWeek] = Field(default_factory=list)


class UserPresenceCondition(_ConditionBase):
    type: Literal["user_presence"] = "user_presence"
    user_id: str | None = None
    present: bool = True


class WeatherCondition(_ConditionBase):
    type: Literal["weather"] = "weather"
    property: str = "temperature"
    operator: Operator = Operator.equals
    value: Any = None
    second_value: Any = None


class SystemStateCondition(_ConditionBase):
    type: Literal["system_state"] = "system_state"
    key: str
    operator: Operator = Operator.equals
    value: Any = None
    second_value: Any = None


class EnergyPriceCondition(_ConditionBase):
    type: Literal["energy_price"] = "energy_price"
    operator: Operator = Operator.less_than
    value: Any = None
    second_value: Any = None


class CustomCondition(_ConditionBase):
    """Named predicate registered on the condition evaluator."""

    type: Literal["custom"] = "custom"
    predicate: str
    params: dict[str, Any] = Field(default_factory=dict)


class UnknownCondition(_ConditionBase):
    model_config = ConfigDict(extra="allow")

    type: str


Condition = Annotated[
    Union[
        Annotated[DeviceStateCondition, Tag("device_state")],
        Annotated[TimeRangeCondition, Tag("time_range")],
        Annotated[DayOfWeekCondition, Tag("day_of_week")],
        Annotated[UserPresenceCondition, Tag("user_presence")],
        Annotated[WeatherCondition, Tag("weather")],
        Annotated[SystemStateCondition, Tag("system_state")],
        Annotated[EnergyPriceCondition, Tag("energy_price")],
        Annotated[CustomCondition, Tag("custom")],
        Annotated[UnknownCondition, Tag("unknown")],
    ],
    Discriminator(_tagged_by_type(frozenset(c.value for c in ConditionType))),
]


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class _ActionBase(BaseModel):
    id: str = Field(default_factory=_short_id)
    order: int = 1
    is_enabled: bool = True
    continue_on_error: bool = False


class DeviceControlAction(_ActionBase):
    type: Literal["device_control"] = "device_control"
    device_id: uuid.UUID
    action: str
    settings: dict[str, Any] = Field(default_factory=dict)


class GroupSequence(BaseModel):
    enabled: bool = False
    interval_ms: int | None = Field(default=None, ge=0)


class GroupControlAction(_ActionBase):
    type: Literal["group_control"] = "group_control"
    group_id: uuid.UUID
    action: str
    target: GroupTarget = GroupTarget.all
    device_ids: list[uuid.UUID] = Field(default_factory=list)
    random_count: int | None = Field(default=None, ge=1)
    settings: dict[str, Any] = Field(default_factory=dict)
    sequence: GroupSequence = Field(default_factory=GroupSequence)


class ModeActivationAction(_ActionBase):
    type: Literal["mode_activation"] = "mode_activation"
    mode_id: uuid.UUID
    action: ModeCommand = ModeCommand.activate
    duration: Duration | None = None


class NotificationAction(_ActionBase):
    type: Literal["notification"] = "notification"
    title: str
    message: str
    channels: list[str] = Field(default_factory=lambda: ["push"])


class WebhookAction(_ActionBase):
    type: Literal["webhook"] = "webhook"
    url: str
    method: Literal["GET", "POST", "PUT", "DELETE"] = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    payload: dict[str, Any] | None = None


class DelayAction(_ActionBase):
    type: Literal["delay"] = "delay"
    duration: Duration


class SceneActivationAction(_ActionBase):
    type: Literal["scene_activation"] = "scene_activation"
    scene_id: str


class UnknownAction(_ActionBase):
    model_config = ConfigDict(extra="allow")

    type: str


Action = Annotated[
    Union[
        Annotated[DeviceControlAction, Tag("device_control")],
        Annotated[GroupControlAction, Tag("group_control")],
        Annotated[ModeActivationAction, Tag("mode_activation")],
        Annotated[NotificationAction, Tag("notification")],
        Annotated[WebhookAction, Tag("webhook")],
        Annotated[DelayAction, Tag("delay")],
        Annotated[SceneActivationAction, Tag("scene_activation")],
        Annotated[UnknownAction, Tag("unknown")],
    ],
    Discriminator(_tagged_by_type(frozenset(a.value for a in ActionType))),
]


# ---------------------------------------------------------------------------
# Statistics and execution log
# ---------------------------------------------------------------------------


class AutomationStatistics(BaseModel):
    """Running counters for an automation.

    ``execution_count`` always equals ``success_count + failure_count``; a partial
    run counts as a failure.
    """

    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    last_executed: datetime | None = None
    average_execution_ms: float = 0.0
    executions_today: int = 0
    last_reset_date: date | None = None

    def roll_over(self, today: date) -> bool:
        """Reset the daily counter the first time a new calendar day is seen."""
        if self.last_reset_date is None or self.last_reset_date < today:
            self.executions_today = 0
            self.last_reset_date = today
            return True
        return False

    def record(self, *, success: bool, duration_ms: float, at: datetime) -> None:
        self.roll_over(at.date())
        self.execution_count += 1
        if success:
            self.success_count += 1
        else:
            self.failure_count += 1
        n = self.execution_count
        self.average_execution_ms = (self.average_execution_ms * (n - 1) + duration_ms) / n
        self.last_executed = at
        self.executions_today += 1


class ExecutionLogEntry(BaseModel):
    timestamp: datetime
    status: ExecutionStatus
    duration_ms: float
    triggered_by: str
    error: str | None = None
    actions_succeeded: int = 0
    actions_failed: int = 0


# ---------------------------------------------------------------------------
# Automations
# ---------------------------------------------------------------------------


class Automation(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    owner_id: uuid.UUID
    name: str = Field(min_length=1, max_length=100)
    description: str = ""
    is_active: bool = False
    priority: int = Field(default=5, ge=1, le=10)
    actions: list[Action] = Field(default_factory=list)
    statistics: AutomationStatistics = Field(default_factory=AutomationStatistics)
    execution_log: list[ExecutionLogEntry] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def ordered_actions(self) -> list[Action]:
        # sorted() is stable, so equal orders keep their original position
        return sorted(self.actions, key=lambda action: action.order)

    def append_log(self, entry: ExecutionLogEntry, *, capacity: int = 100) -> None:
        self.execution_log.append(entry)
        overflow = len(self.execution_log) - capacity
        if overflow > 0:
            del self.execution_log[:overflow]

    def record_run(
        self,
        *,
        status: ExecutionStatus,
        duration_ms: float,
        triggered_by: str,
        at: datetime,
        error: str | None = None,
        actions_succeeded: int = 0,
        actions_failed: int = 0,
        capacity: int = 100,
    ) -> ExecutionLogEntry:
        """Fold one finished run into the statistics and the bounded execution log."""
        self.statistics.record(
            success=status == ExecutionStatus.success, duration_ms=duration_ms, at=at
        )
        entry = ExecutionLogEntry(
            timestamp=at,
            status=status,
            duration_ms=duration_ms,
            triggered_by=triggered_by,
            error=error,
            actions_succeeded=actions_succeeded,
            actions_failed=actions_failed,
        )
        self.append_log(entry, capacity=capacity)
        self.updated_at = at
        return entry


class RuleSettings(BaseModel):
    trigger_logic: LogicMode = LogicMode.any
    condition_logic: LogicMode = LogicMode.all
    cooldown_period_seconds: int = Field(default=0, ge=0)
    max_executions_per_day: int = Field(default=100, ge=1)


class Rule(Automation):
    is_active: bool = True
    triggers: list[Trigger] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    settings: RuleSettings = Field(default_factory=RuleSettings)

    def enabled_triggers(self) -> list[Trigger]:
        return [trigger for trigger in self.triggers if trigger.is_enabled]

    def enabled_conditions(self) -> list[Condition]:
        return [condition for condition in self.conditions if condition.is_enabled]


class DeviceSnapshot(BaseModel):
    device_id: uuid.UUID
    power_state: str | None = None
    settings: dict[str, Any] = Field(default_factory=dict)


class ModeSettings(BaseModel):
    restore_on_exit: bool = False
    previous_state: list[DeviceSnapshot] | None = None


class AutoActivation(BaseModel):
    enabled: bool = False
    triggers: list[Trigger] = Field(default_factory=list)


class Mode(Automation):
    settings: ModeSettings = Field(default_factory=ModeSettings)
    auto_activate: AutoActivation = Field(default_factory=AutoActivation)
    scheduled_deactivation: datetime | None = None
    activated_at: datetime | None = None
    deactivated_at: datetime | None = None
    activation_count: int = 0

    def auto_triggers(self) -> list[Trigger]:
        if not self.auto_activate.enabled:
            return []
        return [trigger for trigger in self.auto_activate.triggers if trigger.is_enabled]


class Group(BaseModel):
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    owner_id: uuid.UUID
    name: str
    device_ids: list[uuid.UUID] = Field(default_factory=list)


__all__ = [
    "STATE_TRIGGERS",
    "Action",
    "AutoActivation",
    "Automation",
    "AutomationStatistics",
    "Condition",
    "CustomCondition",
    "DayOfWeekCondition",
    "DelayAction",
    "DeviceControlAction",
    "DeviceSnapshot",
    "DeviceStateCondition",
    "DeviceStateTrigger",
    "Duration",
    "EnergyPriceCondition",
    "ExecutionLogEntry",
    "Group",
    "GroupControlAction",
    "GroupSequence",
    "LocationTrigger",
    "ManualTrigger",
    "Mode",
    "ModeActivationAction",
    "ModeSettings",
    "NotificationAction",
    "Rule",
    "RuleSettings",
    "SceneActivationAction",
    "SensorValueTrigger",
    "SunriseTrigger",
    "SunsetTrigger",
    "SystemEventTrigger",
    "SystemStateCondition",
    "TimeRangeCondition",
    "TimeTrigger",
    "Trigger",
    "UnknownAction",
    "UnknownCondition",
    "UnknownTrigger",
    "UserActionTrigger",
    "UserPresenceCondition",
    "WeatherCondition",
    "WebhookAction",
    "WebhookTrigger",
    "utcnow",
]
