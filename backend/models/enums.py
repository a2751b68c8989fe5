"""Domain enums for HomeFlow automations."""

from enum import StrEnum


class AutomationKind(StrEnum):
    rule = "rule"
    mode = "mode"


class TriggerType(StrEnum):
    time = "time"
    device_state = "device_state"
    sensor_value = "sensor_value"
    user_action = "user_action"
    system_event = "system_event"
    webhook = "webhook"
    location = "location"
    sunrise = "sunrise"
    sunset = "sunset"
    manual = "manual"


class ConditionType(StrEnum):
    device_state = "device_state"
    time_range = "time_range"
    day_of_week = "day_of_week"
    user_presence = "user_presence"
    weather = "weather"
    system_state = "system_state"
    energy_price = "energy_price"
    custom = "custom"


class ActionType(StrEnum):
    device_control = "device_control"
    group_control = "group_control"
    mode_activation = "mode_activation"
    notification = "notification"
    webhook = "webhook"
    delay = "delay"
    scene_activation = "scene_activation"


class Operator(StrEnum):
    equals = "equals"
    not_equals = "not_equals"
    greater_than = "greater_than"
    less_than = "less_than"
    between = "between"
    changes = "changes"
    changes_to = "changes_to"
    changes_from = "changes_from"


EDGE_OPERATORS = frozenset({Operator.changes, Operator.changes_to, Operator.changes_from})


class LogicMode(StrEnum):
    any = "any"
    all = "all"


class DayOfWeek(StrEnum):
    monday = "monday"
    tuesday = "tuesday"
    wednesday = "wednesday"
    thursday = "thursday"
    friday = "friday"
    saturday = "saturday"
    sunday = "sunday"


class TimeUnit(StrEnum):
    seconds = "seconds"
    minutes = "minutes"
    hours = "hours"


class GroupTarget(StrEnum):
    all = "all"
    specific = "specific"
    random = "random"


class ModeCommand(StrEnum):
    activate = "activate"
    deactivate = "deactivate"
    toggle = "toggle"


class PowerState(StrEnum):
    on = "on"
    off = "off"


class ExecutionStatus(StrEnum):
    success = "success"
    partial = "partial"
    failure = "failure"


class TriggeredBy(StrEnum):
    manual = "manual"
    device_state_change = "device_state_change"
    schedule = "schedule"
    mode_action = "mode_action"
    auto_activation = "auto_activation"
    webhook = "webhook"
