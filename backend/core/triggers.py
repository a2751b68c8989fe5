"""Trigger matching for device-state events, clock ticks and test mocks."""

from __future__ import annotations

import uuid
from collections.abc import Mapping, Sequence
from datetime import UTC, datetime, tzinfo
from typing import Any

from backend.core.comparison import (
    crossed,
    minutes_since_midnight,
    resolve_path,
    strict_equals,
    transition_matches,
)
from backend.models.automation import (
    STATE_TRIGGERS,
    DeviceStateTrigger,
    LocationTrigger,
    SensorValueTrigger,
    SystemEventTrigger,
    TimeTrigger,
    Trigger,
    UnknownTrigger,
    UserActionTrigger,
)
from backend.models.enums import LogicMode
from backend.models.schemas import MockTrigger, TriggerOutcome

_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class TriggerMatcher:
    """Decide whether an automation's triggers fire.

    Only ``device_state`` / ``sensor_value`` triggers react to device events and only
    ``time`` triggers react to clock ticks.  The remaining kinds (sunrise, webhook,
    location, ...) are reported by callers and are matched only against test mocks.
    """

    def __init__(self, *, tz: tzinfo = UTC) -> None:
        self._tz = tz

    # ------------------------------------------------------------------
    # Device events
    # ------------------------------------------------------------------

    @staticmethod
    def references_device(triggers: Sequence[Trigger], device_id: uuid.UUID) -> bool:
        return any(
            isinstance(trigger, STATE_TRIGGERS) and trigger.device_id == device_id
            for trigger in triggers
            if trigger.is_enabled
        )

    @staticmethod
    def match_state_change(
        trigger: Trigger,
        device_id: uuid.UUID,
        old_state: Mapping[str, Any] | None,
        new_state: Mapping[str, Any] | None,
    ) -> bool:
        if not isinstance(trigger, STATE_TRIGGERS) or trigger.device_id != device_id:
            return False
        old = resolve_path(old_state, trigger.property)
        new = resolve_path(new_state, trigger.property)
        if isinstance(trigger, SensorValueTrigger):
            return crossed(trigger.operator, old, new, trigger.value, trigger.second_value)
        return transition_matches(trigger.operator, old, new, trigger.value, trigger.second_value)

    def fires_on_state_change(
        self,
        triggers: Sequence[Trigger],
        logic: LogicMode,
        device_id: uuid.UUID,
        old_state: Mapping[str, Any] | None,
        new_state: Mapping[str, Any] | None,
    ) -> bool:
        """One decision per automation per event, combined by ``logic``."""
        enabled = [trigger for trigger in triggers if trigger.is_enabled]
        if not enabled:
            return False
        results = [
            self.match_state_change(trigger, device_id, old_state, new_state) for trigger in enabled
        ]
        return all(results) if logic == LogicMode.all else any(results)

    # ------------------------------------------------------------------
    # Clock ticks
    # ------------------------------------------------------------------

    def match_tick(self, trigger: Trigger, now: datetime) -> bool:
        if not isinstance(trigger, TimeTrigger):
            return False
        local = now.astimezone(self._tz)
        if minutes_since_midnight(trigger.at) != local.hour * 60 + local.minute:
            return False
        return not trigger.days or _WEEKDAYS[local.weekday()] in trigger.days

    def fires_on_tick(self, triggers: Sequence[Trigger], logic: LogicMode, now: datetime) -> bool:
        enabled = [trigger for trigger in triggers if trigger.is_enabled]
        if not enabled:
            return False
        results = [self.match_tick(trigger, now) for trigger in enabled]
        return all(results) if logic == LogicMode.all else any(results)

    # ------------------------------------------------------------------
    # Test mocks
    # ------------------------------------------------------------------

    def match_mock(self, trigger: Trigger, mock: MockTrigger) -> bool:
        """Match a trigger against a caller-supplied mock event of the same type."""
        if isinstance(trigger, UnknownTrigger) or trigger.type != mock.type:
            return False
        data = mock.data

        if isinstance(trigger, (DeviceStateTrigger, SensorValueTrigger)):
            raw_device = data.get("device_id")
            if raw_device is None:
                return False
            try:
                device_id = uuid.UUID(str(raw_device))
            except ValueError:
                return False
            return self.match_state_change(
                trigger, device_id, data.get("old_state"), data.get("new_state")
            )

        if isinstance(trigger, TimeTrigger):
            raw_now = data.get("now")
            if raw_now is None:
                return True
            try:
                now = datetime.fromisoformat(str(raw_now))
            except ValueError:
                return False
            if now.tzinfo is None:
                now = now.replace(tzinfo=self._tz)
            return self.match_tick(trigger, now)

        if isinstance(trigger, UserActionTrigger) and "action" in data:
            return strict_equals(data["action"], trigger.action)
        if isinstance(trigger, SystemEventTrigger) and "event" in data:
            return strict_equals(data["event"], trigger.event)
        if isinstance(trigger, LocationTrigger):
            if "zone" in data and not strict_equals(data["zone"], trigger.zone):
                return False
            return "event" not in data or strict_equals(data["event"], trigger.event)
        return True

    def evaluate_mock(
        self, triggers: Sequence[Trigger], logic: LogicMode, mock: MockTrigger | None
    ) -> tuple[bool, list[TriggerOutcome]]:
        """Report per-trigger matches for ``testRule``.

        Without a mock nothing is evaluated and the triggers count as met.
        """
        enabled = [trigger for trigger in triggers if trigger.is_enabled]
        if mock is None:
            outcomes = [
                TriggerOutcome(id=trigger.id, type=trigger.type, evaluated=False, matched=True)
                for trigger in enabled
            ]
            return True, outcomes

        outcomes = [
            TriggerOutcome(
                id=trigger.id,
                type=trigger.type,
                evaluated=True,
                matched=self.match_mock(trigger, mock),
            )
            for trigger in enabled
        ]
        if not outcomes:
            return False, outcomes
        results = [outcome.matched for outcome in outcomes]
        return (all(results) if logic == LogicMode.all else any(results)), outcomes


__all__ = ["TriggerMatcher"]
