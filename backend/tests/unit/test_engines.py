"""Tests for backend.core.engines: wiring, startup and shutdown of the engine container."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from backend.core.engines import TIME_TICK_JOB_ID, AutomationEngines
from backend.models.automation import DeviceControlAction, DeviceStateTrigger, TimeTrigger
from backend.models.enums import AutomationKind, Operator
from backend.models.schemas import ModeCreate, RuleCreate
from backend.tests.fakes import FakeDeviceProxy, FakeScheduler, InMemoryAutomationStore


async def test_startup_schedules_tick(
    engines: AutomationEngines, scheduler: FakeScheduler
) -> None:
    await engines.startup(tick_seconds=60)
    assert TIME_TICK_JOB_ID in scheduler.jobs
    await engines.shutdown()
    assert TIME_TICK_JOB_ID not in scheduler.jobs


async def test_startup_without_tick(engines: AutomationEngines, scheduler: FakeScheduler) -> None:
    await engines.startup()
    assert scheduler.job_count == 0


async def test_startup_rehydrates_stored_rules(
    engines: AutomationEngines,
    store: InMemoryAutomationStore,
    owner_id: uuid.UUID,
    device: uuid.UUID,
) -> None:
    rule = await engines.rules.create_rule(
        owner_id,
        RuleCreate(
            name="Morning",
            triggers=[TimeTrigger(at="07:00")],
            actions=[DeviceControlAction(device_id=device, action="turn_on")],
        ),
    )
    engines.registry.shutdown()
    assert engines.registry.tracked(AutomationKind.rule) == []

    await engines.startup()
    assert [rt.automation_id for rt in engines.registry.tracked(AutomationKind.rule)] == [rule.id]


async def test_device_event_reaches_rules_and_modes(
    engines: AutomationEngines,
    store: InMemoryAutomationStore,
    proxy: FakeDeviceProxy,
    owner_id: uuid.UUID,
    device: uuid.UUID,
) -> None:
    trigger = DeviceStateTrigger(device_id=device, operator=Operator.changes_to, value="on")
    rule = await engines.rules.create_rule(
        owner_id,
        RuleCreate(
            name="Echo",
            triggers=[trigger],
            actions=[DeviceControlAction(device_id=device, action="turn_off")],
        ),
    )
    mode = await engines.modes.create_mode(
        owner_id,
        ModeCreate.model_validate(
            {
                "name": "Follow",
                "actions": [
                    {"type": "device_control", "device_id": str(device), "action": "turn_on"}
                ],
                "auto_activate": {"enabled": True, "triggers": [trigger.model_dump()]},
            }
        ),
    )

    result = engines.handle_device_state_change(
        device, {"power_state": "off"}, {"power_state": "on"}
    )
    assert result.device_id == device
    assert result.rules == [rule.id]
    assert result.modes == [mode.id]

    await engines.drain()
    assert store.rules[rule.id].statistics.execution_count == 1
    assert store.modes[mode.id].is_active


async def test_unrelated_event_dispatches_nothing(
    engines: AutomationEngines, owner_id: uuid.UUID, device: uuid.UUID
) -> None:
    result = engines.handle_device_state_change(
        uuid.uuid4(), {"power_state": "off"}, {"power_state": "on"}
    )
    assert result.rules == [] and result.modes == []


async def test_time_tick_uses_clock_when_no_time_given(
    engines: AutomationEngines,
    store: InMemoryAutomationStore,
    owner_id: uuid.UUID,
    device: uuid.UUID,
) -> None:
    # the fixture clock reads 12:00 UTC
    rule = await engines.rules.create_rule(
        owner_id,
        RuleCreate(
            name="Noon",
            triggers=[TimeTrigger(at="12:00")],
            actions=[DeviceControlAction(device_id=device, action="turn_on")],
        ),
    )
    await engines.handle_time_tick()
    await engines.drain()
    assert store.rules[rule.id].statistics.execution_count == 1

    await engines.handle_time_tick(datetime(2026, 3, 2, 12, 1, tzinfo=UTC))
    await engines.drain()
    assert store.rules[rule.id].statistics.execution_count == 1
