"""Integration tests for the SQLAlchemy automation store (SQLite via aiosqlite)."""

from __future__ import annotations

import random
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from backend.config import Settings
from backend.core.engines import build_engines
from backend.core.exceptions import ConflictError
from backend.models.automation import (
    DeviceControlAction,
    DeviceSnapshot,
    Duration,
    Mode,
    ModeSettings,
    Rule,
    TimeTrigger,
)
from backend.models.database import AsyncEngineManager, DeviceRecord, GroupRecord
from backend.models.repository import AutomationStore, SQLAlchemyAutomationStore
from backend.models.schemas import ModeCreate
from backend.services.notification_service import NotificationService
from backend.tests.fakes import FakeDeviceProxy, FakeScheduler, FixedClock

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
async def manager(tmp_path: Path) -> AsyncGenerator[AsyncEngineManager]:
    mgr = AsyncEngineManager(f"sqlite+aiosqlite:///{tmp_path}/homeflow.db")
    await mgr.create_all()
    yield mgr
    await mgr.dispose()


@pytest.fixture()
def sql_store(manager: AsyncEngineManager) -> SQLAlchemyAutomationStore:
    return SQLAlchemyAutomationStore(manager.session_factory)


async def _add_device(manager: AsyncEngineManager, owner_id: uuid.UUID) -> uuid.UUID:
    device_id = uuid.uuid4()
    async with manager.session_factory() as session:
        session.add(DeviceRecord(id=device_id, owner_id=owner_id, name="lamp"))
        await session.commit()
    return device_id


# ===================================================================
# Rules
# ===================================================================


class TestRules:
    async def test_round_trip_keeps_typed_parts(
        self, sql_store: SQLAlchemyAutomationStore, owner_id: uuid.UUID
    ) -> None:
        device_id = uuid.uuid4()
        rule = Rule(
            owner_id=owner_id,
            name="Morning",
            triggers=[TimeTrigger(at="07:00", days=["monday"])],
            actions=[DeviceControlAction(device_id=device_id, action="turn_on")],
        )
        await sql_store.save_rule(rule)

        loaded = await sql_store.get_rule(rule.id, owner_id)
        assert loaded == rule
        assert isinstance(loaded.triggers[0], TimeTrigger)
        assert await sql_store.get_rule(rule.id, uuid.uuid4()) is None
        assert (await sql_store.find_rule_by_name(owner_id, "Morning")).id == rule.id

    async def test_update_and_list(
        self, sql_store: SQLAlchemyAutomationStore, owner_id: uuid.UUID
    ) -> None:
        second = Rule(owner_id=owner_id, name="b-rule")
        first = Rule(owner_id=owner_id, name="a-rule")
        await sql_store.save_rule(second)
        await sql_store.save_rule(first)

        first.is_active = False
        await sql_store.save_rule(first)

        assert [rule.name for rule in await sql_store.list_rules(owner_id)] == [
            "a-rule",
            "b-rule",
        ]
        assert [rule.id for rule in await sql_store.list_active_rules()] == [second.id]

        await sql_store.delete_rule(second.id)
        assert await sql_store.get_rule(second.id) is None

    async def test_duplicate_name_conflicts(
        self, sql_store: SQLAlchemyAutomationStore, owner_id: uuid.UUID
    ) -> None:
        await sql_store.save_rule(Rule(owner_id=owner_id, name="Morning"))
        with pytest.raises(ConflictError):
            await sql_store.save_rule(Rule(owner_id=owner_id, name="Morning"))
        # the name is only unique per owner
        await sql_store.save_rule(Rule(owner_id=uuid.uuid4(), name="Morning"))
        assert len(await sql_store.list_rules(owner_id)) == 1


# ===================================================================
# Modes
# ===================================================================


class TestModes:
    async def test_filters_and_priority_order(
        self, sql_store: SQLAlchemyAutomationStore, owner_id: uuid.UUID
    ) -> None:
        low = Mode(owner_id=owner_id, name="low", priority=2, is_active=True)
        high = Mode(owner_id=owner_id, name="high", priority=9, is_active=True)
        idle = Mode(owner_id=owner_id, name="idle", priority=5)
        for mode in (low, high, idle):
            await sql_store.save_mode(mode)

        assert [m.name for m in await sql_store.list_modes(owner_id)] == ["high", "idle", "low"]
        active = await sql_store.list_modes(owner_id, active=True)
        assert [m.name for m in active] == ["high", "low"]
        assert await sql_store.list_modes(uuid.uuid4()) == []

    async def test_bulk_deactivate_rewrites_documents(
        self, sql_store: SQLAlchemyAutomationStore, owner_id: uuid.UUID
    ) -> None:
        keep = Mode(owner_id=owner_id, name="keep", is_active=True)
        other = Mode(
            owner_id=owner_id,
            name="other",
            is_active=True,
            settings=ModeSettings(
                restore_on_exit=True,
                previous_state=[DeviceSnapshot(device_id=uuid.uuid4(), power_state="on")],
            ),
        )
        neighbour = Mode(owner_id=uuid.uuid4(), name="neighbour", is_active=True)
        for mode in (keep, other, neighbour):
            await sql_store.save_mode(mode)

        touched = await sql_store.deactivate_modes(owner_id, exclude_id=keep.id, at=NOW)
        assert touched == 1

        reloaded = await sql_store.get_mode(other.id)
        assert not reloaded.is_active
        assert reloaded.deactivated_at == NOW
        assert reloaded.settings.previous_state is None
        assert (await sql_store.get_mode(keep.id)).is_active
        assert (await sql_store.get_mode(neighbour.id)).is_active

    async def test_duplicate_name_conflicts(
        self, sql_store: SQLAlchemyAutomationStore, owner_id: uuid.UUID
    ) -> None:
        await sql_store.save_mode(Mode(owner_id=owner_id, name="Away"))
        with pytest.raises(ConflictError):
            await sql_store.save_mode(Mode(owner_id=owner_id, name="Away", priority=9))
        assert [mode.priority for mode in await sql_store.list_modes(owner_id)] == [5]


# ===================================================================
# Devices / groups
# ===================================================================


class TestOwnership:
    async def test_device_owned(
        self,
        manager: AsyncEngineManager,
        sql_store: SQLAlchemyAutomationStore,
        owner_id: uuid.UUID,
    ) -> None:
        device_id = await _add_device(manager, owner_id)
        assert await sql_store.device_owned(device_id, owner_id)
        assert not await sql_store.device_owned(device_id, uuid.uuid4())

    async def test_get_group(
        self,
        manager: AsyncEngineManager,
        sql_store: SQLAlchemyAutomationStore,
        owner_id: uuid.UUID,
    ) -> None:
        members = [uuid.uuid4(), uuid.uuid4()]
        group_id = uuid.uuid4()
        async with manager.session_factory() as session:
            session.add(
                GroupRecord(
                    id=group_id,
                    owner_id=owner_id,
                    name="Downstairs",
                    device_ids=[str(member) for member in members],
                )
            )
            await session.commit()

        group = await sql_store.get_group(group_id, owner_id)
        assert group is not None
        assert group.device_ids == members
        assert await sql_store.get_group(group_id, uuid.uuid4()) is None

    def test_satisfies_protocol(self, sql_store: SQLAlchemyAutomationStore) -> None:
        assert isinstance(sql_store, AutomationStore)


# ===================================================================
# Engines over the SQL store
# ===================================================================


async def test_mode_timer_survives_restart(
    manager: AsyncEngineManager, sql_store: SQLAlchemyAutomationStore, owner_id: uuid.UUID
) -> None:
    device_id = await _add_device(manager, owner_id)
    proxy = FakeDeviceProxy()
    proxy.add_device(device_id)
    clock = FixedClock(NOW)
    settings = Settings(timezone="UTC")

    first_scheduler = FakeScheduler()
    engines = build_engines(
        sql_store,
        proxy,
        NotificationService(),
        first_scheduler,  # type: ignore[arg-type]
        settings,
        clock=clock,
        rng=random.Random(1),
    )
    mode = await engines.modes.create_mode(
        owner_id,
        ModeCreate(
            name="Nap",
            actions=[DeviceControlAction(device_id=device_id, action="turn_on")],
        ),
    )
    await engines.modes.activate(mode.id, owner_id, duration=Duration(value=20))
    await engines.shutdown()

    # a fresh process: new registry, new scheduler, same database
    second_scheduler = FakeScheduler()
    restarted = build_engines(
        sql_store,
        proxy,
        NotificationService(),
        second_scheduler,  # type: ignore[arg-type]
        settings,
        clock=clock,
        rng=random.Random(1),
    )
    await restarted.startup()
    (job_id,) = second_scheduler.jobs
    await second_scheduler.fire(job_id)

    stored = await sql_store.get_mode(mode.id)
    assert stored is not None
    assert not stored.is_active
    await restarted.shutdown()
