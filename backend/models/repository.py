"""Persistence collaborator for the automation engines.

The engines only see ``AutomationStore``; ``SQLAlchemyAutomationStore`` is the
production implementation.  Each call is its own unit of work (read-modify-write per
automation).  A save that collides with another automation's name for the same owner
raises ``ConflictError``; every other driver failure surfaces as ``StorageError``.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Protocol, runtime_checkable

from sqlalchemy import Select, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.core.exceptions import ConflictError, StorageError
from backend.models.automation import Group, Mode, Rule
from backend.models.database import DeviceRecord, GroupRecord, ModeRecord, RuleRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class AutomationStore(Protocol):
    async def get_rule(
        self, rule_id: uuid.UUID, owner_id: uuid.UUID | None = None
    ) -> Rule | None: ...

    async def save_rule(self, rule: Rule) -> Rule: ...

    async def delete_rule(self, rule_id: uuid.UUID) -> None: ...

    async def find_rule_by_name(self, owner_id: uuid.UUID, name: str) -> Rule | None: ...

    async def list_rules(self, owner_id: uuid.UUID) -> list[Rule]: ...

    async def list_active_rules(self) -> list[Rule]: ...

    async def get_mode(
        self, mode_id: uuid.UUID, owner_id: uuid.UUID | None = None
    ) -> Mode | None: ...

    async def save_mode(self, mode: Mode) -> Mode: ...

    async def delete_mode(self, mode_id: uuid.UUID) -> None: ...

    async def find_mode_by_name(self, owner_id: uuid.UUID, name: str) -> Mode | None: ...

    async def list_modes(
        self,
        owner_id: uuid.UUID | None = None,
        *,
        active: bool | None = None,
        auto_activate: bool | None = None,
    ) -> list[Mode]: ...

    async def deactivate_modes(
        self, owner_id: uuid.UUID, *, exclude_id: uuid.UUID, at: datetime
    ) -> int: ...

    async def get_group(self, group_id: uuid.UUID, owner_id: uuid.UUID) -> Group | None: ...

    async def device_owned(self, device_id: uuid.UUID, owner_id: uuid.UUID) -> bool: ...


class SQLAlchemyAutomationStore:
    """``AutomationStore`` backed by SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    async def get_rule(self, rule_id: uuid.UUID, owner_id: uuid.UUID | None = None) -> Rule | None:
        stmt = select(RuleRecord).where(RuleRecord.id == rule_id)
        if owner_id is not None:
            stmt = stmt.where(RuleRecord.owner_id == owner_id)
        try:
            async with self._session_factory() as session:
                record = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load rule {rule_id}") from exc
        return Rule.model_validate(record.document) if record else None

    async def save_rule(self, rule: Rule) -> Rule:
        try:
            async with self._session_factory() as session:
                record = await session.get(RuleRecord, rule.id)
                if record is None:
                    record = RuleRecord(id=rule.id, owner_id=rule.owner_id)
                    session.add(record)
                record.name = rule.name
                record.is_active = rule.is_active
                record.priority = rule.priority
                record.document = rule.model_dump(mode="json")
                await session.commit()
        except IntegrityError as exc:
            raise ConflictError(
                f"A rule named '{rule.name}' already exists", rule_id=str(rule.id)
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("Saving rule %s failed: %s", rule.id, exc)
            raise StorageError(f"Failed to save rule {rule.id}") from exc
        return rule

    async def delete_rule(self, rule_id: uuid.UUID) -> None:
        try:
            async with self._session_factory() as session:
                record = await session.get(RuleRecord, rule_id)
                if record is not None:
                    await session.delete(record)
                    await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete rule {rule_id}") from exc

    async def find_rule_by_name(self, owner_id: uuid.UUID, name: str) -> Rule | None:
        stmt = select(RuleRecord).where(RuleRecord.owner_id == owner_id, RuleRecord.name == name)
        try:
            async with self._session_factory() as session:
                record = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to look up rule by name") from exc
        return Rule.model_validate(record.document) if record else None

    async def list_rules(self, owner_id: uuid.UUID) -> list[Rule]:
        stmt = select(RuleRecord).where(RuleRecord.owner_id == owner_id).order_by(RuleRecord.name)
        return [Rule.model_validate(doc) for doc in await self._documents(stmt)]

    async def list_active_rules(self) -> list[Rule]:
        stmt = select(RuleRecord).where(RuleRecord.is_active.is_(True))
        return [Rule.model_validate(doc) for doc in await self._documents(stmt)]

    # ------------------------------------------------------------------
    # Modes
    # ------------------------------------------------------------------

    async def get_mode(self, mode_id: uuid.UUID, owner_id: uuid.UUID | None = None) -> Mode | None:
        stmt = select(ModeRecord).where(ModeRecord.id == mode_id)
        if owner_id is not None:
            stmt = stmt.where(ModeRecord.owner_id == owner_id)
        try:
            async with self._session_factory() as session:
                record = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load mode {mode_id}") from exc
        return Mode.model_validate(record.document) if record else None

    async def save_mode(self, mode: Mode) -> Mode:
        try:
            async with self._session_factory() as session:
                record = await session.get(ModeRecord, mode.id)
                if record is None:
                    record = ModeRecord(id=mode.id, owner_id=mode.owner_id)
                    session.add(record)
                record.name = mode.name
                record.is_active = mode.is_active
                record.priority = mode.priority
                record.auto_activate = mode.auto_activate.enabled
                record.document = mode.model_dump(mode="json")
                await session.commit()
        except IntegrityError as exc:
            raise ConflictError(
                f"A mode named '{mode.name}' already exists", mode_id=str(mode.id)
            ) from exc
        except SQLAlchemyError as exc:
            logger.error("Saving mode %s failed: %s", mode.id, exc)
            raise StorageError(f"Failed to save mode {mode.id}") from exc
        return mode

    async def delete_mode(self, mode_id: uuid.UUID) -> None:
        try:
            async with self._session_factory() as session:
                record = await session.get(ModeRecord, mode_id)
                if record is not None:
                    await session.delete(record)
                    await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to delete mode {mode_id}") from exc

    async def find_mode_by_name(self, owner_id: uuid.UUID, name: str) -> Mode | None:
        stmt = select(ModeRecord).where(ModeRecord.owner_id == owner_id, ModeRecord.name == name)
        try:
            async with self._session_factory() as session:
                record = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to look up mode by name") from exc
        return Mode.model_validate(record.document) if record else None

    async def list_modes(
        self,
        owner_id: uuid.UUID | None = None,
        *,
        active: bool | None = None,
        auto_activate: bool | None = None,
    ) -> list[Mode]:
        stmt = select(ModeRecord)
        if owner_id is not None:
            stmt = stmt.where(ModeRecord.owner_id == owner_id)
        if active is not None:
            stmt = stmt.where(ModeRecord.is_active.is_(active))
        if auto_activate is not None:
            stmt = stmt.where(ModeRecord.auto_activate.is_(auto_activate))
        stmt = stmt.order_by(ModeRecord.priority.desc(), ModeRecord.name)
        return [Mode.model_validate(doc) for doc in await self._documents(stmt)]

    async def deactivate_modes(
        self, owner_id: uuid.UUID, *, exclude_id: uuid.UUID, at: datetime
    ) -> int:
        """Bulk-clear ``is_active`` on the owner's other modes; returns rows touched.

        Backstop for the one-dominant-mode policy: the documents are rewritten
        too, so a later load agrees with the indexed column.
        """
        stmt = select(ModeRecord).where(
            ModeRecord.owner_id == owner_id,
            ModeRecord.id != exclude_id,
            ModeRecord.is_active.is_(True),
        )
        try:
            async with self._session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
                for record in records:
                    mode = Mode.model_validate(record.document)
                    mode.is_active = False
                    mode.deactivated_at = at
                    mode.scheduled_deactivation = None
                    mode.settings.previous_state = None
                    record.is_active = False
                    record.document = mode.model_dump(mode="json")
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to deactivate modes") from exc
        return len(records)

    # ------------------------------------------------------------------
    # Devices / groups
    # ------------------------------------------------------------------

    async def get_group(self, group_id: uuid.UUID, owner_id: uuid.UUID) -> Group | None:
        stmt = select(GroupRecord).where(
            GroupRecord.id == group_id, GroupRecord.owner_id == owner_id
        )
        try:
            async with self._session_factory() as session:
                record = (await session.execute(stmt)).scalar_one_or_none()
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to load group {group_id}") from exc
        if record is None:
            return None
        return Group(
            id=record.id,
            owner_id=record.owner_id,
            name=record.name,
            device_ids=[uuid.UUID(str(device_id)) for device_id in record.device_ids or []],
        )

    async def device_owned(self, device_id: uuid.UUID, owner_id: uuid.UUID) -> bool:
        stmt = select(DeviceRecord.id).where(
            DeviceRecord.id == device_id, DeviceRecord.owner_id == owner_id
        )
        try:
            async with self._session_factory() as session:
                return (await session.execute(stmt)).scalar_one_or_none() is not None
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to look up device {device_id}") from exc

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _documents(self, stmt: Select[Any]) -> list[dict[str, Any]]:
        try:
            async with self._session_factory() as session:
                records = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            raise StorageError("Failed to list automations") from exc
        return [record.document for record in records]


__all__ = ["AutomationStore", "SQLAlchemyAutomationStore"]
