"""Reference validation for rule and mode payloads.

Every device, group and mode a trigger, condition or action points at must exist and
belong to the owner.  Unknown variant types are rejected at write time; they are only
tolerated when loading already-persisted documents.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence

from backend.core.exceptions import AutomationValidationError
from backend.models.automation import (
    STATE_TRIGGERS,
    Action,
    Condition,
    DeviceControlAction,
    DeviceStateCondition,
    GroupControlAction,
    ModeActivationAction,
    Trigger,
    UnknownAction,
    UnknownCondition,
    UnknownTrigger,
)
from backend.models.repository import AutomationStore


class ReferenceValidator:
    def __init__(self, store: AutomationStore) -> None:
        self._store = store

    async def validate(
        self,
        owner_id: uuid.UUID,
        *,
        triggers: Sequence[Trigger] = (),
        conditions: Sequence[Condition] = (),
        actions: Sequence[Action] = (),
        self_mode_id: uuid.UUID | None = None,
    ) -> None:
        devices: set[uuid.UUID] = set()

        for trigger in triggers:
            if isinstance(trigger, UnknownTrigger):
                raise AutomationValidationError(
                    f"Unsupported trigger type '{trigger.type}'", trigger_id=trigger.id
                )
            if isinstance(trigger, STATE_TRIGGERS):
                devices.add(trigger.device_id)

        for condition in conditions:
            if isinstance(condition, UnknownCondition):
                raise AutomationValidationError(
                    f"Unsupported condition type '{condition.type}'", condition_id=condition.id
                )
            if isinstance(condition, DeviceStateCondition):
                devices.add(condition.device_id)

        for action in actions:
            if isinstance(action, UnknownAction):
                raise AutomationValidationError(
                    f"Unsupported action type '{action.type}'", action_id=action.id
                )
            if isinstance(action, DeviceControlAction):
                devices.add(action.device_id)
            elif isinstance(action, GroupControlAction):
                await self._check_group(action, owner_id)
            elif isinstance(action, ModeActivationAction):
                await self._check_mode(action, owner_id, self_mode_id)

        for device_id in sorted(devices, key=str):
            if not await self._store.device_owned(device_id, owner_id):
                raise AutomationValidationError(
                    f"Device {device_id} not found or not owned by user",
                    device_id=str(device_id),
                )

    async def _check_group(self, action: GroupControlAction, owner_id: uuid.UUID) -> None:
        group = await self._store.get_group(action.group_id, owner_id)
        if group is None:
            raise AutomationValidationError(
                f"Group {action.group_id} not found or not owned by user",
                group_id=str(action.group_id),
            )

    async def _check_mode(
        self, action: ModeActivationAction, owner_id: uuid.UUID, self_mode_id: uuid.UUID | None
    ) -> None:
        if self_mode_id is not None and action.mode_id == self_mode_id:
            raise AutomationValidationError(
                "A mode cannot activate or deactivate itself", mode_id=str(action.mode_id)
            )
        if await self._store.get_mode(action.mode_id, owner_id) is None:
            raise AutomationValidationError(
                f"Mode {action.mode_id} not found or not owned by user",
                mode_id=str(action.mode_id),
            )


__all__ = ["ReferenceValidator"]
