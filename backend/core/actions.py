"""Action execution shared by the rule and mode engines.

``execute`` never raises for an action-level problem: device errors, unknown action
types, failed notifications and rejected mode transitions all become a failed
``ActionOutcome``.  Only ``StorageError`` propagates.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, Protocol

from backend.core.exceptions import StorageError
from backend.integrations.device_proxy import DeviceProxy
from backend.models.automation import (
    Action,
    DelayAction,
    DeviceControlAction,
    Duration,
    Group,
    GroupControlAction,
    ModeActivationAction,
    NotificationAction,
    SceneActivationAction,
    WebhookAction,
)
from backend.models.enums import GroupTarget, ModeCommand, TriggeredBy
from backend.models.repository import AutomationStore
from backend.models.schemas import (
    ActionOutcome,
    DeviceOutcome,
    ExecutionReport,
    GroupControlReport,
)
from backend.services.notification_service import NotificationService

logger = logging.getLogger(__name__)


class ModeController(Protocol):
    """The slice of the mode engine that ``mode_activation`` actions drive."""

    async def activate(
        self,
        mode_id: uuid.UUID,
        owner_id: uuid.UUID,
        *,
        force: bool = False,
        duration: Duration | None = None,
        overrides: Mapping[str, dict[str, Any]] | None = None,
        triggered_by: str = TriggeredBy.manual,
    ) -> Any: ...

    async def deactivate(
        self, mode_id: uuid.UUID, owner_id: uuid.UUID, *, triggered_by: str = TriggeredBy.manual
    ) -> Any: ...

    async def toggle(
        self, mode_id: uuid.UUID, owner_id: uuid.UUID, *, triggered_by: str = TriggeredBy.manual
    ) -> Any: ...


class ActionExecutor:
    """Apply actions through the device proxy, the notification service and the mode engine."""

    def __init__(
        self,
        proxy: DeviceProxy,
        store: AutomationStore,
        notifications: NotificationService,
        *,
        group_sequence_interval_ms: int = 500,
        rng: random.Random | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._proxy = proxy
        self._store = store
        self._notifications = notifications
        self._sequence_interval_ms = group_sequence_interval_ms
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._modes: ModeController | None = None

    def bind_mode_engine(self, modes: ModeController) -> None:
        self._modes = modes

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run_sequence(
        self,
        actions: Sequence[Action],
        owner_id: uuid.UUID,
        context: Mapping[str, Any] | None = None,
        *,
        overrides: Mapping[str, dict[str, Any]] | None = None,
    ) -> ExecutionReport:
        """Run enabled actions in ``order``, stopping at a failure unless it continues on error."""
        report = ExecutionReport()
        for action in sorted(actions, key=lambda item: item.order):
            if not action.is_enabled:
                continue
            outcome = await self.execute(action, owner_id, context, overrides=overrides)
            report.outcomes.append(outcome)
            if not outcome.success and not action.continue_on_error:
                report.aborted = True
                logger.info(
                    "Action %s failed; stopping sequence", action.id,
                    extra={"owner_id": str(owner_id), "action_type": action.type},
                )
                break
        return report

    async def execute(
        self,
        action: Action,
        owner_id: uuid.UUID,
        context: Mapping[str, Any] | None = None,
        *,
        overrides: Mapping[str, dict[str, Any]] | None = None,
    ) -> ActionOutcome:
        extra_settings = (overrides or {}).get(action.id, {})
        try:
            return await self._dispatch(action, owner_id, extra_settings)
        except StorageError:
            raise
        except Exception as exc:
            logger.warning(
                "Action %s (%s) failed: %s",
                action.id,
                action.type,
                exc,
                extra={"owner_id": str(owner_id)},
            )
            return ActionOutcome(
                action_id=action.id, type=action.type, success=False, error=str(exc)
            )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def _dispatch(
        self, action: Action, owner_id: uuid.UUID, extra_settings: dict[str, Any]
    ) -> ActionOutcome:
        if isinstance(action, DeviceControlAction):
            state = await self._proxy.control_device(
                action.device_id, action.action, {**action.settings, **extra_settings}, owner_id
            )
            return self._ok(action, device_id=str(action.device_id), power_state=state.power_state)

        if isinstance(action, GroupControlAction):
            return await self._group_control(action, owner_id, extra_settings)

        if isinstance(action, ModeActivationAction):
            return await self._mode_action(action, owner_id)

        if isinstance(action, NotificationAction):
            await self._notifications.notify(
                owner_id, action.title, action.message, action.channels
            )
            return self._ok(action, channels=action.channels)

        if isinstance(action, WebhookAction):
            status = await self._notifications.send_webhook(
                action.url, action.payload, method=action.method, headers=action.headers
            )
            return self._ok(action, status_code=status)

        if isinstance(action, DelayAction):
            await self._sleep(action.duration.seconds)
            return self._ok(action, delayed_seconds=action.duration.seconds)

        if isinstance(action, SceneActivationAction):
            await self._proxy.activate_scene(action.scene_id, owner_id)
            return self._ok(action, scene_id=action.scene_id)

        logger.warning("Unknown action type %r", action.type, extra={"action_id": action.id})
        return ActionOutcome(
            action_id=action.id,
            type=action.type,
            success=False,
            error=f"Unknown action type '{action.type}'",
        )

    async def _mode_action(
        self, action: ModeActivationAction, owner_id: uuid.UUID
    ) -> ActionOutcome:
        if self._modes is None:
            raise RuntimeError("Mode engine is not bound to the action executor")
        if action.action == ModeCommand.activate:
            await self._modes.activate(
                action.mode_id,
                owner_id,
                duration=action.duration,
                triggered_by=TriggeredBy.mode_action,
            )
        elif action.action == ModeCommand.deactivate:
            await self._modes.deactivate(
                action.mode_id, owner_id, triggered_by=TriggeredBy.mode_action
            )
        else:
            await self._modes.toggle(action.mode_id, owner_id, triggered_by=TriggeredBy.mode_action)
        return self._ok(action, mode_id=str(action.mode_id), command=action.action.value)

    # ------------------------------------------------------------------
    # Group control
    # ------------------------------------------------------------------

    async def _group_control(
        self, action: GroupControlAction, owner_id: uuid.UUID, extra_settings: dict[str, Any]
    ) -> ActionOutcome:
        group = await self._store.get_group(action.group_id, owner_id)
        if group is None:
            return self._fail(action, f"Group {action.group_id} not found")

        targets = self.resolve_targets(action, group)
        if not targets:
            return self._fail(action, "Group action resolved to no devices")

        settings = {**action.settings, **extra_settings}
        if action.sequence.enabled:
            interval_ms = action.sequence.interval_ms
            if interval_ms is None:
                interval_ms = self._sequence_interval_ms
            outcomes: list[DeviceOutcome] = []
            for index, device_id in enumerate(targets):
                if index and interval_ms:
                    await self._sleep(interval_ms / 1000)
                outcome = await self._control_one(device_id, action.action, settings, owner_id)
                outcomes.append(outcome)
        else:
            outcomes = list(
                await asyncio.gather(
                    *(
                        self._control_one(device_id, action.action, settings, owner_id)
                        for device_id in targets
                    )
                )
            )

        report = GroupControlReport(
            group_id=group.id,
            succeeded=[outcome.device_id for outcome in outcomes if outcome.success],
            failed=[outcome for outcome in outcomes if not outcome.success],
        )
        error = None
        if report.failed:
            error = f"{len(report.failed)} of {len(outcomes)} devices failed"
        return ActionOutcome(
            action_id=action.id,
            type=action.type,
            success=not report.failed,
            error=error,
            group=report,
        )

    def resolve_targets(self, action: GroupControlAction, group: Group) -> list[uuid.UUID]:
        members = list(dict.fromkeys(group.device_ids))
        if action.target == GroupTarget.specific:
            wanted = set(action.device_ids)
            return [device_id for device_id in members if device_id in wanted]
        if action.target == GroupTarget.random:
            count = min(action.random_count or 1, len(members))
            return self._rng.sample(members, count)
        return members

    async def _control_one(
        self, device_id: uuid.UUID, command: str, settings: dict[str, Any], owner_id: uuid.UUID
    ) -> DeviceOutcome:
        try:
            await self._proxy.control_device(device_id, command, settings, owner_id)
        except Exception as exc:
            logger.warning("Group device %s failed: %s", device_id, exc)
            return DeviceOutcome(device_id=device_id, success=False, error=str(exc))
        return DeviceOutcome(device_id=device_id, success=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _ok(action: Action, **detail: Any) -> ActionOutcome:
        return ActionOutcome(action_id=action.id, type=action.type, success=True, detail=detail)

    @staticmethod
    def _fail(action: Action, error: str) -> ActionOutcome:
        logger.warning("Action %s (%s) failed: %s", action.id, action.type, error)
        return ActionOutcome(action_id=action.id, type=action.type, success=False, error=error)


__all__ = ["ActionExecutor", "ModeController"]
