"""Mode engine for HomeFlow.

A mode is a named bundle of actions applied as a unit.  Activation enforces the
single-dominant-mode policy (forced or high-priority activations first fully deactivate
the owner's other active modes), optionally snapshots every device the owner has so
deactivation can put the house back exactly as it was, and may schedule its own
deactivation.  The scheduled job handle lives on the mode's runtime record, so manual
deactivation cancels it and a late firing is recognised as stale.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Coroutine, Mapping
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any

from backend.core.actions import ActionExecutor
from backend.core.exceptions import (
    AutomationBusyError,
    AutomationError,
    ConflictError,
    DeviceUnavailableError,
    ModeStateError,
    NotFoundError,
)
from backend.core.registry import ActiveAutomationRegistry
from backend.core.scheduler import TaskScheduler
from backend.core.triggers import TriggerMatcher
from backend.core.validation import ReferenceValidator
from backend.integrations.device_proxy import DeviceProxy, DeviceProxyError
from backend.models.automation import DeviceSnapshot, Duration, Mode, ModeSettings, utcnow
from backend.models.enums import AutomationKind, LogicMode, TriggeredBy
from backend.models.repository import AutomationStore
from backend.models.schemas import (
    DeviceOutcome,
    ModeActivationResult,
    ModeCreate,
    ModeDeactivationResult,
    ModeStatistics,
    ModeUpdate,
    RestorationReport,
)

logger = logging.getLogger(__name__)

BUSY_RETRY_SECONDS = 5


class ModeEngine:
    """Create, activate, deactivate and toggle modes."""

    def __init__(
        self,
        store: AutomationStore,
        registry: ActiveAutomationRegistry,
        executor: ActionExecutor,
        scheduler: TaskScheduler,
        proxy: DeviceProxy,
        matcher: TriggerMatcher,
        *,
        validator: ReferenceValidator | None = None,
        clock: Callable[[], datetime] = utcnow,
        tz: tzinfo = UTC,
        log_capacity: int = 100,
        high_priority_threshold: int = 7,
    ) -> None:
        self._store = store
        self._registry = registry
        self._executor = executor
        self._scheduler = scheduler
        self._proxy = proxy
        self._matcher = matcher
        self._validator = validator or ReferenceValidator(store)
        self._clock = clock
        self._tz = tz
        self._log_capacity = log_capacity
        self._high_priority = high_priority_threshold
        self._tasks: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_mode(self, owner_id: uuid.UUID, payload: ModeCreate) -> Mode:
        if await self._store.find_mode_by_name(owner_id, payload.name) is not None:
            raise ConflictError(f"A mode named '{payload.name}' already exists")
        now = self._now()
        mode = Mode(
            owner_id=owner_id,
            name=payload.name,
            description=payload.description,
            priority=payload.priority,
            actions=payload.actions,
            settings=ModeSettings(restore_on_exit=payload.settings.restore_on_exit),
            auto_activate=payload.auto_activate,
            created_at=now,
            updated_at=now,
        )
        await self._validator.validate(
            owner_id,
            triggers=mode.auto_activate.triggers,
            actions=mode.actions,
            self_mode_id=mode.id,
        )
        await self._store.save_mode(mode)
        self._track(mode)
        logger.info("Mode created: %s (%s)", mode.name, mode.id, extra={"owner_id": str(owner_id)})
        return mode

    async def update_mode(
        self, mode_id: uuid.UUID, owner_id: uuid.UUID, payload: ModeUpdate
    ) -> Mode:
        await self._load(mode_id, owner_id)
        async with self._registry.claim(mode_id, AutomationKind.mode, owner_id):
            mode = await self._load(mode_id, owner_id)
            if payload.name is not None and payload.name != mode.name:
                existing = await self._store.find_mode_by_name(owner_id, payload.name)
                if existing is not None and existing.id != mode.id:
                    raise ConflictError(f"A mode named '{payload.name}' already exists")
                mode.name = payload.name
            if payload.description is not None:
                mode.description = payload.description
            if payload.priority is not None:
                mode.priority = payload.priority
            if payload.actions is not None:
                mode.actions = payload.actions
            if payload.settings is not None:
                mode.settings.restore_on_exit = payload.settings.restore_on_exit
            if payload.auto_activate is not None:
                mode.auto_activate = payload.auto_activate
            await self._validator.validate(
                owner_id,
                triggers=mode.auto_activate.triggers,
                actions=mode.actions,
                self_mode_id=mode.id,
            )
            mode.updated_at = self._now()
            await self._store.save_mode(mode)
        self._track(mode)
        logger.info("Mode updated: %s (%s)", mode.name, mode.id)
        return mode

    async def delete_mode(self, mode_id: uuid.UUID, owner_id: uuid.UUID) -> None:
        mode = await self._load(mode_id, owner_id)
        if mode.is_active:
            await self.deactivate(mode_id, owner_id, triggered_by=TriggeredBy.manual)
        async with self._registry.claim(mode_id, AutomationKind.mode, owner_id):
            await self._store.delete_mode(mode_id)
        self._registry.forget(mode_id)
        logger.info("Mode deleted: %s", mode_id)

    async def get_mode(self, mode_id: uuid.UUID, owner_id: uuid.UUID) -> Mode:
        return await self._load(mode_id, owner_id)

    async def list_modes(self, owner_id: uuid.UUID) -> list[Mode]:
        return await self._store.list_modes(owner_id)

    async def get_active_modes(self, owner_id: uuid.UUID) -> list[Mode]:
        """Active modes of the owner, highest priority first."""
        modes = await self._store.list_modes(owner_id, active=True)
        return sorted(modes, key=lambda mode: mode.priority, reverse=True)

    async def get_statistics(self, owner_id: uuid.UUID) -> ModeStatistics:
        modes = await self._store.list_modes(owner_id)
        return ModeStatistics(
            total_modes=len(modes),
            active_modes=sum(1 for mode in modes if mode.is_active),
            auto_activate_modes=sum(1 for mode in modes if mode.auto_activate.enabled),
            total_activations=sum(mode.activation_count for mode in modes),
            **ModeStatistics.totals(mode.statistics for mode in modes),
        )

    # ------------------------------------------------------------------
    # Activation
    # ------------------------------------------------------------------

    async def activate(
        self,
        mode_id: uuid.UUID,
        owner_id: uuid.UUID,
        *,
        force: bool = False,
        duration: Duration | None = None,
        overrides: Mapping[str, dict[str, Any]] | None = None,
        triggered_by: str = TriggeredBy.manual,
    ) -> ModeActivationResult:
        """Activate a mode.

        Raises:
            NotFoundError: Unknown mode or not owned by the caller.
            ModeStateError: Already active and not forced.
            AutomationBusyError: The mode is being activated/deactivated right now.
            DeviceUnavailableError: The restore snapshot could not be taken.
        """
        await self._load(mode_id, owner_id)
        async with self._registry.claim(mode_id, AutomationKind.mode, owner_id) as runtime:
            runtime.preempted = False
            mode = await self._load(mode_id, owner_id)
            if mode.is_active and not force:
                raise ModeStateError(f"Mode '{mode.name}' is already active", mode_id=str(mode.id))

            deactivated: list[uuid.UUID] = []
            if force or mode.priority >= self._high_priority:
                deactivated = await self._deactivate_others(mode)

            if mode.settings.restore_on_exit and (
                not mode.is_active or mode.settings.previous_state is None
            ):
                mode.settings.previous_state = await self._snapshot(owner_id)
                await self._store.save_mode(mode)

            started = time.perf_counter()
            report = await self._executor.run_sequence(
                mode.actions,
                owner_id,
                {"mode_id": str(mode.id), "triggered_by": str(triggered_by)},
                overrides=overrides,
            )
            duration_ms = (time.perf_counter() - started) * 1000
            now = self._now()

            preempted = self._registry.consume_preempted(mode.id)
            self._registry.cancel_deactivation(mode.id)
            mode.scheduled_deactivation = None
            if preempted:
                # a dominant mode took over while this one was running its actions
                logger.warning(
                    "Mode %s was preempted during activation; leaving it inactive", mode.id
                )
                mode.is_active = False
                mode.deactivated_at = now
                mode.settings.previous_state = None
            else:
                mode.is_active = True
                mode.activated_at = now
                mode.activation_count += 1
                if duration is not None:
                    run_at = now + duration.to_timedelta()
                    self._schedule_deactivation(mode.id, owner_id, run_at)
                    mode.scheduled_deactivation = run_at

            mode.record_run(
                status=report.status,
                duration_ms=duration_ms,
                triggered_by=triggered_by,
                at=now,
                error=report.first_error,
                actions_succeeded=report.succeeded,
                actions_failed=report.failed,
                capacity=self._log_capacity,
            )
            self._registry.record_execution(mode.id, AutomationKind.mode, owner_id, now)
            await self._store.save_mode(mode)

        logger.info(
            "Mode activation ran: %s (%s) status=%s active=%s",
            mode.name,
            mode.id,
            report.status.value,
            mode.is_active,
            extra={
                "mode_id": str(mode.id),
                "triggered_by": str(triggered_by),
                "deactivated_modes": len(deactivated),
            },
        )
        return ModeActivationResult(
            mode_id=mode.id,
            execution=report,
            deactivated_modes=deactivated,
            snapshot_size=len(mode.settings.previous_state or []),
            scheduled_deactivation=mode.scheduled_deactivation,
            mode=mode,
        )

    async def _deactivate_others(self, mode: Mode) -> list[uuid.UUID]:
        """Fully deactivate the owner's other active modes, then apply the bulk backstop."""
        deactivated: list[uuid.UUID] = []
        for other in await self._store.list_modes(mode.owner_id, active=True):
            if other.id == mode.id:
                continue
            try:
                await self.deactivate(other.id, mode.owner_id, triggered_by=TriggeredBy.mode_action)
            except ModeStateError:
                continue
            except AutomationBusyError:
                # left to the bulk update below; its timer must not fire later
                logger.warning("Mode %s busy during arbitration; forcing inactive", other.id)
                self._registry.cancel_deactivation(other.id)
                self._registry.mark_preempted(other.id)
            deactivated.append(other.id)

        # in-flight activations not yet persisted as active must not land afterwards
        for runtime in self._registry.running(AutomationKind.mode, mode.owner_id):
            if runtime.automation_id != mode.id:
                self._registry.mark_preempted(runtime.automation_id)

        await self._store.deactivate_modes(mode.owner_id, exclude_id=mode.id, at=self._now())
        return deactivated

    async def _snapshot(self, owner_id: uuid.UUID) -> list[DeviceSnapshot]:
        try:
            devices = await self._proxy.list_devices(owner_id)
        except DeviceProxyError as exc:
            raise DeviceUnavailableError(f"Could not snapshot device state: {exc}") from exc

        snapshot: list[DeviceSnapshot] = []
        for device in devices:
            try:
                device_id = uuid.UUID(device.device_id)
            except ValueError:
                logger.warning("Skipping device with invalid id %r in snapshot", device.device_id)
                continue
            snapshot.append(
                DeviceSnapshot(
                    device_id=device_id,
                    power_state=device.power_state,
                    settings=dict(device.settings),
                )
            )
        return snapshot

    # ------------------------------------------------------------------
    # Deactivation
    # ------------------------------------------------------------------

    async def deactivate(
        self,
        mode_id: uuid.UUID,
        owner_id: uuid.UUID,
        *,
        triggered_by: str = TriggeredBy.manual,
    ) -> ModeDeactivationResult:
        """Deactivate a mode, replaying its snapshot if it has one.

        Restoration never aborts midway; per-device failures are reported.

        Raises:
            ModeStateError: The mode is not active.
        """
        await self._load(mode_id, owner_id)
        async with self._registry.claim(mode_id, AutomationKind.mode, owner_id):
            mode = await self._load(mode_id, owner_id)
            if not mode.is_active:
                raise ModeStateError(f"Mode '{mode.name}' is not active", mode_id=str(mode.id))

            restoration = None
            if mode.settings.previous_state:
                restoration = await self._restore(owner_id, mode.settings.previous_state)

            mode.settings.previous_state = None
            mode.is_active = False
            mode.deactivated_at = self._now()
            mode.scheduled_deactivation = None
            self._registry.cancel_deactivation(mode.id)
            await self._store.save_mode(mode)

        logger.info(
            "Mode deactivated: %s (%s)",
            mode.name,
            mode.id,
            extra={
                "mode_id": str(mode.id),
                "triggered_by": str(triggered_by),
                "restore_failures": len(restoration.failed) if restoration else 0,
            },
        )
        return ModeDeactivationResult(mode_id=mode.id, restoration=restoration, mode=mode)

    async def _restore(
        self, owner_id: uuid.UUID, snapshot: list[DeviceSnapshot]
    ) -> RestorationReport:
        report = RestorationReport()
        for entry in snapshot:
            try:
                if entry.power_state is not None:
                    command = "turn_on" if entry.power_state == "on" else "turn_off"
                    await self._proxy.control_device(entry.device_id, command, {}, owner_id)
                if entry.settings:
                    await self._proxy.update_device_settings(
                        entry.device_id, entry.settings, owner_id
                    )
            except Exception as exc:
                logger.warning("Restoring device %s failed: %s", entry.device_id, exc)
                report.failed.append(
                    DeviceOutcome(device_id=entry.device_id, success=False, error=str(exc))
                )
                continue
            report.restored.append(entry.device_id)
        return report

    async def toggle(
        self,
        mode_id: uuid.UUID,
        owner_id: uuid.UUID,
        *,
        triggered_by: str = TriggeredBy.manual,
    ) -> ModeActivationResult | ModeDeactivationResult:
        mode = await self._load(mode_id, owner_id)
        if mode.is_active:
            return await self.deactivate(mode_id, owner_id, triggered_by=triggered_by)
        return await self.activate(mode_id, owner_id, force=False, triggered_by=triggered_by)

    # ------------------------------------------------------------------
    # Scheduled deactivation
    # ------------------------------------------------------------------

    def _schedule_deactivation(
        self, mode_id: uuid.UUID, owner_id: uuid.UUID, run_at: datetime
    ) -> None:
        job_id = f"mode-deactivate-{mode_id}-{uuid.uuid4().hex[:8]}"
        task = self._scheduler.schedule_at(
            run_at, self._scheduled_deactivation, mode_id, owner_id, job_id, job_id=job_id
        )
        self._registry.set_deactivation(mode_id, task)
        logger.info("Mode %s scheduled to deactivate at %s", mode_id, run_at.isoformat())

    async def _scheduled_deactivation(
        self, mode_id: uuid.UUID, owner_id: uuid.UUID, job_id: str
    ) -> None:
        if not self._registry.is_current_deactivation(mode_id, job_id):
            logger.info("Stale deactivation job %s for mode %s ignored", job_id, mode_id)
            return
        self._registry.cancel_deactivation(mode_id)
        try:
            await self.deactivate(mode_id, owner_id, triggered_by=TriggeredBy.schedule)
        except ModeStateError:
            logger.info("Mode %s already inactive when its timer fired", mode_id)
        except NotFoundError:
            self._registry.forget(mode_id)
        except AutomationBusyError:
            retry_at = self._now() + timedelta(seconds=BUSY_RETRY_SECONDS)
            logger.info(
                "Mode %s busy when its timer fired; retrying at %s", mode_id, retry_at.isoformat()
            )
            self._schedule_deactivation(mode_id, owner_id, retry_at)
        except AutomationError as exc:
            logger.warning("Scheduled deactivation of mode %s failed: %s", mode_id, exc.message)
        except Exception:
            logger.exception("Scheduled deactivation of mode %s crashed", mode_id)

    # ------------------------------------------------------------------
    # Auto-activation
    # ------------------------------------------------------------------

    def handle_device_state_change(
        self,
        device_id: uuid.UUID,
        old_state: Mapping[str, Any] | None,
        new_state: Mapping[str, Any] | None,
    ) -> list[uuid.UUID]:
        dispatched: list[uuid.UUID] = []
        for runtime in self._registry.tracked(AutomationKind.mode):
            if self._matcher.fires_on_state_change(
                runtime.triggers, runtime.trigger_logic, device_id, old_state, new_state
            ):
                dispatched.append(runtime.automation_id)
                self._spawn(self._auto_activate(runtime.automation_id, runtime.owner_id))
        return dispatched

    def handle_time_tick(self, now: datetime | None = None) -> list[uuid.UUID]:
        now = now or self._clock()
        minute = now.replace(second=0, microsecond=0)
        dispatched: list[uuid.UUID] = []
        for runtime in self._registry.tracked(AutomationKind.mode):
            if runtime.last_fired_minute == minute:
                continue
            if self._matcher.fires_on_tick(runtime.triggers, runtime.trigger_logic, now):
                runtime.last_fired_minute = minute
                dispatched.append(runtime.automation_id)
                self._spawn(self._auto_activate(runtime.automation_id, runtime.owner_id))
        return dispatched

    async def _auto_activate(self, mode_id: uuid.UUID, owner_id: uuid.UUID) -> None:
        try:
            await self.activate(mode_id, owner_id, triggered_by=TriggeredBy.auto_activation)
        except ModeStateError:
            logger.debug("Mode %s already active; auto-activation skipped", mode_id)
        except NotFoundError:
            self._registry.forget(mode_id)
        except AutomationError as exc:
            logger.warning("Auto-activation of mode %s failed: %s", mode_id, exc.message)
        except Exception:
            logger.exception("Auto-activation of mode %s crashed", mode_id)

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ------------------------------------------------------------------
    # Registry lifecycle
    # ------------------------------------------------------------------

    async def rehydrate(self) -> int:
        """Re-register auto-activating modes and re-arm pending deactivations.

        A deadline that already passed while the process was down deactivates now.
        """
        for mode in await self._store.list_modes(auto_activate=True):
            self._track(mode)

        now = self._clock()
        active = await self._store.list_modes(active=True)
        for mode in active:
            self._registry.runtime(mode.id, AutomationKind.mode, mode.owner_id)
            if mode.scheduled_deactivation is None:
                continue
            if mode.scheduled_deactivation <= now:
                try:
                    await self.deactivate(mode.id, mode.owner_id, triggered_by=TriggeredBy.schedule)
                except AutomationError as exc:
                    logger.warning("Overdue deactivation of mode %s failed: %s", mode.id, exc)
            else:
                self._schedule_deactivation(mode.id, mode.owner_id, mode.scheduled_deactivation)
        logger.info("Rehydrated %d active mode(s)", len(active))
        return len(active)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _track(self, mode: Mode) -> None:
        triggers = mode.auto_triggers()
        if triggers:
            self._registry.track(
                mode.id, AutomationKind.mode, mode.owner_id, triggers, LogicMode.any
            )
        else:
            self._registry.untrack(mode.id)

    async def _load(self, mode_id: uuid.UUID, owner_id: uuid.UUID) -> Mode:
        mode = await self._store.get_mode(mode_id, owner_id)
        if mode is None:
            raise NotFoundError(f"Mode {mode_id} not found", mode_id=str(mode_id))
        return mode

    def _now(self) -> datetime:
        return self._clock().astimezone(self._tz)


__all__ = ["ModeEngine"]
