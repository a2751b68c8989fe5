"""In-process bookkeeping for active rules and modes.

The registry is an explicit component owned by the engines container: it holds the
per-automation lock that keeps one execution of an automation at a time, the cooldown
timestamps that let bursts be rejected without a storage round-trip, the triggers that
event and tick dispatch match against, and the pending auto-deactivation handle of each
mode.  It lives as long as the process and is rebuilt from storage on startup.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime

from backend.core.exceptions import AutomationBusyError
from backend.core.scheduler import ScheduledTask
from backend.models.automation import Trigger
from backend.models.enums import AutomationKind, LogicMode

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AutomationRuntime:
    """Runtime record for one automation."""

    automation_id: uuid.UUID
    kind: AutomationKind
    owner_id: uuid.UUID
    triggers: list[Trigger] = field(default_factory=list)
    trigger_logic: LogicMode = LogicMode.any
    tracked: bool = False
    last_executed_at: datetime | None = None
    last_fired_minute: datetime | None = None
    deactivation: ScheduledTask | None = None
    preempted: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def is_running(self) -> bool:
        return self.lock.locked()


class ActiveAutomationRegistry:
    def __init__(self) -> None:
        self._runtimes: dict[uuid.UUID, AutomationRuntime] = {}

    def __len__(self) -> int:
        return len(self._runtimes)

    def __contains__(self, automation_id: object) -> bool:
        return automation_id in self._runtimes

    # ------------------------------------------------------------------
    # Runtime records
    # ------------------------------------------------------------------

    def runtime(
        self, automation_id: uuid.UUID, kind: AutomationKind, owner_id: uuid.UUID
    ) -> AutomationRuntime:
        """Return the runtime for ``automation_id``, creating it on first use."""
        runtime = self._runtimes.get(automation_id)
        if runtime is None:
            runtime = AutomationRuntime(automation_id=automation_id, kind=kind, owner_id=owner_id)
            self._runtimes[automation_id] = runtime
        return runtime

    def get(self, automation_id: uuid.UUID) -> AutomationRuntime | None:
        return self._runtimes.get(automation_id)

    def track(
        self,
        automation_id: uuid.UUID,
        kind: AutomationKind,
        owner_id: uuid.UUID,
        triggers: list[Trigger],
        trigger_logic: LogicMode = LogicMode.any,
    ) -> AutomationRuntime:
        """Register an automation's triggers for event and tick dispatch."""
        runtime = self.runtime(automation_id, kind, owner_id)
        runtime.triggers = list(triggers)
        runtime.trigger_logic = trigger_logic
        runtime.tracked = True
        return runtime

    def untrack(self, automation_id: uuid.UUID) -> None:
        runtime = self._runtimes.get(automation_id)
        if runtime is not None:
            runtime.tracked = False
            runtime.triggers = []

    def forget(self, automation_id: uuid.UUID) -> None:
        """Drop the runtime entirely, cancelling any pending deactivation."""
        runtime = self._runtimes.pop(automation_id, None)
        if runtime is not None and runtime.deactivation is not None:
            runtime.deactivation.cancel()

    def tracked(self, kind: AutomationKind) -> list[AutomationRuntime]:
        return [rt for rt in self._runtimes.values() if rt.tracked and rt.kind == kind]

    def is_running(self, automation_id: uuid.UUID) -> bool:
        runtime = self._runtimes.get(automation_id)
        return runtime is not None and runtime.is_running

    def running(self, kind: AutomationKind, owner_id: uuid.UUID) -> list[AutomationRuntime]:
        """Runtimes of the owner's automations that hold their lock right now."""
        return [
            rt
            for rt in self._runtimes.values()
            if rt.is_running and rt.kind == kind and rt.owner_id == owner_id
        ]

    # ------------------------------------------------------------------
    # Exclusive execution
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def claim(
        self, automation_id: uuid.UUID, kind: AutomationKind, owner_id: uuid.UUID
    ) -> AsyncIterator[AutomationRuntime]:
        """Hold the automation's lock for one execution; busy automations are rejected."""
        runtime = self.runtime(automation_id, kind, owner_id)
        if runtime.lock.locked():
            raise AutomationBusyError(
                f"{kind.value.capitalize()} {automation_id} is already executing",
                automation_id=str(automation_id),
            )
        async with runtime.lock:
            yield runtime

    # ------------------------------------------------------------------
    # Cooldown bookkeeping
    # ------------------------------------------------------------------

    def record_execution(
        self, automation_id: uuid.UUID, kind: AutomationKind, owner_id: uuid.UUID, at: datetime
    ) -> None:
        self.runtime(automation_id, kind, owner_id).last_executed_at = at

    def last_executed(self, automation_id: uuid.UUID) -> datetime | None:
        runtime = self._runtimes.get(automation_id)
        return runtime.last_executed_at if runtime else None

    # ------------------------------------------------------------------
    # Scheduled deactivation handles
    # ------------------------------------------------------------------

    def set_deactivation(self, automation_id: uuid.UUID, task: ScheduledTask | None) -> None:
        runtime = self._runtimes.get(automation_id)
        if runtime is None:
            if task is not None:
                task.cancel()
            return
        if runtime.deactivation is not None and runtime.deactivation is not task:
            runtime.deactivation.cancel()
        runtime.deactivation = task

    def cancel_deactivation(self, automation_id: uuid.UUID) -> bool:
        runtime = self._runtimes.get(automation_id)
        if runtime is None or runtime.deactivation is None:
            return False
        task, runtime.deactivation = runtime.deactivation, None
        return task.cancel()

    def is_current_deactivation(self, automation_id: uuid.UUID, job_id: str) -> bool:
        runtime = self._runtimes.get(automation_id)
        return (
            runtime is not None
            and runtime.deactivation is not None
            and runtime.deactivation.job_id == job_id
        )

    # ------------------------------------------------------------------
    # Preemption
    # ------------------------------------------------------------------

    def mark_preempted(self, automation_id: uuid.UUID) -> None:
        """Flag an in-flight activation that a dominant mode has overridden."""
        runtime = self._runtimes.get(automation_id)
        if runtime is not None:
            runtime.preempted = True

    def consume_preempted(self, automation_id: uuid.UUID) -> bool:
        runtime = self._runtimes.get(automation_id)
        if runtime is None or not runtime.preempted:
            return False
        runtime.preempted = False
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def shutdown(self) -> int:
        """Cancel every pending timer and clear the registry; returns timers cancelled."""
        cancelled = 0
        for runtime in self._runtimes.values():
            if runtime.deactivation is not None:
                runtime.deactivation.cancel()
                runtime.deactivation = None
                cancelled += 1
        self._runtimes.clear()
        logger.info("Automation registry cleared (%d pending timers cancelled)", cancelled)
        return cancelled


__all__ = ["ActiveAutomationRegistry", "AutomationRuntime"]
