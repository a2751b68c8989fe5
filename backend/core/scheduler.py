"""Deferred task scheduling for the automation engines.

Wraps APScheduler's ``AsyncIOScheduler`` behind a small interface that hands back a
cancellable ``ScheduledTask`` handle.  Mode runtimes keep the handle so a manual
deactivation can cancel the pending auto-deactivation, and a late firing can be told
apart from the current one by its ``job_id``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from apscheduler.jobstores.base import JobLookupError  # type: ignore[import-untyped]
from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.date import DateTrigger  # type: ignore[import-untyped]
from apscheduler.triggers.interval import IntervalTrigger  # type: ignore[import-untyped]

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ScheduledTask:
    """Handle for a pending job; ``cancel()`` is best-effort and idempotent."""

    job_id: str
    run_at: datetime | None
    _cancel: Callable[[str], bool] = field(repr=False)
    cancelled: bool = False

    def cancel(self) -> bool:
        if self.cancelled:
            return False
        self.cancelled = True
        return self._cancel(self.job_id)


class TaskScheduler:
    """Schedule one-shot and interval jobs on an ``AsyncIOScheduler``."""

    def __init__(
        self,
        scheduler: AsyncIOScheduler | None = None,
        *,
        timezone: str = "UTC",
        misfire_grace_time: int = 300,
    ) -> None:
        self._scheduler = scheduler or AsyncIOScheduler(
            timezone=timezone,
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_time,
            },
        )

    @property
    def running(self) -> bool:
        return bool(self._scheduler.running)

    @property
    def job_count(self) -> int:
        return len(self._scheduler.get_jobs())

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Task scheduler started")

    def shutdown(self, *, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Task scheduler stopped")

    def schedule_at(
        self,
        run_at: datetime,
        func: Callable[..., Any],
        *args: Any,
        job_id: str | None = None,
    ) -> ScheduledTask:
        """Run ``func(*args)`` once at ``run_at``."""
        job_id = job_id or f"task-{uuid.uuid4().hex}"
        self._scheduler.add_job(
            func,
            DateTrigger(run_date=run_at),
            args=args,
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        logger.debug("Scheduled %s at %s", job_id, run_at.isoformat())
        return ScheduledTask(job_id=job_id, run_at=run_at, _cancel=self._remove)

    def schedule_interval(
        self,
        func: Callable[..., Any],
        *,
        seconds: int,
        job_id: str,
        name: str | None = None,
    ) -> ScheduledTask:
        self._scheduler.add_job(
            func,
            IntervalTrigger(seconds=seconds),
            id=job_id,
            name=name or job_id,
            replace_existing=True,
        )
        return ScheduledTask(job_id=job_id, run_at=None, _cancel=self._remove)

    def _remove(self, job_id: str) -> bool:
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            # already fired or removed
            return False
        logger.debug("Cancelled scheduled job %s", job_id)
        return True


__all__ = ["ScheduledTask", "TaskScheduler"]
