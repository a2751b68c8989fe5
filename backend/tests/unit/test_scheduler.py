import asyncio
from datetime import UTC, datetime, timedelta

from backend.core.scheduler import ScheduledTask, TaskScheduler


def test_schedule_and_cancel_pending_job() -> None:
    scheduler = TaskScheduler()
    run_at = datetime(2030, 1, 1, 8, 0, tzinfo=UTC)

    task = scheduler.schedule_at(run_at, print, "hello", job_id="greeting")
    assert isinstance(task, ScheduledTask)
    assert task.job_id == "greeting"
    assert task.run_at == run_at
    assert scheduler.job_count == 1

    assert task.cancel()
    assert scheduler.job_count == 0
    # second cancel is a no-op
    assert not task.cancel()


async def test_same_job_id_replaces_existing() -> None:
    # pending jobs of an unstarted scheduler are not deduplicated, so start it first
    scheduler = TaskScheduler()
    scheduler.start()
    try:
        run_at = datetime(2030, 1, 1, 8, 0, tzinfo=UTC)
        scheduler.schedule_at(run_at, print, job_id="tick")
        task = scheduler.schedule_at(run_at + timedelta(hours=1), print, job_id="tick")
        assert scheduler.job_count == 1
        assert task.cancel()
        assert scheduler.job_count == 0
    finally:
        scheduler.shutdown()


def test_cancel_after_removal_returns_false() -> None:
    scheduler = TaskScheduler()
    task = scheduler.schedule_interval(print, seconds=60, job_id="interval")
    assert scheduler.job_count == 1
    assert scheduler._remove("interval")
    assert not task.cancel()


async def test_one_shot_job_runs() -> None:
    scheduler = TaskScheduler()
    fired: list[str] = []

    async def _job(label: str) -> None:
        fired.append(label)

    scheduler.start()
    try:
        assert scheduler.running
        scheduler.schedule_at(datetime.now(UTC) + timedelta(milliseconds=50), _job, "done")
        for _ in range(40):
            if fired:
                break
            await asyncio.sleep(0.05)
    finally:
        scheduler.shutdown()

    assert fired == ["done"]
