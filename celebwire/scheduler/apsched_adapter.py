"""APScheduler wrapper registering the pipeline's periodic jobs."""

from __future__ import annotations

from typing import Any, Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from ..config import ScheduleConfig, ScheduleType
from ..logging_conf import component_logger

FETCH_JOB_ID = "pipeline::fetch"
CLEANUP_JOB_ID = "pipeline::cleanup"
USAGE_RESET_JOB_ID = "pipeline::usage-reset"


class APSchedulerAdapter:
    """Manage the fetch, audit cleanup and daily usage-reset jobs.

    Jobs run with ``max_instances=1`` and ``coalesce=True``; overlapping with a
    manual trigger is still resolved by the orchestrator's gate.
    """

    def __init__(self, schedule: ScheduleConfig, scheduler: AsyncIOScheduler | None = None) -> None:
        self.schedule = schedule
        self.scheduler = scheduler or AsyncIOScheduler(timezone=schedule.timezone)
        self.logger = component_logger("scheduler")
        self.started = False

    def start(self) -> None:
        if not self.started:
            self.scheduler.start()
            self.started = True
            self.logger.info("apscheduler_started")

    def shutdown(self) -> None:
        if self.started:
            self.scheduler.shutdown(wait=False)
            self.started = False
            self.logger.info("apscheduler_stopped")

    def _add(self, job_id: str, callback: Callable[[], Awaitable[Any]], trigger) -> None:
        self.scheduler.add_job(
            callback,
            trigger=trigger,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.logger.info("job_scheduled", job=job_id, trigger=str(trigger))

    def schedule_fetch(self, callback: Callable[[], Awaitable[Any]]) -> None:
        self._add(FETCH_JOB_ID, callback, self._build_trigger(self.schedule))

    def schedule_cleanup(self, callback: Callable[[], Awaitable[Any]]) -> None:
        trigger = CronTrigger.from_crontab(self.schedule.cleanup_cron, timezone=self.schedule.timezone)
        self._add(CLEANUP_JOB_ID, callback, trigger)

    def schedule_usage_reset(self, callback: Callable[[], Awaitable[Any]]) -> None:
        trigger = CronTrigger(hour=0, minute=0, timezone=self.schedule.timezone)
        self._add(USAGE_RESET_JOB_ID, callback, trigger)

    @staticmethod
    def _build_trigger(schedule: ScheduleConfig):
        if schedule.type is ScheduleType.CRON:
            return CronTrigger.from_crontab(str(schedule.value), timezone=schedule.timezone)
        if schedule.type is ScheduleType.INTERVAL:
            if isinstance(schedule.value, (int, float)):
                return IntervalTrigger(seconds=float(schedule.value), timezone=schedule.timezone)
            if isinstance(schedule.value, dict):
                return IntervalTrigger(timezone=schedule.timezone, **schedule.value)
            raise ValueError("Interval schedule requires seconds or kwargs dict")
        raise ValueError(f"Unknown schedule type: {schedule.type}")

    def list_jobs(self) -> list[dict]:
        jobs = []
        for job in self.scheduler.get_jobs():
            jobs.append(
                {
                    "id": job.id,
                    "next_run_time": getattr(job, "next_run_time", None),
                    "trigger": str(job.trigger),
                }
            )
        return jobs


__all__ = ["APSchedulerAdapter", "CLEANUP_JOB_ID", "FETCH_JOB_ID", "USAGE_RESET_JOB_ID"]
