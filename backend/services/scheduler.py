"""Periodic background jobs run inside the API process.

Jobs are plain sync callables. The loop checks every
``SCHEDULER_TICK_SECONDS`` and runs each due job in a worker thread; a job
that is still running is skipped on the next tick.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from config import settings
from db.database import SessionLocal
from services.apple_health_service import run_auto_sync
from services.storage import HealthStorage

logger = logging.getLogger(__name__)


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    fn: Callable[[], object]
    last_run: float = field(default_factory=time.monotonic)
    is_running: bool = False


class Scheduler:
    def __init__(self, tick_seconds: float | None = None):
        self.tick_seconds = float(tick_seconds or settings.SCHEDULER_TICK_SECONDS)
        self.jobs: dict[str, ScheduledJob] = {}
        self._task: asyncio.Task | None = None

    def schedule(self, name: str, interval_minutes: float, fn: Callable[[], object]) -> None:
        self.jobs[name] = ScheduledJob(name=name, interval_seconds=interval_minutes * 60, fn=fn)
        logger.info(f'Scheduled job "{name}" to run every {interval_minutes} minutes')

    def remove(self, name: str) -> None:
        self.jobs.pop(name, None)

    async def run_due(self, now: float | None = None) -> list[str]:
        now = time.monotonic() if now is None else now
        ran = []
        for job in list(self.jobs.values()):
            if job.is_running or now - job.last_run < job.interval_seconds:
                continue
            job.is_running = True
            logger.info(f'Running scheduled job "{job.name}"')
            try:
                await asyncio.to_thread(job.fn)
                ran.append(job.name)
            except Exception as exc:
                logger.error(f'Scheduled job "{job.name}" failed: {exc}')
            finally:
                job.last_run = max(now, time.monotonic())
                job.is_running = False
        return ran

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.tick_seconds)
            await self.run_due()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


def apple_health_sync_job() -> None:
    db = SessionLocal()
    try:
        synced = run_auto_sync(HealthStorage(db))
        logger.info(f"Daily Apple Health sync completed for {synced} users")
    finally:
        db.close()


def purge_sessions_job() -> None:
    db = SessionLocal()
    try:
        removed = HealthStorage(db).purge_expired_sessions()
        if removed:
            logger.info(f"Purged {removed} expired sessions")
    finally:
        db.close()


def build_default_scheduler() -> Scheduler:
    scheduler = Scheduler()
    scheduler.schedule("daily-apple-health-sync", settings.APPLE_HEALTH_SYNC_INTERVAL_MINUTES, apple_health_sync_job)
    scheduler.schedule("purge-expired-sessions", settings.SESSION_PURGE_INTERVAL_MINUTES, purge_sessions_job)
    return scheduler
