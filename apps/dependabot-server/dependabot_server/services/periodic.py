"""Fixed-interval background tasks.

- missed-trigger sweep: re-trigger updates whose cron occurrence passed unrun
- job cleaner: reconcile stale jobs, purge expired ones
- synchronization: resync every project without triggering jobs

Each tick publishes messages rather than doing the work itself. Stopping
pauses the timers and waits for a running tick to finish.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Awaitable
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from dependabot_server.config import settings
from dependabot_server.db import db_session
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.models import UpdateJob
from dependabot_server.services.message_bus import TOPIC_PROCESS_SYNCHRONIZATION
from dependabot_server.services.message_bus import TOPIC_TRIGGER_UPDATE_JOBS
from dependabot_server.services.message_bus import TOPIC_UPDATE_JOB_CHECK_STATE
from dependabot_server.services.message_bus import MessageBus
from dependabot_server.services.schedule import is_missed
from dependabot_server.services.synchronizer import load_updates

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PeriodicTasks:
    def __init__(self, bus: MessageBus, session_factory: Any = None):
        self.bus = bus
        self.session_factory = session_factory
        self.scheduler: AsyncIOScheduler | None = None
        self._running: set[asyncio.Task] = set()
        self._started = False

    async def start(self) -> None:
        if self._started:
            return
        self.scheduler = AsyncIOScheduler(timezone="UTC", event_loop=asyncio.get_running_loop())
        self._add("missed_trigger_checker", self.check_missed_triggers, minutes=settings.missed_trigger_interval_minutes)
        self._add("update_jobs_cleaner", self.clean_update_jobs, minutes=settings.cleanup_interval_minutes)
        self._add("synchronization", self.request_synchronization, hours=settings.synchronization_interval_hours)
        self.scheduler.start()
        self._started = True
        logger.info("Periodic tasks started")

    async def stop(self) -> None:
        if not self._started:
            return
        self.scheduler.pause()
        if self._running:
            logger.info(f"Waiting for {len(self._running)} running periodic task(s)")
            await asyncio.gather(*self._running, return_exceptions=True)
        self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("Periodic tasks stopped")

    def _add(self, name: str, func: Callable[[], Awaitable[int]], **interval: int) -> None:
        self.scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(**interval),
            args=[name, func],
            id=name,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.info(f"{name} scheduled (every {interval})")

    async def _tick(self, name: str, func: Callable[[], Awaitable[int]]) -> None:
        task = asyncio.current_task()
        self._running.add(task)
        try:
            count = await func()
            logger.debug(f"{name}: {count} message(s) published")
        except Exception as e:
            logger.exception(f"{name} failed: {e}")
        finally:
            self._running.discard(task)

    # ------------------------------------------------------------------
    # Missed triggers
    # ------------------------------------------------------------------

    async def check_missed_triggers(self, reference: datetime | None = None) -> int:
        return await asyncio.to_thread(self._check_missed_triggers_sync, reference or _utcnow())

    def _check_missed_triggers_sync(self, reference: datetime) -> int:
        published = 0
        with db_session(self.session_factory) as db:
            for project in db.query(Project).all():
                repositories = db.query(Repository).filter(Repository.project_id == project.id).all()
                for repository in repositories:
                    if repository.sync_exception:
                        continue
                    try:
                        updates = load_updates(repository)
                    except Exception as e:
                        logger.warning(f"Skipping {repository.id}: stored updates unreadable ({e})")
                        continue

                    for index, update in enumerate(updates):
                        try:
                            missed = is_missed(update.schedule, update.latest_update, reference)
                        except Exception as e:
                            logger.warning(f"Skipping {repository.slug} update {index}: {e}")
                            continue
                        if not missed:
                            continue

                        logger.info(
                            f"Schedule was missed for {repository.slug} ({update.package_ecosystem} "
                            f"{update.directory or update.directories}); triggering now"
                        )
                        self.bus.enqueue(
                            db,
                            TOPIC_TRIGGER_UPDATE_JOBS,
                            {
                                "project_id": project.id,
                                "repository_id": repository.id,
                                "repository_update_id": index,
                                "trigger": UpdateJobTrigger.MISSED_SCHEDULE.value,
                            },
                        )
                        published += 1
        return published

    # ------------------------------------------------------------------
    # Job cleanup
    # ------------------------------------------------------------------

    async def clean_update_jobs(self, now: datetime | None = None) -> int:
        return await asyncio.to_thread(self._clean_update_jobs_sync, now or _utcnow())

    def _clean_update_jobs_sync(self, now: datetime) -> int:
        published = 0
        with db_session(self.session_factory) as db:
            stale_cutoff = now - timedelta(minutes=settings.stale_job_minutes)
            stale = (
                db.query(UpdateJob)
                .filter(UpdateJob.status.in_([UpdateJobStatus.SCHEDULED.value, UpdateJobStatus.RUNNING.value]))
                .filter(UpdateJob.created <= stale_cutoff)
                .order_by(UpdateJob.created)
                .limit(settings.cleanup_batch_size)
                .all()
            )
            for job in stale:
                self.bus.enqueue(db, TOPIC_UPDATE_JOB_CHECK_STATE, {"job_id": job.id})
                published += 1

            expiry_cutoff = now - timedelta(days=settings.job_retention_days)
            expired = (
                db.query(UpdateJob)
                .filter(UpdateJob.created <= expiry_cutoff)
                .order_by(UpdateJob.created)
                .limit(settings.cleanup_batch_size)
                .all()
            )
            for job in expired:
                db.delete(job)  # the log lives on the row
            if expired:
                logger.info(f"Deleted {len(expired)} update jobs older than {settings.job_retention_days} days")
        return published

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    async def request_synchronization(self) -> int:
        return await asyncio.to_thread(self._request_synchronization_sync)

    def _request_synchronization_sync(self) -> int:
        published = 0
        with db_session(self.session_factory) as db:
            for project in db.query(Project).all():
                self.bus.enqueue(db, TOPIC_PROCESS_SYNCHRONIZATION, {"project_id": project.id, "trigger": False})
                published += 1
        return published
