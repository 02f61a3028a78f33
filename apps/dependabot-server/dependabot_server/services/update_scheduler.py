"""Cron timers that trigger update jobs on each entry's own schedule.

One APScheduler job per (repository, update index). Timers are rebuilt from
the stored repository whenever it is created, updated or deleted.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from dependabot_server.db import db_session
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.models import Repository
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_DELETED
from dependabot_server.services.message_bus import TOPIC_TRIGGER_UPDATE_JOBS
from dependabot_server.services.message_bus import Message
from dependabot_server.services.message_bus import MessageBus
from dependabot_server.services.schedule import generate_cron
from dependabot_server.services.schedule import make_trigger
from dependabot_server.services.synchronizer import load_updates

logger = logging.getLogger(__name__)


def _prefix(repository_id: str) -> str:
    return f"update:{repository_id}:"


def _job_id(repository_id: str, index: int) -> str:
    return f"{_prefix(repository_id)}{index}"


class UpdateScheduler:
    def __init__(self, bus: MessageBus, session_factory: Any = None, scheduler: AsyncIOScheduler | None = None):
        self.bus = bus
        self.session_factory = session_factory
        self.scheduler = scheduler or AsyncIOScheduler(timezone="UTC")
        self._started = False

    def start(self) -> None:
        if not self._started:
            self.scheduler.start()
            self._started = True
            logger.info("Update scheduler started")

    def stop(self) -> None:
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Update scheduler stopped")

    def load_all(self) -> int:
        count = 0
        with db_session(self.session_factory) as db:
            for repository in db.query(Repository).all():
                count += self.create_or_update(repository)
        logger.info(f"Loaded {count} update schedules")
        return count

    def create_or_update(self, repository: Repository) -> int:
        """Replace the repository's timers; returns how many were scheduled."""
        self.remove(repository.id)
        if repository.sync_exception:
            return 0

        scheduled = 0
        for index, update in enumerate(load_updates(repository)):
            try:
                trigger = make_trigger(update.schedule)
            except Exception as e:
                logger.warning(f"Invalid schedule for {repository.slug} update {index}: {e}")
                continue
            self.scheduler.add_job(
                self._fire,
                trigger=trigger,
                id=_job_id(repository.id, index),
                args=[repository.project_id, repository.id, index],
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            logger.debug(f"Scheduled {repository.slug} update {index}: {generate_cron(update.schedule)}")
            scheduled += 1
        return scheduled

    def remove(self, repository_id: str) -> None:
        prefix = _prefix(repository_id)
        for job in self.scheduler.get_jobs():
            if job.id.startswith(prefix):
                self.scheduler.remove_job(job.id)

    def scheduled_ids(self, repository_id: str) -> list[str]:
        prefix = _prefix(repository_id)
        return sorted(job.id for job in self.scheduler.get_jobs() if job.id.startswith(prefix))

    async def _fire(self, project_id: str, repository_id: str, index: int) -> None:
        try:
            await self.bus.publish(
                TOPIC_TRIGGER_UPDATE_JOBS,
                {
                    "project_id": project_id,
                    "repository_id": repository_id,
                    "repository_update_id": index,
                    "trigger": UpdateJobTrigger.SCHEDULED.value,
                },
            )
        except Exception as e:
            logger.exception(f"Scheduled trigger for {repository_id} update {index} failed: {e}")

    async def handle_repository_event(self, message: Message) -> None:
        repository_id = message.payload.get("repository_id")
        if not repository_id:
            return
        if message.topic == TOPIC_REPOSITORY_DELETED:
            self.remove(repository_id)
            return

        repository = await asyncio.to_thread(self._load_repository_sync, repository_id)
        if repository is None:
            self.remove(repository_id)
            return
        self.create_or_update(repository)

    def _load_repository_sync(self, repository_id: str) -> Repository | None:
        with db_session(self.session_factory) as db:
            repository = db.get(Repository, repository_id)
            if repository is not None:
                db.expunge(repository)
            return repository
