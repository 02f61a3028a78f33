"""Message handlers for synchronization and the update job lifecycle.

Store access runs in worker threads; only provider and runner calls are
awaited on the event loop.
"""
from __future__ import annotations

import asyncio
import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any

from sqlalchemy.orm import Session

from dependabot_server.config import settings
from dependabot_server.db import async_db_session
from dependabot_server.db import db_session
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.models import UpdateJob
from dependabot_server.services.configuration import RepositoryUpdate
from dependabot_server.services.message_bus import TOPIC_PROCESS_SYNCHRONIZATION
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_CREATED
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_DELETED
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_UPDATED
from dependabot_server.services.message_bus import TOPIC_TRIGGER_UPDATE_JOBS
from dependabot_server.services.message_bus import TOPIC_UPDATE_JOB_CHECK_STATE
from dependabot_server.services.message_bus import TOPIC_UPDATE_JOB_COLLECT_LOGS
from dependabot_server.services.message_bus import Message
from dependabot_server.services.message_bus import MessageBus
from dependabot_server.services.resources import UpdateJobResources
from dependabot_server.services.resources import package_manager_for
from dependabot_server.services.runner import RunnerState
from dependabot_server.services.runner import UpdateRunner
from dependabot_server.services.synchronizer import Synchronizer
from dependabot_server.services.synchronizer import load_updates
from dependabot_server.services.synchronizer import repository_lock_key
from dependabot_server.services.synchronizer import store_updates
from dependabot_server.services.update_scheduler import UpdateScheduler

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    # time-ordered so ids sort by creation
    return f"job-{time.time_ns():019d}{uuid.uuid4().hex[:4]}"


@dataclass
class PendingJob:
    """Detached rows needed to provision one job."""

    project: Project
    repository: Repository
    update: RepositoryUpdate
    job: UpdateJob


def _find_repository(db: Session, project_id: str | None, repository_id: str | None) -> Repository | None:
    return (
        db.query(Repository)
        .filter(Repository.id == repository_id, Repository.project_id == project_id)
        .first()
    )


def _sync_latest_status(db: Session, job: UpdateJob) -> None:
    repository = db.get(Repository, job.repository_id)
    if repository is None:
        return
    updates = load_updates(repository)
    changed = False
    for update in updates:
        if update.latest_job_id == job.id:
            update.latest_job_status = job.status
            changed = True
    if changed:
        store_updates(repository, updates)


class Consumers:
    def __init__(
        self,
        bus: MessageBus,
        synchronizer: Synchronizer,
        runner: UpdateRunner,
        update_scheduler: UpdateScheduler | None = None,
        session_factory: Any = None,
    ):
        self.bus = bus
        self.synchronizer = synchronizer
        self.runner = runner
        self.update_scheduler = update_scheduler
        self.session_factory = session_factory

    def register(self) -> None:
        self.bus.subscribe(TOPIC_PROCESS_SYNCHRONIZATION, self.process_synchronization)
        self.bus.subscribe(TOPIC_TRIGGER_UPDATE_JOBS, self.trigger_update_jobs)
        self.bus.subscribe(TOPIC_UPDATE_JOB_CHECK_STATE, self.check_update_job_state)
        self.bus.subscribe(TOPIC_UPDATE_JOB_COLLECT_LOGS, self.collect_update_job_logs)
        for topic in (TOPIC_REPOSITORY_CREATED, TOPIC_REPOSITORY_UPDATED, TOPIC_REPOSITORY_DELETED):
            self.bus.subscribe(topic, self.repository_changed)

    # ------------------------------------------------------------------
    # Synchronization
    # ------------------------------------------------------------------

    async def process_synchronization(self, message: Message) -> None:
        payload = message.payload
        trigger = bool(payload.get("trigger", False))
        async with async_db_session(self.session_factory) as db:
            project = await asyncio.to_thread(db.get, Project, payload.get("project_id"))
            if project is None:
                logger.warning(f"Project {payload.get('project_id')} not found; skipping synchronization")
                return

            repository_id = payload.get("repository_id")
            repository_provider_id = payload.get("repository_provider_id")
            if repository_id or repository_provider_id:
                await self.synchronizer.synchronize_repository(
                    db,
                    project,
                    repository_id=repository_id,
                    repository_provider_id=repository_provider_id,
                    trigger=trigger,
                )
            else:
                await self.synchronizer.synchronize_project(db, project, trigger=trigger)

    async def repository_changed(self, message: Message) -> None:
        if self.update_scheduler is not None:
            await self.update_scheduler.handle_repository_event(message)

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    async def trigger_update_jobs(self, message: Message) -> None:
        payload = message.payload
        trigger = UpdateJobTrigger(payload.get("trigger") or UpdateJobTrigger.SCHEDULED.value)
        lock_key = await asyncio.to_thread(self._lock_key_sync, payload)
        if lock_key is None:
            return

        async with self.synchronizer.locks.hold(lock_key):
            pending = await asyncio.to_thread(self._create_jobs_sync, payload, trigger, message.id)
            for item in pending:
                await self._provision(item)

    def _lock_key_sync(self, payload: dict[str, Any]) -> str | None:
        with db_session(self.session_factory) as db:
            project = db.get(Project, payload.get("project_id"))
            if project is None:
                logger.warning(f"Project {payload.get('project_id')} not found; skipping trigger")
                return None
            repository = _find_repository(db, project.id, payload.get("repository_id"))
            if repository is None:
                logger.warning(f"Repository {payload.get('repository_id')} not found; skipping trigger")
                return None
            return repository_lock_key(project.id, repository.provider_id or repository.id)

    def _create_jobs_sync(self, payload: dict[str, Any], trigger: UpdateJobTrigger, event_bus_id: str) -> list[PendingJob]:
        with db_session(self.session_factory) as db:
            project = db.get(Project, payload.get("project_id"))
            repository = _find_repository(db, payload.get("project_id"), payload.get("repository_id"))
            if project is None or repository is None:
                return []
            if repository.sync_exception:
                logger.info(f"Repository {repository.slug} has an invalid configuration; not creating jobs")
                return []

            updates = load_updates(repository)
            index = payload.get("repository_update_id")
            if index is None:
                selected = list(range(len(updates)))
            elif 0 <= index < len(updates):
                selected = [index]
            else:
                logger.warning(f"Update {index} not found in repository {repository.slug}; skipping trigger")
                return []

            jobs: list[tuple[int, UpdateJob]] = []
            created = False
            for i in selected:
                job = self._existing_job(db, repository, updates[i], event_bus_id)
                if job is None:
                    job = self._new_job(project, repository, updates[i], trigger, event_bus_id)
                    db.add(job)
                    created = True
                elif job.status != UpdateJobStatus.SCHEDULED.value:
                    continue
                jobs.append((i, job))

            if created:
                store_updates(repository, updates)
            db.commit()

            # hand detached, fully loaded copies to the provisioning step
            for obj in (project, repository, *(job for _, job in jobs)):
                db.refresh(obj)
            db.expunge_all()
            return [PendingJob(project, repository, updates[i], job) for i, job in jobs]

    def _existing_job(self, db: Session, repository: Repository, update: RepositoryUpdate, event_bus_id: str) -> UpdateJob | None:
        existing = (
            db.query(UpdateJob)
            .filter(
                UpdateJob.repository_id == repository.id,
                UpdateJob.package_ecosystem == update.package_ecosystem,
                UpdateJob.directory == update.directory,
                UpdateJob.event_bus_id == event_bus_id,
            )
            .all()
        )
        for job in existing:
            if (job.directories or None) == (update.directories or None):
                logger.info(f"A job for {repository.slug} ({update.package_ecosystem}) already exists for message {event_bus_id}")
                return job
        return None

    def _new_job(
        self,
        project: Project,
        repository: Repository,
        update: RepositoryUpdate,
        trigger: UpdateJobTrigger,
        event_bus_id: str,
    ) -> UpdateJob:
        ecosystem = update.package_ecosystem
        resources = UpdateJobResources.from_ecosystem(ecosystem)
        job = UpdateJob(
            id=new_job_id(),
            project_id=project.id,
            repository_id=repository.id,
            repository_slug=repository.slug,
            event_bus_id=event_bus_id,
            commit=repository.latest_commit,
            package_ecosystem=ecosystem,
            package_manager=package_manager_for(ecosystem),
            directory=update.directory,
            directories=update.directories,
            resources_cpu=resources.cpu,
            resources_memory=resources.memory,
            auth_key=uuid.uuid4().hex,
            status=UpdateJobStatus.SCHEDULED.value,
            trigger=trigger.value,
            created=_utcnow(),
        )
        update.latest_job_id = job.id
        update.latest_job_status = job.status
        update.latest_update = job.created
        logger.info(f"Created {trigger.value} job {job.id} for {repository.slug} ({ecosystem})")
        return job

    async def _provision(self, item: PendingJob) -> None:
        try:
            await self.runner.create(item.project, item.repository, item.update, item.job)
        except Exception as e:
            logger.exception(f"Provisioning job {item.job.id} failed; it stays scheduled until reconciled: {e}")
            return
        await asyncio.to_thread(self._mark_running_sync, item.job.id)

    def _mark_running_sync(self, job_id: str) -> None:
        with db_session(self.session_factory) as db:
            job = db.get(UpdateJob, job_id)
            if job is None or job.status != UpdateJobStatus.SCHEDULED.value:
                return
            job.status = UpdateJobStatus.RUNNING.value
            _sync_latest_status(db, job)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def check_update_job_state(self, message: Message) -> None:
        job_id = message.payload.get("job_id")
        job = await asyncio.to_thread(self._load_job_sync, job_id)
        if job is None:
            logger.warning(f"Update job {job_id} not found; skipping state check")
            return
        if UpdateJobStatus(job.status).is_terminal:
            return

        state = await self.runner.get_state(job)
        now = _utcnow()
        if state is None:
            if now - job.created > timedelta(minutes=settings.hung_job_minutes):
                # hung jobs are removed outright rather than marked failed
                logger.warning(f"Update job {job.id} still running after {settings.hung_job_minutes} minutes; deleting")
                await self.runner.delete(job)
                await asyncio.to_thread(self._delete_job_sync, job.id)
            return

        await asyncio.to_thread(self._record_state_sync, job.id, state, now)

    def _load_job_sync(self, job_id: str | None) -> UpdateJob | None:
        with db_session(self.session_factory) as db:
            job = db.get(UpdateJob, job_id) if job_id else None
            if job is not None:
                db.expunge(job)
            return job

    def _delete_job_sync(self, job_id: str) -> None:
        with db_session(self.session_factory) as db:
            job = db.get(UpdateJob, job_id)
            if job is not None:
                db.delete(job)

    def _record_state_sync(self, job_id: str, state: RunnerState, now: datetime) -> None:
        with db_session(self.session_factory) as db:
            job = db.get(UpdateJob, job_id)
            if job is None or UpdateJobStatus(job.status).is_terminal:
                return

            job.status = state.status.value
            job.start = state.start or job.start
            job.end = state.end or now
            if job.start is not None and job.end is not None:
                job.duration = math.ceil((job.end - job.start).total_seconds() * 1000)
            _sync_latest_status(db, job)

            # logs are collected a while after the container ended, or right away for old jobs
            collect_at = job.end + timedelta(seconds=settings.log_collection_delay_seconds)
            self.bus.enqueue(db, TOPIC_UPDATE_JOB_COLLECT_LOGS, {"job_id": job.id}, delay=max(collect_at - now, timedelta()))
            logger.info(f"Update job {job.id} finished as {job.status}")

    async def collect_update_job_logs(self, message: Message) -> None:
        job_id = message.payload.get("job_id")
        job = await asyncio.to_thread(self._load_job_sync, job_id)
        if job is None:
            logger.warning(f"Update job {job_id} not found; skipping log collection")
            return
        if not UpdateJobStatus(job.status).is_terminal:
            return

        logs = await self.runner.get_logs(job)
        await asyncio.to_thread(self._store_logs_sync, job.id, logs)
        await self.runner.delete(job)

    def _store_logs_sync(self, job_id: str, logs: str | None) -> None:
        with db_session(self.session_factory) as db:
            job = db.get(UpdateJob, job_id)
            if job is not None:
                job.log = logs if logs and logs.strip() else None
