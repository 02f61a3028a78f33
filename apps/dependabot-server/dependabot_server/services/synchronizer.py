"""Keeps stored repositories in step with their configuration files.

A repository is only rewritten when the commit that last touched its
configuration file changes (or the repository was renamed). Upstream errors
propagate to the caller before anything is mutated.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime
from datetime import timezone

from sqlalchemy.orm import Session

from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.services.configuration import ConfigurationError
from dependabot_server.services.configuration import RepositoryUpdate
from dependabot_server.services.configuration import parse_configuration
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_CREATED
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_DELETED
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_UPDATED
from dependabot_server.services.message_bus import TOPIC_TRIGGER_UPDATE_JOBS
from dependabot_server.services.message_bus import KeyedLocks
from dependabot_server.services.message_bus import MessageBus
from dependabot_server.services.provider import AzureDevOpsProvider
from dependabot_server.services.provider import ConfigurationFile
from dependabot_server.services.provider import ProviderRepository
from dependabot_server.services.provider import parse_project_url
from dependabot_server.services.schedule import is_missed

logger = logging.getLogger(__name__)

# Serializes synchronization and job triggering per repository
repository_locks = KeyedLocks()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def repository_lock_key(project_id: str, provider_id: str) -> str:
    return f"{project_id}:{provider_id}"


def _find_repository(db: Session, project_id: str, criterion) -> Repository | None:
    return db.query(Repository).filter(Repository.project_id == project_id, criterion).first()


def load_updates(repository: Repository) -> list[RepositoryUpdate]:
    return [RepositoryUpdate.from_stored(item) for item in (repository.updates or [])]


def store_updates(repository: Repository, updates: list[RepositoryUpdate]) -> None:
    # reassign so the JSON column is flagged dirty
    repository.updates = [u.to_stored() for u in updates]


class Synchronizer:
    def __init__(
        self,
        provider: AzureDevOpsProvider,
        bus: MessageBus,
        locks: KeyedLocks | None = None,
    ):
        self.provider = provider
        self.bus = bus
        self.locks = locks or repository_locks

    async def synchronize_project(self, db: Session, project: Project, trigger: bool) -> None:
        """Sync every repository of the project and drop those without configuration.

        The session is only touched from worker threads, one step at a time.
        """
        project_id = project.id
        provider_repositories = await self.provider.get_repositories(project)

        pairs: list[tuple[ProviderRepository, ConfigurationFile | None]] = []
        for provider_repository in provider_repositories:
            if provider_repository.is_disabled or provider_repository.is_fork:
                logger.info(f"Skipping {provider_repository.name}: disabled or a fork")
                continue
            config_file = await self.provider.get_configuration_file(project, provider_repository.id)
            pairs.append((provider_repository, config_file))

        keep = {pr.id for pr, config_file in pairs if config_file is not None}
        await asyncio.to_thread(self._prune_sync, db, project, keep)

        for provider_repository, config_file in pairs:
            async with self.locks.hold(repository_lock_key(project_id, provider_repository.id)):
                await asyncio.to_thread(self._apply_sync, db, project, provider_repository, config_file, trigger)

        await asyncio.to_thread(self._mark_synchronized_sync, db, project)

    def _prune_sync(self, db: Session, project: Project, keep: set[str]) -> None:
        stale = (
            db.query(Repository)
            .filter(Repository.project_id == project.id)
            .filter(Repository.provider_id.notin_(keep) if keep else Repository.provider_id.isnot(None))
            .all()
        )
        for repository in stale:
            self.bus.enqueue(db, TOPIC_REPOSITORY_DELETED, {"project_id": project.id, "repository_id": repository.id})
            db.delete(repository)
        if stale:
            logger.info(f"Deleted {len(stale)} repositories no longer configured in project {project.id}")
        db.commit()

    def _mark_synchronized_sync(self, db: Session, project: Project) -> None:
        project.synchronized = _utcnow()
        db.commit()

    async def synchronize_repository(
        self,
        db: Session,
        project: Project,
        repository_id: str | None = None,
        repository_provider_id: str | None = None,
        trigger: bool = False,
    ) -> Repository | None:
        """Sync one repository, addressed by internal or provider id."""
        project_id = project.id
        repository = None
        if repository_id:
            repository = await asyncio.to_thread(_find_repository, db, project_id, Repository.id == repository_id)
            if repository is None:
                logger.warning(f"Repository {repository_id} not found in project {project_id}")
                return None
            repository_provider_id = repository.provider_id

        if not repository_provider_id:
            raise ValueError("A repository id or provider id is required")

        async with self.locks.hold(repository_lock_key(project_id, repository_provider_id)):
            provider_repository = await self.provider.get_repository(project, repository_provider_id)
            if provider_repository.is_disabled or provider_repository.is_fork:
                logger.info(f"Skipping sync for {provider_repository.name}: disabled or a fork")
                return repository

            config_file = await self.provider.get_configuration_file(project, provider_repository.id)
            return await asyncio.to_thread(self._apply_sync, db, project, provider_repository, config_file, trigger)

    def _apply_sync(
        self,
        db: Session,
        project: Project,
        provider_repository: ProviderRepository,
        config_file: ConfigurationFile | None,
        trigger: bool,
    ) -> Repository | None:
        repository = _find_repository(db, project.id, Repository.provider_id == provider_repository.id)
        repository = self._apply(db, project, repository, provider_repository, config_file, trigger)
        db.commit()
        return repository

    def _apply(
        self,
        db: Session,
        project: Project,
        repository: Repository | None,
        provider_repository: ProviderRepository,
        config_file: ConfigurationFile | None,
        trigger: bool,
    ) -> Repository | None:
        if config_file is None:
            if repository is not None:
                logger.info(f"Configuration file removed from {repository.slug}; deleting repository {repository.id}")
                self.bus.enqueue(db, TOPIC_REPOSITORY_DELETED, {"project_id": project.id, "repository_id": repository.id})
                db.delete(repository)
            else:
                logger.debug(f"No configuration file in {provider_repository.name}")
            return None

        created = False
        commit_changed = False
        if repository is None:
            repository = Repository(
                id=f"repo_{uuid.uuid4().hex}",
                project_id=project.id,
                provider_id=provider_repository.id,
                updates=[],
                registries={},
            )
            db.add(repository)
            created = True
            commit_changed = True
        elif repository.name != provider_repository.name:
            commit_changed = True

        if not commit_changed and repository.latest_commit == config_file.commit_id:
            logger.debug(f"Configuration of {repository.slug} unchanged at {config_file.commit_id}")
            return repository

        url = parse_project_url(project.url)
        repository.name = provider_repository.name
        repository.slug = url.make_repository_slug(provider_repository.name)
        repository.latest_commit = config_file.commit_id
        repository.config_file_contents = config_file.content

        previous = {u.identity: u for u in load_updates(repository)}
        try:
            configuration = parse_configuration(config_file.content)
        except ConfigurationError as e:
            logger.warning(f"Configuration file for '{repository.slug}' is invalid: {e}")
            repository.sync_exception = str(e)
            repository.updates = []
            repository.registries = {}
            self._announce(db, project, repository, created)
            return repository

        updates: list[RepositoryUpdate] = []
        for update in configuration.updates:
            prior = previous.get(update.identity)
            updates.append(
                RepositoryUpdate(
                    **update.model_dump(),
                    files=prior.files if prior else [],
                    latest_job_id=prior.latest_job_id if prior else None,
                    latest_job_status=prior.latest_job_status if prior else None,
                    latest_update=prior.latest_update if prior else None,
                )
            )

        store_updates(repository, updates)
        repository.registries = {
            name: registry.model_dump(mode="json", exclude_none=True)
            for name, registry in configuration.registries.items()
        }
        repository.sync_exception = None
        self._announce(db, project, repository, created)

        if trigger:
            self._trigger_due(db, project, repository, updates)
        return repository

    def _announce(self, db: Session, project: Project, repository: Repository, created: bool) -> None:
        topic = TOPIC_REPOSITORY_CREATED if created else TOPIC_REPOSITORY_UPDATED
        self.bus.enqueue(db, topic, {"project_id": project.id, "repository_id": repository.id})

    def _trigger_due(self, db: Session, project: Project, repository: Repository, updates: list[RepositoryUpdate]) -> None:
        now = _utcnow()
        for index, update in enumerate(updates):
            if update.latest_update is not None:
                try:
                    due = is_missed(update.schedule, update.latest_update, now)
                except Exception as e:
                    logger.warning(f"Cannot evaluate schedule of {repository.slug} update {index}: {e}")
                    continue
                if not due:
                    continue
            self.bus.enqueue(
                db,
                TOPIC_TRIGGER_UPDATE_JOBS,
                {
                    "project_id": project.id,
                    "repository_id": repository.id,
                    "repository_update_id": index,
                    "trigger": UpdateJobTrigger.SYNCHRONIZATION.value,
                },
            )
