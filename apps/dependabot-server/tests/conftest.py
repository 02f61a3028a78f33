from __future__ import annotations

import os
import uuid
from datetime import datetime
from datetime import timezone
from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Set required env vars before importing app code
os.environ.setdefault("DEPENDABOT_SERVER_DATABASE_URL", "sqlite:///")
os.environ.setdefault("DEPENDABOT_SERVER_MANAGEMENT_TOKEN", "test-mgnt")
os.environ.setdefault("DEPENDABOT_SERVER_BACKGROUND_ENABLED", "false")
os.environ.setdefault("DEPENDABOT_SERVER_PUBLIC_URL", "https://dependabot.example.com")

from dependabot_server.db import Base, get_db  # noqa: E402
from dependabot_server.main import app  # noqa: E402
from dependabot_server.models import Project, Repository, UpdateJob  # noqa: E402
from dependabot_server.services.configuration import RepositoryUpdate  # noqa: E402
from dependabot_server.services.message_bus import KeyedLocks, MessageBus  # noqa: E402
from dependabot_server.services.provider import ConfigurationFile, ProviderRepository  # noqa: E402

PROJECT_ID = "prj_test"
PROJECT_URL = "https://dev.azure.com/contoso/dependabot"
MGNT_HEADERS = {"Authorization": "Bearer test-mgnt", "X-Project-Id": PROJECT_ID}

TWO_UPDATES_CONFIG = """\
version: 2
updates:
  - package-ecosystem: "docker"
    directory: "/"
    schedule:
      interval: "weekly"
      time: "03:00"
      day: "sunday"
  - package-ecosystem: "npm"
    directory: "/web"
    schedule:
      interval: "daily"
      time: "02:00"
"""


@pytest.fixture()
def session_factory(tmp_path):
    db_url = f"sqlite:///{tmp_path}/test.db"
    engine = create_engine(db_url, connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    try:
        yield factory
    finally:
        engine.dispose()


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(db_session):
    def _override_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = _override_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def bus(session_factory):
    return MessageBus(session_factory=session_factory, poll_seconds=0.01, max_attempts=3, concurrency=2, lease_seconds=60)


@pytest.fixture()
def locks():
    return KeyedLocks()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _make_project(db, **overrides) -> Project:
    values = dict(
        id=PROJECT_ID,
        url=PROJECT_URL,
        token="pat-token",
        password="hook-password",
        name="dependabot",
        provider_id="prov-project",
        slug="contoso/dependabot",
        secrets={"REGISTRY_TOKEN": "s3cret"},
    )
    values.update(overrides)
    project = Project(**values)
    db.add(project)
    db.commit()
    return project


def _make_update(**overrides) -> dict:
    values = {
        "package_ecosystem": "docker",
        "directory": "/",
        "schedule": {"interval": "daily", "time": "02:00"},
    }
    values.update(overrides)
    return RepositoryUpdate.model_validate(values).to_stored()


def _make_repository(db, project: Project, updates: list[dict] | None = None, **overrides) -> Repository:
    values = dict(
        id=f"repo_{uuid.uuid4().hex[:8]}",
        project_id=project.id,
        name="web",
        slug="contoso/dependabot/_git/web",
        provider_id=f"prov-{uuid.uuid4().hex[:8]}",
        latest_commit="abc123",
        updates=updates if updates is not None else [_make_update()],
        registries={},
    )
    values.update(overrides)
    repository = Repository(**values)
    db.add(repository)
    db.commit()
    return repository


def _make_job(db, repository: Repository, **overrides) -> UpdateJob:
    values = dict(
        id=f"job-{uuid.uuid4().hex}",
        project_id=repository.project_id,
        repository_id=repository.id,
        repository_slug=repository.slug,
        package_ecosystem="docker",
        package_manager="docker",
        directory="/",
        resources_cpu=0.5,
        resources_memory=1.0,
        auth_key="job-key",
        status="running",
        trigger="scheduled",
        created=datetime.now(timezone.utc),
    )
    values.update(overrides)
    job = UpdateJob(**values)
    db.add(job)
    db.commit()
    return job


def _make_provider(repositories: list[ProviderRepository], files: dict[str, ConfigurationFile | None]):
    """Provider double keyed by provider repository id."""
    provider = MagicMock()
    provider.get_repositories = AsyncMock(return_value=repositories)
    provider.get_repository = AsyncMock(
        side_effect=lambda project, repository_id: next(r for r in repositories if r.id == repository_id)
    )
    provider.get_configuration_file = AsyncMock(side_effect=lambda project, repository_id: files.get(repository_id))
    provider.create_or_update_subscriptions = AsyncMock(return_value=["sub-1", "sub-2"])
    return provider
