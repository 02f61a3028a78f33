"""Configuration synchronization against a provider double."""
from __future__ import annotations

from datetime import datetime
from datetime import timezone

import pytest

from dependabot_server.models import BusMessage
from dependabot_server.models import Repository
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_CREATED
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_DELETED
from dependabot_server.services.message_bus import TOPIC_REPOSITORY_UPDATED
from dependabot_server.services.message_bus import TOPIC_TRIGGER_UPDATE_JOBS
from dependabot_server.services.provider import ConfigurationFile
from dependabot_server.services.provider import ProviderRepository
from dependabot_server.services.synchronizer import Synchronizer
from dependabot_server.services.synchronizer import load_updates
from dependabot_server.services.synchronizer import store_updates
from tests.conftest import TWO_UPDATES_CONFIG
from tests.conftest import _make_project
from tests.conftest import _make_provider


def _repo(id="r1", name="web", **kwargs) -> ProviderRepository:
    return ProviderRepository(id=id, name=name, default_branch="refs/heads/main", **kwargs)


def _file(content=TWO_UPDATES_CONFIG, commit="c1") -> ConfigurationFile:
    return ConfigurationFile(path=".github/dependabot.yml", commit_id=commit, content=content)


def _topics(db) -> list[str]:
    return [m.topic for m in db.query(BusMessage).order_by(BusMessage.created).all()]


@pytest.mark.asyncio
async def test_fresh_repository_two_updates(db_session, bus, locks):
    project = _make_project(db_session)
    provider = _make_provider([_repo()], {"r1": _file()})
    synchronizer = Synchronizer(provider, bus, locks=locks)

    repository = await synchronizer.synchronize_repository(db_session, project, repository_provider_id="r1")

    assert repository is not None
    assert len(repository.updates) == 2
    assert repository.sync_exception is None
    assert repository.latest_commit == "c1"
    assert repository.slug == "contoso/dependabot/_git/web"
    assert repository.config_file_contents == TWO_UPDATES_CONFIG
    assert _topics(db_session) == [TOPIC_REPOSITORY_CREATED]


@pytest.mark.asyncio
async def test_malformed_configuration_records_exception(db_session, bus, locks):
    project = _make_project(db_session)
    provider = _make_provider([_repo()], {"r1": _file(content="version: 2\nupdates: [\n")})
    synchronizer = Synchronizer(provider, bus, locks=locks)

    repository = await synchronizer.synchronize_repository(
        db_session, project, repository_provider_id="r1", trigger=True
    )

    assert repository.sync_exception
    assert repository.updates == []
    assert TOPIC_TRIGGER_UPDATE_JOBS not in _topics(db_session)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "schedule, message",
    [
        ("      interval: daily\n      time: 24:30\n", "not a valid time"),
        ("      interval: daily\n      timezone: Mars/Olympus\n", "unknown timezone"),
    ],
)
async def test_unschedulable_entry_records_exception(db_session, bus, locks, schedule, message):
    content = "version: 2\nupdates:\n  - package-ecosystem: npm\n    directory: /\n    schedule:\n" + schedule
    project = _make_project(db_session)
    synchronizer = Synchronizer(_make_provider([_repo()], {"r1": _file(content=content)}), bus, locks=locks)

    repository = await synchronizer.synchronize_repository(db_session, project, repository_provider_id="r1", trigger=True)

    assert message in repository.sync_exception
    assert repository.updates == []
    assert TOPIC_TRIGGER_UPDATE_JOBS not in _topics(db_session)


@pytest.mark.asyncio
async def test_same_commit_is_a_no_op(db_session, bus, locks):
    project = _make_project(db_session)
    provider = _make_provider([_repo()], {"r1": _file()})
    synchronizer = Synchronizer(provider, bus, locks=locks)

    first = await synchronizer.synchronize_repository(db_session, project, repository_provider_id="r1", trigger=True)
    etag = first.etag
    count = db_session.query(BusMessage).count()

    second = await synchronizer.synchronize_repository(db_session, project, repository_provider_id="r1", trigger=True)

    assert second.id == first.id
    assert second.latest_commit == "c1"
    assert second.etag == etag
    assert db_session.query(BusMessage).count() == count


@pytest.mark.asyncio
async def test_trigger_publishes_new_updates(db_session, bus, locks):
    project = _make_project(db_session)
    provider = _make_provider([_repo()], {"r1": _file()})
    synchronizer = Synchronizer(provider, bus, locks=locks)

    repository = await synchronizer.synchronize_repository(
        db_session, project, repository_provider_id="r1", trigger=True
    )

    triggers = db_session.query(BusMessage).filter(BusMessage.topic == TOPIC_TRIGGER_UPDATE_JOBS).all()
    assert sorted(m.payload["repository_update_id"] for m in triggers) == [0, 1]
    assert all(m.payload["repository_id"] == repository.id for m in triggers)
    assert all(m.payload["trigger"] == "synchronization" for m in triggers)


@pytest.mark.asyncio
async def test_bookkeeping_survives_resync(db_session, bus, locks):
    project = _make_project(db_session)
    files = {"r1": _file()}
    provider = _make_provider([_repo()], files)
    synchronizer = Synchronizer(provider, bus, locks=locks)
    repository = await synchronizer.synchronize_repository(db_session, project, repository_provider_id="r1")

    updates = load_updates(repository)
    ran_at = datetime(2023, 1, 24, 5, 0, tzinfo=timezone.utc)
    updates[0].latest_job_id = "job-1"
    updates[0].latest_job_status = "succeeded"
    updates[0].latest_update = ran_at
    updates[0].files = ["/Dockerfile"]
    store_updates(repository, updates)
    db_session.commit()

    # npm entry removed, pip entry added
    files["r1"] = _file(
        content=TWO_UPDATES_CONFIG.split("  - package-ecosystem: \"npm\"")[0]
        + "  - package-ecosystem: pip\n    directory: /\n    schedule:\n      interval: daily\n",
        commit="c2",
    )
    repository = await synchronizer.synchronize_repository(db_session, project, repository_id=repository.id)

    docker, pip = load_updates(repository)
    assert docker.latest_job_id == "job-1"
    assert docker.latest_job_status == "succeeded"
    assert docker.latest_update == ran_at
    assert docker.files == ["/Dockerfile"]
    assert pip.package_ecosystem == "pip"
    assert pip.latest_job_id is None
    assert pip.latest_update is None
    assert repository.latest_commit == "c2"


@pytest.mark.asyncio
async def test_removed_configuration_deletes_repository(db_session, bus, locks):
    project = _make_project(db_session)
    files = {"r1": _file()}
    provider = _make_provider([_repo()], files)
    synchronizer = Synchronizer(provider, bus, locks=locks)
    repository = await synchronizer.synchronize_repository(db_session, project, repository_provider_id="r1")
    repository_id = repository.id

    files["r1"] = None
    await synchronizer.synchronize_repository(db_session, project, repository_id=repository_id)

    assert db_session.get(Repository, repository_id) is None
    assert TOPIC_REPOSITORY_DELETED in _topics(db_session)


@pytest.mark.asyncio
async def test_project_sync_skips_forks_and_prunes_stale(db_session, bus, locks):
    project = _make_project(db_session)
    repositories = [
        _repo("r1", "web"),
        _repo("r2", "api"),
        _repo("r3", "archived", is_disabled=True),
        _repo("r4", "fork", is_fork=True),
    ]
    files = {"r1": _file(), "r2": _file(commit="c9"), "r3": _file(), "r4": _file()}
    provider = _make_provider(repositories, files)
    synchronizer = Synchronizer(provider, bus, locks=locks)

    await synchronizer.synchronize_project(db_session, project, trigger=False)
    stored = {r.provider_id for r in db_session.query(Repository).all()}
    assert stored == {"r1", "r2"}
    assert project.synchronized is not None

    # r2 loses its file, r1 changes commit
    files["r2"] = None
    files["r1"] = _file(commit="c2")
    await synchronizer.synchronize_project(db_session, project, trigger=False)

    stored = {r.provider_id: r for r in db_session.query(Repository).all()}
    assert set(stored) == {"r1"}
    assert stored["r1"].latest_commit == "c2"
    topics = _topics(db_session)
    assert topics.count(TOPIC_REPOSITORY_CREATED) == 2
    assert TOPIC_REPOSITORY_UPDATED in topics
    assert TOPIC_REPOSITORY_DELETED in topics
    assert TOPIC_TRIGGER_UPDATE_JOBS not in topics


@pytest.mark.asyncio
async def test_rename_forces_update_at_same_commit(db_session, bus, locks):
    project = _make_project(db_session)
    repositories = [_repo("r1", "web")]
    provider = _make_provider(repositories, {"r1": _file()})
    synchronizer = Synchronizer(provider, bus, locks=locks)
    await synchronizer.synchronize_repository(db_session, project, repository_provider_id="r1")

    repositories[0] = _repo("r1", "website")
    repository = await synchronizer.synchronize_repository(db_session, project, repository_provider_id="r1")

    assert repository.name == "website"
    assert repository.slug == "contoso/dependabot/_git/website"


@pytest.mark.asyncio
async def test_provider_errors_propagate_without_mutation(db_session, bus, locks):
    from dependabot_server.services.provider import ProviderError

    project = _make_project(db_session)
    provider = _make_provider([_repo()], {})
    provider.get_configuration_file.side_effect = ProviderError("rate limited", status_code=429)
    synchronizer = Synchronizer(provider, bus, locks=locks)

    with pytest.raises(ProviderError) as exc:
        await synchronizer.synchronize_repository(db_session, project, repository_provider_id="r1")

    assert exc.value.kind == "rate_limited"
    assert db_session.query(Repository).count() == 0
    assert db_session.query(BusMessage).count() == 0
