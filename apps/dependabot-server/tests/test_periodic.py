from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from dependabot_server.models import BusMessage
from dependabot_server.models import UpdateJob
from dependabot_server.services.message_bus import TOPIC_PROCESS_SYNCHRONIZATION
from dependabot_server.services.message_bus import TOPIC_TRIGGER_UPDATE_JOBS
from dependabot_server.services.message_bus import TOPIC_UPDATE_JOB_CHECK_STATE
from dependabot_server.services.periodic import PeriodicTasks
from tests.conftest import _make_job
from tests.conftest import _make_project
from tests.conftest import _make_repository
from tests.conftest import _make_update

REFERENCE = datetime(2023, 1, 24, 5, 0, tzinfo=timezone.utc)


@pytest.fixture()
def periodic(bus, session_factory):
    return PeriodicTasks(bus, session_factory=session_factory)


@pytest.mark.asyncio
async def test_missed_schedule_is_detected(periodic, db_session):
    project = _make_project(db_session)
    repository = _make_repository(
        db_session,
        project,
        updates=[
            _make_update(schedule={"interval": "daily", "time": "03:45"}, latest_update="2023-01-24T03:45:00+00:00"),
            _make_update(
                package_ecosystem="npm",
                schedule={"interval": "daily", "time": "03:30"},
                latest_update="2023-01-23T03:30:00+00:00",
            ),
        ],
    )

    assert await periodic.check_missed_triggers(REFERENCE) == 1

    message = db_session.query(BusMessage).one()
    assert message.topic == TOPIC_TRIGGER_UPDATE_JOBS
    assert message.payload == {
        "project_id": project.id,
        "repository_id": repository.id,
        "repository_update_id": 1,
        "trigger": "missed_schedule",
    }


@pytest.mark.asyncio
async def test_never_run_update_is_missed(periodic, db_session):
    project = _make_project(db_session)
    _make_repository(
        db_session,
        project,
        updates=[
            _make_update(schedule={"interval": "daily", "time": "03:45"}, latest_update="2023-01-24T03:45:00+00:00"),
            _make_update(package_ecosystem="npm", schedule={"interval": "daily", "time": "03:30"}),
        ],
    )

    assert await periodic.check_missed_triggers(REFERENCE) == 1
    assert db_session.query(BusMessage).one().payload["repository_update_id"] == 1


@pytest.mark.asyncio
async def test_nothing_missed(periodic, db_session):
    project = _make_project(db_session)
    _make_repository(
        db_session,
        project,
        updates=[
            _make_update(schedule={"interval": "daily", "time": "03:45"}, latest_update="2023-01-24T03:45:00+00:00"),
            _make_update(
                package_ecosystem="npm",
                schedule={"interval": "daily", "time": "03:30"},
                latest_update="2023-01-24T03:30:00+00:00",
            ),
        ],
    )

    assert await periodic.check_missed_triggers(REFERENCE) == 0
    assert db_session.query(BusMessage).count() == 0


@pytest.mark.asyncio
async def test_bad_timezone_does_not_abort_sweep(periodic, db_session, caplog):
    project = _make_project(db_session)
    _make_repository(
        db_session,
        project,
        updates=[
            _make_update(schedule={"interval": "daily", "timezone": "Nowhere/Invalid"}),
            _make_update(package_ecosystem="npm"),
        ],
    )
    _make_repository(db_session, project, name="api", sync_exception="broken")

    with caplog.at_level(logging.WARNING, logger="dependabot_server.services.periodic"):
        assert await periodic.check_missed_triggers(REFERENCE) == 1
    assert any("update 0" in r.getMessage() for r in caplog.records if r.levelno == logging.WARNING)
    assert db_session.query(BusMessage).one().payload["repository_update_id"] == 1


@pytest.mark.asyncio
async def test_cleanup_removes_expired_jobs_and_their_logs(periodic, db_session):
    project = _make_project(db_session)
    repository = _make_repository(db_session, project)
    now = datetime.now(timezone.utc)
    _make_job(db_session, repository, id="job-ancient", status="succeeded", log="lots of output", created=now - timedelta(days=91))
    _make_job(db_session, repository, id="job-recent", status="succeeded", log="recent", created=now - timedelta(days=30))

    await periodic.clean_update_jobs(now)

    db_session.expire_all()
    assert db_session.get(UpdateJob, "job-ancient") is None
    assert db_session.get(UpdateJob, "job-recent").log == "recent"


@pytest.mark.asyncio
async def test_cleanup_requests_state_checks_for_stale_jobs(periodic, db_session):
    project = _make_project(db_session)
    repository = _make_repository(db_session, project)
    now = datetime.now(timezone.utc)
    _make_job(db_session, repository, id="job-stale", status="running", created=now - timedelta(minutes=11))
    _make_job(db_session, repository, id="job-pending", status="scheduled", created=now - timedelta(minutes=30))
    _make_job(db_session, repository, id="job-fresh", status="running", created=now - timedelta(minutes=2))
    _make_job(db_session, repository, id="job-finished", status="failed", created=now - timedelta(minutes=30))

    assert await periodic.clean_update_jobs(now) == 2

    messages = db_session.query(BusMessage).all()
    assert {m.topic for m in messages} == {TOPIC_UPDATE_JOB_CHECK_STATE}
    assert sorted(m.payload["job_id"] for m in messages) == ["job-pending", "job-stale"]


@pytest.mark.asyncio
async def test_cleanup_is_batched(periodic, db_session, monkeypatch):
    from dependabot_server.config import settings

    monkeypatch.setattr(settings, "cleanup_batch_size", 2)
    project = _make_project(db_session)
    repository = _make_repository(db_session, project)
    now = datetime.now(timezone.utc)
    for i in range(3):
        _make_job(db_session, repository, id=f"job-{i}", status="succeeded", created=now - timedelta(days=100 + i))

    await periodic.clean_update_jobs(now)
    db_session.expire_all()
    assert db_session.query(UpdateJob).count() == 1

    await periodic.clean_update_jobs(now)
    db_session.expire_all()
    assert db_session.query(UpdateJob).count() == 0


@pytest.mark.asyncio
async def test_synchronization_requested_for_every_project(periodic, db_session):
    _make_project(db_session)
    _make_project(db_session, id="prj_other", url="https://dev.azure.com/contoso/other")

    assert await periodic.request_synchronization() == 2

    messages = db_session.query(BusMessage).all()
    assert {m.topic for m in messages} == {TOPIC_PROCESS_SYNCHRONIZATION}
    assert sorted(m.payload["project_id"] for m in messages) == ["prj_other", "prj_test"]
    assert all(m.payload["trigger"] is False for m in messages)


@pytest.mark.asyncio
async def test_stop_waits_for_running_tick(periodic):
    started = asyncio.Event()
    finished = []

    async def slow():
        started.set()
        await asyncio.sleep(0.05)
        finished.append(True)
        return 0

    await periodic.start()
    task = asyncio.create_task(periodic._tick("slow", slow))
    await started.wait()
    await periodic.stop()

    assert finished == [True]
    assert task.done()
    assert periodic.scheduler.running is False
