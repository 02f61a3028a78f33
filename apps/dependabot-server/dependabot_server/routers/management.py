"""Management API: tenant-scoped synchronization, triggers and job inspection."""
from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import Response
from fastapi import status
from sqlalchemy.orm import Session

from dependabot_server.config import settings
from dependabot_server.db import get_db
from dependabot_server.enums import UpdateJobTrigger
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.models import UpdateJob
from dependabot_server.schemas import RepositoryList
from dependabot_server.schemas import RepositoryOut
from dependabot_server.schemas import SyncRequest
from dependabot_server.schemas import TriggerUpdateRequest
from dependabot_server.schemas import UpdateJobList
from dependabot_server.schemas import UpdateJobLogs
from dependabot_server.schemas import UpdateJobOut
from dependabot_server.services.message_bus import TOPIC_PROCESS_SYNCHRONIZATION
from dependabot_server.services.message_bus import TOPIC_TRIGGER_UPDATE_JOBS
from dependabot_server.services.message_bus import message_bus

router = APIRouter(prefix="/mgnt", tags=["management"])
logger = logging.getLogger(__name__)

JOBS_PAGE_SIZE = 100


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


def _bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


def require_project(
    authorization: str | None = Header(default=None),
    x_project_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> Project:
    """Authenticate the caller and resolve the tenant from X-Project-Id."""
    token = _bearer(authorization)
    if not token or not hmac.compare_digest(token, settings.management_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Bearer token required")
    if not x_project_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Project-Id header required")

    project = db.get(Project, x_project_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


def _get_repository(db: Session, project: Project, repository_id: str) -> Repository:
    repository = (
        db.query(Repository)
        .filter(Repository.id == repository_id, Repository.project_id == project.id)
        .first()
    )
    if repository is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Repository not found")
    return repository


def _get_job(db: Session, repository: Repository, job_id: str) -> UpdateJob:
    job = (
        db.query(UpdateJob)
        .filter(UpdateJob.id == job_id, UpdateJob.repository_id == repository.id)
        .first()
    )
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Update job not found")
    return job


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@router.post("/sync", status_code=status.HTTP_204_NO_CONTENT)
def sync_project(
    body: SyncRequest,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    message_bus.enqueue(db, TOPIC_PROCESS_SYNCHRONIZATION, {"project_id": project.id, "trigger": body.trigger})
    db.commit()
    logger.info(f"Synchronization requested for project {project.id} (trigger={body.trigger})")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/repos/{repository_id}/sync", status_code=status.HTTP_204_NO_CONTENT)
def sync_repository(
    repository_id: str,
    body: SyncRequest,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    repository = _get_repository(db, project, repository_id)
    message_bus.enqueue(
        db,
        TOPIC_PROCESS_SYNCHRONIZATION,
        {"project_id": project.id, "repository_id": repository.id, "trigger": body.trigger},
    )
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/repos/{repository_id}/trigger", status_code=status.HTTP_204_NO_CONTENT)
def trigger_update(
    repository_id: str,
    body: TriggerUpdateRequest,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    repository = _get_repository(db, project, repository_id)
    if repository.sync_exception:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Repository configuration is invalid: {repository.sync_exception}",
        )
    if body.update_index >= len(repository.updates or []):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Update not found in repository")

    message_bus.enqueue(
        db,
        TOPIC_TRIGGER_UPDATE_JOBS,
        {
            "project_id": project.id,
            "repository_id": repository.id,
            "repository_update_id": body.update_index,
            "trigger": UpdateJobTrigger.MANUAL.value,
        },
    )
    db.commit()
    logger.info(f"Manual trigger for {repository.slug} update {body.update_index}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get("/repos", response_model=RepositoryList)
def list_repositories(project: Project = Depends(require_project), db: Session = Depends(get_db)):
    repositories = (
        db.query(Repository)
        .filter(Repository.project_id == project.id)
        .order_by(Repository.name)
        .all()
    )
    return RepositoryList(repositories=[RepositoryOut.model_validate(r) for r in repositories])


@router.get("/repos/{repository_id}", response_model=RepositoryOut)
def get_repository(repository_id: str, project: Project = Depends(require_project), db: Session = Depends(get_db)):
    return RepositoryOut.model_validate(_get_repository(db, project, repository_id))


@router.get("/repos/{repository_id}/jobs", response_model=UpdateJobList)
def list_update_jobs(repository_id: str, project: Project = Depends(require_project), db: Session = Depends(get_db)):
    repository = _get_repository(db, project, repository_id)
    jobs = (
        db.query(UpdateJob)
        .filter(UpdateJob.repository_id == repository.id)
        .order_by(UpdateJob.created.desc())
        .limit(JOBS_PAGE_SIZE)
        .all()
    )
    return UpdateJobList(jobs=[UpdateJobOut.model_validate(j) for j in jobs])


@router.get("/repos/{repository_id}/jobs/{job_id}", response_model=UpdateJobOut)
def get_update_job(
    repository_id: str,
    job_id: str,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    repository = _get_repository(db, project, repository_id)
    return UpdateJobOut.model_validate(_get_job(db, repository, job_id))


@router.get("/repos/{repository_id}/jobs/{job_id}/logs", response_model=UpdateJobLogs)
def get_update_job_logs(
    repository_id: str,
    job_id: str,
    project: Project = Depends(require_project),
    db: Session = Depends(get_db),
):
    repository = _get_repository(db, project, repository_id)
    job = _get_job(db, repository, job_id)
    return UpdateJobLogs(id=job.id, log=job.log)
