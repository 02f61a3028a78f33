"""Callbacks used by running update jobs to report back.

Every request carries the job's own key. Pull request operations are
accepted and logged only; opening, updating and closing pull requests is
left to the updater's platform client.
"""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from fastapi import APIRouter
from fastapi import Depends
from fastapi import Header
from fastapi import HTTPException
from fastapi import status
from sqlalchemy.orm import Session

from dependabot_server.db import get_db
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.models import UpdateJob
from dependabot_server.schemas import DependencyListData
from dependabot_server.schemas import PayloadWithData
from dependabot_server.schemas import UpdateJobErrorData
from dependabot_server.services.synchronizer import load_updates
from dependabot_server.services.synchronizer import store_updates

router = APIRouter(prefix="/update_jobs", tags=["update_jobs"])
logger = logging.getLogger(__name__)


@dataclass
class JobContext:
    job: UpdateJob
    repository: Repository
    project: Project


def _presented_key(authorization: str | None) -> str | None:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if value and scheme.lower() in ("bearer", "token"):
        return value.strip()
    return authorization.strip()


def require_job(
    id: str,
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> JobContext:
    job = db.get(UpdateJob, id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Update job not found")

    key = _presented_key(authorization)
    if not key or not hmac.compare_digest(key, job.auth_key):
        logger.warning(f"Rejected callback for job {id}: key mismatch")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid job key")

    repository = db.get(Repository, job.repository_id)
    if repository is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Repository not found")
    project = db.get(Project, job.project_id)
    if project is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return JobContext(job=job, repository=repository, project=project)


# ---------------------------------------------------------------------------
# Pull requests (logged only)
# ---------------------------------------------------------------------------


@router.post("/{id}/create_pull_request")
def create_pull_request(body: PayloadWithData, ctx: JobContext = Depends(require_job)):
    logger.info(f"Job {ctx.job.id} wants to create a pull request in {ctx.repository.slug}: {sorted(body.data)}")
    return {}


@router.post("/{id}/update_pull_request")
def update_pull_request(body: PayloadWithData, ctx: JobContext = Depends(require_job)):
    logger.info(f"Job {ctx.job.id} wants to update a pull request in {ctx.repository.slug}: {sorted(body.data)}")
    return {}


@router.post("/{id}/close_pull_request")
def close_pull_request(body: PayloadWithData, ctx: JobContext = Depends(require_job)):
    logger.info(
        f"Job {ctx.job.id} wants to close a pull request in {ctx.repository.slug} "
        f"(reason={body.data.get('reason')})"
    )
    return {}


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


def _record_error(body: PayloadWithData, ctx: JobContext, db: Session) -> dict:
    try:
        data = UpdateJobErrorData.model_validate(body.data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    ctx.job.error = {"type": data.error_type, "detail": data.error_details}
    db.commit()
    logger.info(f"Job {ctx.job.id} reported error {data.error_type}")
    return {}


@router.post("/{id}/record_update_job_error")
def record_update_job_error(body: PayloadWithData, ctx: JobContext = Depends(require_job), db: Session = Depends(get_db)):
    return _record_error(body, ctx, db)


@router.post("/{id}/record_update_job_unknown_error")
def record_update_job_unknown_error(
    body: PayloadWithData,
    ctx: JobContext = Depends(require_job),
    db: Session = Depends(get_db),
):
    return _record_error(body, ctx, db)


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


@router.patch("/{id}/mark_as_processed")
def mark_as_processed(body: PayloadWithData, ctx: JobContext = Depends(require_job)):
    logger.info(f"Job {ctx.job.id} marked as processed (base commit {body.data.get('base-commit-sha')})")
    return {}


@router.post("/{id}/update_dependency_list")
def update_dependency_list(body: PayloadWithData, ctx: JobContext = Depends(require_job), db: Session = Depends(get_db)):
    try:
        data = DependencyListData.model_validate(body.data)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    job = ctx.job
    updates = load_updates(ctx.repository)
    target = next(
        (
            u
            for u in updates
            if u.package_ecosystem == job.package_ecosystem
            and u.directory == job.directory
            and (u.directories or None) == (job.directories or None)
        ),
        None,
    )
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Repository update not found")

    target.files = list(data.dependency_files)
    store_updates(ctx.repository, updates)
    db.commit()
    logger.info(f"Job {job.id} reported {len(data.dependencies)} dependencies in {len(data.dependency_files)} files")
    return {}


@router.post("/{id}/record_ecosystem_versions")
def record_ecosystem_versions(body: PayloadWithData, ctx: JobContext = Depends(require_job)):
    logger.debug(f"Job {ctx.job.id} ecosystem versions: {body.data}")
    return {}


@router.post("/{id}/increment_metric")
def increment_metric(body: PayloadWithData, ctx: JobContext = Depends(require_job)):
    logger.debug(f"Job {ctx.job.id} metric {body.data.get('metric')}: {body.data.get('tags')}")
    return {}
