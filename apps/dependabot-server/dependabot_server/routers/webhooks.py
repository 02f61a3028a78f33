"""Service hook ingestion and (re)registration."""
from __future__ import annotations

import hmac
import logging

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import status
from fastapi.security import HTTPBasic
from fastapi.security import HTTPBasicCredentials
from sqlalchemy.orm import Session

from dependabot_server.db import get_db
from dependabot_server.enums import WebhookEventType
from dependabot_server.models import Project
from dependabot_server.routers.management import require_project
from dependabot_server.schemas import SubscriptionsOut
from dependabot_server.schemas import WebhookEvent
from dependabot_server.services.message_bus import TOPIC_PROCESS_SYNCHRONIZATION
from dependabot_server.services.message_bus import message_bus
from dependabot_server.services.provider import AzureDevOpsProvider
from dependabot_server.services.provider import get_provider

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("azure",)

_basic = HTTPBasic(auto_error=False)


# Registered before /{provider} so "register" is not taken as a provider name
@router.post("/register", response_model=SubscriptionsOut)
async def register_webhooks(
    project: Project = Depends(require_project),
    provider: AzureDevOpsProvider = Depends(get_provider),
):
    ids = await provider.create_or_update_subscriptions(project)
    return SubscriptionsOut(ids=ids)


def _authenticate(credentials: HTTPBasicCredentials | None, db: Session) -> Project:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Basic credentials required",
            headers={"WWW-Authenticate": "Basic"},
        )
    project = db.get(Project, credentials.username)
    if project is None or not hmac.compare_digest(credentials.password, project.password):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return project


@router.post("/{provider}")
def receive_webhook(
    provider: str,
    event: WebhookEvent,
    credentials: HTTPBasicCredentials | None = Depends(_basic),
    db: Session = Depends(get_db),
):
    """Handle platform events.

    Events handled:
    - git-push to the default branch -> synchronize that repository and trigger
    - pull request updated/merged   -> logged
    - pull request comment          -> logged when addressed to @dependabot
    Anything else is acknowledged so the platform keeps the subscription enabled.
    """
    if provider.lower() not in SUPPORTED_PROVIDERS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown provider '{provider}'")

    project = _authenticate(credentials, db)
    event_type = WebhookEventType.parse(event.event_type)
    resource = event.resource or {}
    logger.info(f"Webhook {event.event_type} for project {project.id} (notification={event.notification_id})")

    if event_type == WebhookEventType.GIT_PUSH:
        _handle_push(project, resource, db)
    elif event_type in (WebhookEventType.PULL_REQUEST_UPDATED, WebhookEventType.PULL_REQUEST_MERGED):
        _handle_pull_request(event_type, resource)
    elif event_type == WebhookEventType.PULL_REQUEST_COMMENT:
        _handle_pull_request_comment(resource)
    else:
        logger.debug(f"Unhandled webhook event type: {event.event_type}")

    return {"ok": True}


# ---------------------------------------------------------------------------
# Event handlers
# ---------------------------------------------------------------------------


def _handle_push(project: Project, resource: dict, db: Session) -> None:
    repository = resource.get("repository") or {}
    repository_provider_id = repository.get("id")
    default_branch = repository.get("defaultBranch")
    ref_names = [u.get("name") for u in resource.get("refUpdates") or [] if u.get("name")]

    if not repository_provider_id or not default_branch:
        logger.warning("Push event without repository id or default branch; ignoring")
        return
    if not any(name.lower() == default_branch.lower() for name in ref_names):
        logger.debug(f"Push to {ref_names} does not touch {default_branch}; ignoring")
        return

    message_bus.enqueue(
        db,
        TOPIC_PROCESS_SYNCHRONIZATION,
        {"project_id": project.id, "repository_provider_id": str(repository_provider_id), "trigger": True},
    )
    db.commit()
    logger.info(f"Push to default branch of {repository.get('name')}; synchronization requested")


def _handle_pull_request(event_type: WebhookEventType, resource: dict) -> None:
    repository = resource.get("repository") or {}
    logger.info(
        f"{event_type.value}: PR {resource.get('pullRequestId')} in {repository.get('name')} "
        f"status={resource.get('status')} merge={resource.get('mergeStatus')}"
    )


def _handle_pull_request_comment(resource: dict) -> None:
    comment = resource.get("comment") or {}
    content = (comment.get("content") or "").strip()
    if not content.lower().startswith("@dependabot"):
        return
    pull_request = resource.get("pullRequest") or {}
    logger.info(f"Dependabot command on PR {pull_request.get('pullRequestId')}: {content}")
