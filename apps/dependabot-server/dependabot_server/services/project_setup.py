"""Upserts projects declared in settings at startup."""
from __future__ import annotations

import json
import logging
import secrets
import uuid
from typing import Any

from pydantic import BaseModel
from pydantic import Field
from pydantic import TypeAdapter
from sqlalchemy.orm import Session

from dependabot_server.enums import MergeStrategy
from dependabot_server.enums import ProjectType
from dependabot_server.models import Project
from dependabot_server.services.provider import AzureDevOpsProvider
from dependabot_server.services.provider import parse_project_url
from dependabot_server.services.synchronizer import Synchronizer

logger = logging.getLogger(__name__)


class ProjectSetup(BaseModel):
    url: str
    token: str
    auto_complete: bool = False
    auto_complete_ignore_configs: list[int] | None = None
    auto_complete_merge_strategy: MergeStrategy | None = None
    auto_approve: bool = False
    secrets: dict[str, str] = Field(default_factory=dict)
    github_token: str | None = None
    debug: bool = False


def parse_setups(raw: str | None) -> list[ProjectSetup]:
    if not raw or not raw.strip():
        return []
    return TypeAdapter(list[ProjectSetup]).validate_python(json.loads(raw))


def _snapshot(project: Project) -> dict[str, Any]:
    return {
        c.name: getattr(project, c.key)
        for c in Project.__table__.columns
        if c.name not in ("updated", "etag", "synchronized")
    }


async def apply_setups(
    db: Session,
    setups: list[ProjectSetup],
    provider: AzureDevOpsProvider,
    synchronizer: Synchronizer,
) -> int:
    """Create or refresh projects; sync and register hooks when anything changed."""
    logger.info(f"Found {len(setups)} projects to setup")
    changed = 0
    for setup in setups:
        url = parse_project_url(setup.url)
        project = db.query(Project).filter(Project.url == setup.url).first()
        before = None
        if project is None:
            project = Project(
                id=f"prj_{uuid.uuid4().hex}",
                type=ProjectType.AZURE.value,
                url=setup.url,
                token=setup.token,
                password=secrets.token_urlsafe(32),
                secrets={},
            )
            db.add(project)
            logger.info(f"Adding new project: {setup.url}")
        else:
            before = _snapshot(project)

        project.token = setup.token
        project.github_token = setup.github_token
        project.debug = setup.debug
        project.auto_complete_enabled = setup.auto_complete
        project.auto_complete_ignore_configs = setup.auto_complete_ignore_configs
        project.auto_complete_merge_strategy = (
            setup.auto_complete_merge_strategy.value if setup.auto_complete_merge_strategy else None
        )
        project.auto_approve_enabled = setup.auto_approve
        project.secrets = dict(setup.secrets)

        remote = await provider.get_project(project)
        project.provider_id = remote.id
        project.name = remote.name
        project.description = remote.description
        project.slug = f"{url.organization_name}/{remote.name}"
        project.private = remote.private

        if before is None or before != _snapshot(project):
            changed += 1
            logger.info(f"Project {setup.url} updated")
    db.commit()

    if changed:
        for project in db.query(Project).all():
            # startup syncs never trigger jobs
            await synchronizer.synchronize_project(db, project, trigger=False)
            await provider.create_or_update_subscriptions(project)
    return changed
