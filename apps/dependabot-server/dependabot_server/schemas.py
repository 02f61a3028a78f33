from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import AliasChoices
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


# ---------------------------------------------------------------------------
# Management API
# ---------------------------------------------------------------------------


class SyncRequest(BaseModel):
    trigger: bool = False


class TriggerUpdateRequest(BaseModel):
    update_index: int = Field(validation_alias=AliasChoices("updateIndex", "update_index", "id"), ge=0)


class RepositoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    name: str | None = None
    slug: str | None = None
    provider_id: str | None = None
    latest_commit: str | None = None
    config_file_contents: str | None = None
    sync_exception: str | None = None
    updates: list[dict[str, Any]] = Field(default_factory=list)
    registries: dict[str, Any] = Field(default_factory=dict)
    created: datetime | None = None
    updated: datetime | None = None
    etag: str | None = None


class RepositoryList(BaseModel):
    repositories: list[RepositoryOut]


class UpdateJobOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    repository_id: str
    repository_slug: str | None = None
    commit: str | None = None
    package_ecosystem: str
    package_manager: str
    directory: str | None = None
    directories: list[str] | None = None
    resources_cpu: float
    resources_memory: float
    status: str
    trigger: str
    created: datetime | None = None
    start: datetime | None = None
    end: datetime | None = None
    duration: int | None = None
    error: dict[str, Any] | None = None
    etag: str | None = None


class UpdateJobList(BaseModel):
    jobs: list[UpdateJobOut]


class UpdateJobLogs(BaseModel):
    id: str
    log: str | None = None


class SubscriptionsOut(BaseModel):
    ids: list[str]


# ---------------------------------------------------------------------------
# Update job callbacks
# ---------------------------------------------------------------------------


class PayloadWithData(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)


class UpdateJobErrorData(BaseModel):
    error_type: str = Field(validation_alias=AliasChoices("error-type", "error_type", "type"))
    error_details: Any = Field(default=None, validation_alias=AliasChoices("error-details", "error_details", "detail"))


class DependencyListData(BaseModel):
    dependencies: list[Any] = Field(default_factory=list)
    dependency_files: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("dependency_files", "dependency-files", "files"),
    )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class WebhookEvent(BaseModel):
    subscription_id: str | None = Field(default=None, validation_alias=AliasChoices("subscriptionId", "subscription_id"))
    notification_id: int | None = Field(default=None, validation_alias=AliasChoices("notificationId", "notification_id"))
    event_type: str = Field(validation_alias=AliasChoices("eventType", "event_type"))
    resource: dict[str, Any] | None = None
