from __future__ import annotations

import uuid
from datetime import datetime
from datetime import timezone
from typing import Any

from sqlalchemy import JSON
from sqlalchemy import Boolean
from sqlalchemy import DateTime
from sqlalchemy import Float
from sqlalchemy import ForeignKey
from sqlalchemy import Integer
from sqlalchemy import String
from sqlalchemy import Text
from sqlalchemy.orm import Mapped
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from dependabot_server.db import Base
from dependabot_server.enums import ProjectType
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.enums import UpdateJobTrigger


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_etag(_version: Any = None) -> str:
    return uuid.uuid4().hex


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes, including on SQLite which drops tzinfo."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None and value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(32), default=ProjectType.AZURE.value)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    slug: Mapped[str | None] = mapped_column(String(255), nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    url: Mapped[str] = mapped_column(Text, unique=True)
    token: Mapped[str] = mapped_column(Text)
    password: Mapped[str] = mapped_column(String(128))
    private: Mapped[bool] = mapped_column(Boolean, default=True)
    debug: Mapped[bool] = mapped_column(Boolean, default=False)
    github_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    secrets: Mapped[dict] = mapped_column(JSON, default=dict)

    # Pull request policy handed to the updater
    auto_complete_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_complete_ignore_configs: Mapped[list | None] = mapped_column(JSON, nullable=True)
    auto_complete_merge_strategy: Mapped[str | None] = mapped_column(String(32), nullable=True)
    auto_approve_enabled: Mapped[bool] = mapped_column(Boolean, default=False)

    synchronized: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)
    etag = mapped_column(String(32), nullable=False)

    repositories: Mapped[list["Repository"]] = relationship(
        "Repository",
        back_populates="project",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": etag, "version_id_generator": _new_etag}


class Repository(Base):
    __tablename__ = "repositories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    slug: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Config file state
    latest_commit: Mapped[str | None] = mapped_column(String(64), nullable=True)
    config_file_contents: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_exception: Mapped[str | None] = mapped_column(Text, nullable=True)
    updates: Mapped[list] = mapped_column(JSON, default=list)  # list of RepositoryUpdate dicts
    registries: Mapped[dict] = mapped_column(JSON, default=dict)

    created: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
    updated: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow)
    etag = mapped_column(String(32), nullable=False)

    project: Mapped[Project] = relationship("Project", back_populates="repositories")

    __mapper_args__ = {"version_id_col": etag, "version_id_generator": _new_etag}


class UpdateJob(Base):
    """One execution attempt.

    Project and repository identifiers are value copies, not foreign keys, so
    jobs outlive the rows they were created from.
    """

    __tablename__ = "update_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), index=True)
    repository_id: Mapped[str] = mapped_column(String(64), index=True)
    repository_slug: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_bus_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    commit: Mapped[str | None] = mapped_column(String(64), nullable=True)

    package_ecosystem: Mapped[str] = mapped_column(String(64))
    package_manager: Mapped[str] = mapped_column(String(64))
    directory: Mapped[str | None] = mapped_column(Text, nullable=True)
    directories: Mapped[list | None] = mapped_column(JSON, nullable=True)

    resources_cpu: Mapped[float] = mapped_column(Float)
    resources_memory: Mapped[float] = mapped_column(Float)
    auth_key: Mapped[str] = mapped_column(String(64))

    status: Mapped[str] = mapped_column(String(32), default=UpdateJobStatus.SCHEDULED.value, index=True)
    trigger: Mapped[str] = mapped_column(String(32), default=UpdateJobTrigger.SCHEDULED.value)
    created: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, index=True)
    start: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    end: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)  # milliseconds

    error: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    log: Mapped[str | None] = mapped_column(Text, nullable=True)
    etag = mapped_column(String(32), nullable=False)

    __mapper_args__ = {"version_id_col": etag, "version_id_generator": _new_etag}

    @property
    def resource_name(self) -> str:
        return f"dependabot-{self.id}"


class BusMessage(Base):
    __tablename__ = "bus_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    topic: Mapped[str] = mapped_column(String(64), index=True)
    payload: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default="queued", index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5)
    available_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, index=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow)
