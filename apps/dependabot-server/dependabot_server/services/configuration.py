"""Parsing and validation of the repository's ``dependabot.yml``.

The file uses hyphenated keys; models accept those aliases on input and
expose snake_case attributes. Stored copies on ``Repository.updates`` are
dumped with snake_case keys and read back through the same models.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import yaml
from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field
from pydantic import ValidationError
from pydantic import field_validator
from pydantic import model_validator

from dependabot_server.enums import ScheduleDay
from dependabot_server.enums import ScheduleInterval

_TIME_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


class ConfigurationError(Exception):
    """The configuration file could not be parsed or failed validation."""


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class UpdateSchedule(_Model):
    interval: ScheduleInterval
    time: str = "02:00"
    day: ScheduleDay = ScheduleDay.MONDAY
    timezone: str = "Etc/UTC"
    cronjob: str | None = None

    @field_validator("interval", "day", mode="before")
    @classmethod
    def _lowercase(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("time", mode="before")
    @classmethod
    def _coerce_time(cls, value: Any) -> Any:
        # YAML 1.1 reads unquoted 23:30 as the base-60 integer 1410
        if isinstance(value, int) and not isinstance(value, bool):
            value = f"{value // 60:02d}:{value % 60:02d}"
        if isinstance(value, str):
            match = _TIME_RE.match(value.strip())
            if not match:
                raise ValueError(f"'{value}' is not a valid time, expected HH:MM")
            return f"{int(match.group(1)):02d}:{match.group(2)}"
        return value

    @model_validator(mode="after")
    def _cronjob_for_cron(self) -> UpdateSchedule:
        if self.interval == ScheduleInterval.CRON and not self.cronjob:
            raise ValueError("'cronjob' is required when the interval is 'cron'")
        return self

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])


class CommitMessageOptions(_Model):
    prefix: str | None = None
    prefix_development: str | None = Field(default=None, alias="prefix-development")
    include: str | None = None


class BranchNameOptions(_Model):
    separator: str | None = None


class DependabotUpdate(_Model):
    package_ecosystem: str = Field(alias="package-ecosystem")
    directory: str | None = None
    directories: list[str] | None = None
    schedule: UpdateSchedule
    open_pull_requests_limit: int = Field(default=5, alias="open-pull-requests-limit", ge=0)
    registries: list[str] | None = None
    allow: list[dict[str, Any]] | None = None
    ignore: list[dict[str, Any]] | None = None
    groups: dict[str, Any] | None = None
    labels: list[str] | None = None
    milestone: int | None = None
    commit_message: CommitMessageOptions | None = Field(default=None, alias="commit-message")
    pull_request_branch_name: BranchNameOptions | None = Field(default=None, alias="pull-request-branch-name")
    rebase_strategy: str = Field(default="auto", alias="rebase-strategy")
    insecure_external_code_execution: str | None = Field(default=None, alias="insecure-external-code-execution")
    target_branch: str | None = Field(default=None, alias="target-branch")
    vendor: bool = False
    versioning_strategy: str = Field(default="auto", alias="versioning-strategy")

    @model_validator(mode="after")
    def _needs_directory(self) -> DependabotUpdate:
        if not self.directory and not self.directories:
            raise ValueError("Either 'directory' or 'directories' must be provided")
        return self

    @property
    def identity(self) -> tuple[str, str | None, tuple[str, ...]]:
        """Key used to match entries across resyncs."""
        return (self.package_ecosystem, self.directory, tuple(self.directories or ()))


class RepositoryUpdate(DependabotUpdate):
    """A configured update plus the bookkeeping kept between syncs."""

    files: list[str] = Field(default_factory=list)
    latest_job_id: str | None = None
    latest_job_status: str | None = None
    latest_update: datetime | None = None

    @classmethod
    def from_stored(cls, data: dict[str, Any]) -> RepositoryUpdate:
        return cls.model_validate(data)

    def to_stored(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class DependabotRegistry(_Model):
    type: str
    url: str | None = None
    username: str | None = None
    password: str | None = None
    key: str | None = None
    token: str | None = None
    replaces_base: bool | None = Field(default=None, alias="replaces-base")
    organization: str | None = None
    repo: str | None = None
    auth_key: str | None = Field(default=None, alias="auth-key")
    public_key_fingerprint: str | None = Field(default=None, alias="public-key-fingerprint")


class DependabotConfiguration(_Model):
    version: int
    updates: list[DependabotUpdate] = Field(min_length=1)
    registries: dict[str, DependabotRegistry] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def _version_two(cls, value: int) -> int:
        if value != 2:
            raise ValueError("Only version 2 of dependabot is supported")
        return value

    @model_validator(mode="after")
    def _known_timezones(self) -> DependabotConfiguration:
        for index, update in enumerate(self.updates):
            try:
                ZoneInfo(update.schedule.timezone)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"updates.{index}.schedule.timezone: unknown timezone '{update.schedule.timezone}'") from e
        return self

    @model_validator(mode="after")
    def _registries_consistent(self) -> DependabotConfiguration:
        referenced = {name for update in self.updates for name in (update.registries or [])}
        configured = set(self.registries)

        missing = sorted(referenced - configured)
        if missing:
            raise ValueError(
                f"Referenced registries: '{','.join(missing)}' have not been configured in the root of dependabot.yml"
            )

        unused = sorted(configured - referenced)
        if unused:
            raise ValueError(f"Registries: '{','.join(unused)}' have not been referenced by any update")
        return self


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        location = ".".join(str(p) for p in err.get("loc", ()))
        message = err.get("msg", "invalid")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts)


def parse_configuration(content: str | None) -> DependabotConfiguration:
    """Parse raw file contents, raising ConfigurationError on any problem."""
    if not content or not content.strip():
        raise ConfigurationError("The configuration file is empty")

    try:
        raw = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError("The configuration file must be a mapping")

    try:
        return DependabotConfiguration.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e)) from e
