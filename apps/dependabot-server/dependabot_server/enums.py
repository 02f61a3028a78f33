"""String-backed enums and their wire tables.

Each enum's value is the string stored in the database and sent over HTTP.
Where an external system uses different spellings, the mapping is kept in
an explicit table next to the enum rather than derived from names.
"""
from __future__ import annotations

from enum import Enum


class UpdateJobStatus(str, Enum):
    SCHEDULED = "scheduled"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({UpdateJobStatus.SUCCEEDED, UpdateJobStatus.FAILED})


class UpdateJobTrigger(str, Enum):
    SCHEDULED = "scheduled"
    MISSED_SCHEDULE = "missed_schedule"
    SYNCHRONIZATION = "synchronization"
    MANUAL = "manual"


class ScheduleInterval(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMIANNUALLY = "semiannually"
    YEARLY = "yearly"
    CRON = "cron"


class ScheduleDay(str, Enum):
    SUNDAY = "sunday"
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"

    @property
    def cron_number(self) -> int:
        return CRON_DAY_NUMBERS[self]


# cron day-of-week numbering (0=Sunday)
CRON_DAY_NUMBERS: dict[ScheduleDay, int] = {
    ScheduleDay.SUNDAY: 0,
    ScheduleDay.MONDAY: 1,
    ScheduleDay.TUESDAY: 2,
    ScheduleDay.WEDNESDAY: 3,
    ScheduleDay.THURSDAY: 4,
    ScheduleDay.FRIDAY: 5,
    ScheduleDay.SATURDAY: 6,
}


class MergeStrategy(str, Enum):
    NO_FAST_FORWARD = "noFastForward"
    REBASE = "rebase"
    REBASE_MERGE = "rebaseMerge"
    SQUASH = "squash"


class ProjectType(str, Enum):
    AZURE = "azure"


class WebhookEventType(str, Enum):
    GIT_PUSH = "git-push"
    PULL_REQUEST_UPDATED = "pull-request-updated"
    PULL_REQUEST_MERGED = "pull-request-merged"
    PULL_REQUEST_COMMENT = "pull-request-comment"

    @classmethod
    def parse(cls, value: str | None) -> WebhookEventType | None:
        """Resolve a provider event name; unknown names give None."""
        if not value:
            return None
        if value in AZURE_EVENT_TYPES:
            return AZURE_EVENT_TYPES[value]
        try:
            return cls(value)
        except ValueError:
            return None


# Azure DevOps service hook event names -> internal event types
AZURE_EVENT_TYPES: dict[str, WebhookEventType] = {
    "git.push": WebhookEventType.GIT_PUSH,
    "git.pullrequest.updated": WebhookEventType.PULL_REQUEST_UPDATED,
    "git.pullrequest.merged": WebhookEventType.PULL_REQUEST_MERGED,
    "ms.vss-code.git-pullrequest-comment-event": WebhookEventType.PULL_REQUEST_COMMENT,
}

# (event name, resource version) registered as service hook subscriptions
AZURE_SUBSCRIPTION_EVENT_TYPES: tuple[tuple[str, str], ...] = (
    ("git.push", "1.0"),
    ("git.pullrequest.updated", "1.0"),
    ("git.pullrequest.merged", "1.0"),
    ("ms.vss-code.git-pullrequest-comment-event", "2.0"),
)
