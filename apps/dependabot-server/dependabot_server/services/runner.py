"""Runs update jobs as Docker containers of the updater image."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from datetime import timezone
from typing import Any
from urllib.parse import urlsplit

import docker
import docker.errors

from dependabot_server.config import settings
from dependabot_server.enums import UpdateJobStatus
from dependabot_server.models import Project
from dependabot_server.models import Repository
from dependabot_server.models import UpdateJob
from dependabot_server.services.configuration import RepositoryUpdate
from dependabot_server.services.provider import parse_project_url
from dependabot_server.services.resources import UpdateJobResources

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\$\{\{\s*([a-zA-Z_]+[a-zA-Z0-9_-]*)\s*\}\}")
_DOCKER_TIME = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d+))?(Z|[+-]\d{2}:\d{2})?$")


class RunnerError(Exception):
    """The compute platform rejected or failed an operation."""


@dataclass
class RunnerState:
    status: UpdateJobStatus
    start: datetime | None = None
    end: datetime | None = None


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def convert_placeholder(value: str | None, secrets: dict[str, str]) -> str | None:
    """Replace ${{ NAME }} references with secret values; unknown names stay as-is."""
    if not value or not value.strip():
        return value
    lookup = {k.lower(): v for k, v in secrets.items()}

    def _replace(match: re.Match) -> str:
        return lookup.get(match.group(1).lower(), match.group(0))

    return PLACEHOLDER_PATTERN.sub(_replace, value)


def make_extra_credentials(registries: list[dict[str, Any]], secrets: dict[str, str]) -> list[dict[str, str]]:
    credentials = []
    for registry in registries:
        kind = (registry.get("type") or "").replace("-", "_")
        if not kind:
            raise RunnerError("Registry type should not be empty")

        values: dict[str, str] = {"type": kind}
        for key, field_name in (
            ("organization", "organization"),
            ("repo", "repo"),
            ("auth-key", "auth_key"),
            ("public-key-fingerprint", "public_key_fingerprint"),
            ("username", "username"),
        ):
            if registry.get(field_name):
                values[key] = registry[field_name]
        for key in ("password", "key", "token"):
            converted = convert_placeholder(registry.get(key), secrets)
            if converted:
                values[key] = converted
        if registry.get("replaces_base") is True:
            values["replaces-base"] = "true"

        # 'registry' and 'host' are derived from the url; some types never use 'url'
        url = registry.get("url")
        parts = urlsplit(url) if url else None
        if parts is not None and parts.scheme and parts.hostname:
            if kind in ("docker_registry", "npm_registry"):
                path = parts.path + (f"?{parts.query}" if parts.query else "")
                values["registry"] = f"{parts.hostname}{path}".rstrip("/")
            if kind in ("terraform_registry", "composer_repository"):
                values["host"] = parts.hostname
        if kind == "python_index" and url:
            values["index-url"] = url
        if kind not in ("docker_registry", "npm_registry", "terraform_registry", "python_index") and url:
            values["url"] = url

        credentials.append(values)
    return credentials


def _to_json(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"))


def _put(env: dict[str, str], key: str, value: Any) -> None:
    if value is None or value == "":
        return
    env[key] = value if isinstance(value, str) else str(value)


def _env_for(
    project: Project,
    repository: Repository,
    update: RepositoryUpdate,
    job: UpdateJob,
    credentials: list[dict[str, str]],
) -> dict[str, str]:
    env: dict[str, str] = {
        "DEPENDABOT_JOB_ID": job.id,
        "DEPENDABOT_JOB_TOKEN": job.auth_key,
        "DEPENDABOT_DEBUG": "true" if project.debug else "false",
        "DEPENDABOT_API_URL": settings.resolved_jobs_api_url,
        "GITHUB_ACTIONS": "false",
        "UPDATER_DETERMINISTIC": "true",
        "DEPENDABOT_PACKAGE_MANAGER": job.package_manager,
        "DEPENDABOT_PACKAGE_ECOSYSTEM": job.package_ecosystem,
        "DEPENDABOT_OPEN_PULL_REQUESTS_LIMIT": str(update.open_pull_requests_limit),
        "DEPENDABOT_EXTRA_CREDENTIALS": _to_json(credentials),
        "DEPENDABOT_FAIL_ON_EXCEPTION": "false",
    }

    _put(env, "GITHUB_ACCESS_TOKEN", project.github_token or settings.github_token)
    _put(env, "DEPENDABOT_REBASE_STRATEGY", update.rebase_strategy)
    _put(env, "DEPENDABOT_DIRECTORY", update.directory)
    _put(env, "DEPENDABOT_DIRECTORIES", _to_json(update.directories))
    _put(env, "DEPENDABOT_TARGET_BRANCH", update.target_branch)
    _put(env, "DEPENDABOT_VENDOR", "true" if update.vendor else None)
    _put(env, "DEPENDABOT_REJECT_EXTERNAL_CODE", "true" if update.insecure_external_code_execution == "deny" else "false")
    _put(env, "DEPENDABOT_VERSIONING_STRATEGY", update.versioning_strategy)
    _put(env, "DEPENDABOT_DEPENDENCY_GROUPS", _to_json(update.groups))
    _put(env, "DEPENDABOT_ALLOW_CONDITIONS", _to_json(update.allow))
    _put(env, "DEPENDABOT_IGNORE_CONDITIONS", _to_json(update.ignore))
    if update.commit_message is not None:
        _put(env, "DEPENDABOT_COMMIT_MESSAGE_OPTIONS", _to_json(update.commit_message.model_dump(by_alias=True, exclude_none=True)))
    _put(env, "DEPENDABOT_LABELS", _to_json(update.labels))
    if update.pull_request_branch_name is not None:
        _put(env, "DEPENDABOT_BRANCH_NAME_SEPARATOR", update.pull_request_branch_name.separator)
    _put(env, "DEPENDABOT_MILESTONE", update.milestone)

    # security-only runs work from the dependency files found by earlier runs
    if update.open_pull_requests_limit == 0:
        env["DEPENDABOT_SECURITY_UPDATES_ONLY"] = "true"
        _put(env, "DEPENDABOT_DEPENDENCY_FILES", _to_json(update.files))

    url = parse_project_url(project.url)
    _put(env, "AZURE_HOSTNAME", url.hostname)
    _put(env, "AZURE_ORGANIZATION", url.organization_name)
    _put(env, "AZURE_PROJECT", url.project_name or project.name)
    _put(env, "AZURE_REPOSITORY", repository.name)
    _put(env, "AZURE_ACCESS_TOKEN", project.token)
    _put(env, "AZURE_SET_AUTO_COMPLETE", "true" if project.auto_complete_enabled else "false")
    _put(env, "AZURE_AUTO_COMPLETE_IGNORE_CONFIG_IDS", _to_json(project.auto_complete_ignore_configs or []))
    _put(env, "AZURE_MERGE_STRATEGY", project.auto_complete_merge_strategy)
    _put(env, "AZURE_AUTO_APPROVE_PR", "true" if project.auto_approve_enabled else "false")
    return env


def _labels_for(job: UpdateJob) -> dict[str, str]:
    labels = {
        "purpose": "dependabot",
        "ecosystem": job.package_ecosystem,
        "repository": job.repository_slug or "",
        "job-id": job.id,
    }
    if job.directory:
        labels["directory"] = job.directory
    if job.directories:
        labels["directories"] = _to_json(job.directories)
    return labels


def _parse_docker_time(value: str | None) -> datetime | None:
    # Docker reports nanoseconds and uses year 1 for "never"
    if not value or value.startswith("0001-01-01"):
        return None
    match = _DOCKER_TIME.match(value)
    if not match:
        return None
    base, fraction, offset = match.groups()
    text = base + (f".{fraction[:6].ljust(6, '0')}" if fraction else "")
    if offset and offset != "Z":
        return datetime.fromisoformat(text + offset).astimezone(timezone.utc)
    return datetime.fromisoformat(text).replace(tzinfo=timezone.utc)


class UpdateRunner:
    def __init__(self, client: Any = None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = docker.DockerClient(base_url=settings.docker_host)
        return self._client

    async def create(
        self,
        project: Project,
        repository: Repository,
        update: RepositoryUpdate,
        job: UpdateJob,
    ) -> None:
        registries = [repository.registries[name] for name in (update.registries or []) if name in (repository.registries or {})]
        secrets = {**(project.secrets or {}), "DEFAULT_TOKEN": project.token}
        credentials = make_extra_credentials(registries, secrets)
        env = _env_for(project, repository, update, job, credentials)
        labels = _labels_for(job)
        resources = UpdateJobResources(cpu=job.resources_cpu, memory=job.resources_memory)
        await asyncio.to_thread(self._create_sync, job.resource_name, env, labels, resources)

    def _create_sync(
        self,
        name: str,
        env: dict[str, str],
        labels: dict[str, str],
        resources: UpdateJobResources,
    ) -> None:
        try:
            existing = self.client.containers.list(all=True, filters={"name": name})
            if existing:
                logger.info(f"Container {name} already exists; not creating another")
                return

            self.client.images.pull(settings.updater_image)
            self.client.containers.run(
                image=settings.updater_image,
                name=name,
                detach=True,
                labels=labels,
                environment=env,
                mem_limit=resources.mem_limit,
                nano_cpus=resources.nano_cpus,
                network=settings.docker_network,
            )
        except docker.errors.DockerException as e:
            raise RunnerError(f"Could not start {name}: {e}") from e
        logger.info(f"Started container {name} ({settings.updater_image})")

    async def get_state(self, job: UpdateJob) -> RunnerState | None:
        """None while the container is still starting or running."""
        return await asyncio.to_thread(self._get_state_sync, job.resource_name)

    def _get_state_sync(self, name: str) -> RunnerState | None:
        try:
            container = self.client.containers.get(name)
        except docker.errors.NotFound:
            logger.warning(f"Container {name} not found; treating job as failed")
            return RunnerState(status=UpdateJobStatus.FAILED)

        state = container.attrs.get("State") or {}
        status = (state.get("Status") or container.status or "").lower()
        if status in ("created", "running", "restarting"):
            return None

        succeeded = status == "exited" and state.get("ExitCode", 1) == 0
        return RunnerState(
            status=UpdateJobStatus.SUCCEEDED if succeeded else UpdateJobStatus.FAILED,
            start=_parse_docker_time(state.get("StartedAt")),
            end=_parse_docker_time(state.get("FinishedAt")),
        )

    async def get_logs(self, job: UpdateJob) -> str | None:
        return await asyncio.to_thread(self._get_logs_sync, job.resource_name)

    def _get_logs_sync(self, name: str) -> str | None:
        try:
            container = self.client.containers.get(name)
        except docker.errors.NotFound:
            return None
        raw = container.logs(stdout=True, stderr=True)
        return raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw

    async def delete(self, job: UpdateJob) -> None:
        await asyncio.to_thread(self._delete_sync, job.resource_name)

    def _delete_sync(self, name: str) -> None:
        try:
            container = self.client.containers.get(name)
        except docker.errors.NotFound:
            return
        container.remove(force=True)
        logger.info(f"Removed container {name}")
