"""Azure DevOps REST client used for repository discovery, config files and service hooks."""
from __future__ import annotations

import base64
import logging
import uuid
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlsplit

import httpx

from dependabot_server.config import settings
from dependabot_server.enums import AZURE_SUBSCRIPTION_EVENT_TYPES
from dependabot_server.models import Project

logger = logging.getLogger(__name__)

API_VERSION = "7.0"

# Tried in order; first hit wins
CONFIGURATION_FILE_PATHS = (
    ".github/dependabot.yml",
    ".github/dependabot.yaml",
)


class ProviderError(Exception):
    """Upstream platform call failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

    @property
    def kind(self) -> str:
        if self.status_code in (401, 403):
            return "auth"
        if self.status_code == 404:
            return "not_found"
        if self.status_code == 429:
            return "rate_limited"
        return "error"


@dataclass(frozen=True)
class ProjectUrl:
    scheme: str
    hostname: str
    port: int | None
    organization_name: str
    organization_url: str
    project_id_or_name: str

    @property
    def uses_project_id(self) -> bool:
        try:
            uuid.UUID(self.project_id_or_name)
        except ValueError:
            return False
        return True

    @property
    def project_name(self) -> str | None:
        return None if self.uses_project_id else self.project_id_or_name

    def make_repository_slug(self, name: str) -> str:
        return f"{self.organization_name}/{self.project_id_or_name}/_git/{name}"


def parse_project_url(url: str) -> ProjectUrl:
    """Split a project URL of the dev.azure.com or *.visualstudio.com form."""
    parts = urlsplit(url)
    host = (parts.hostname or "").lower()
    segments = [s for s in parts.path.replace("_apis/projects/", "").split("/") if s]
    port = parts.port if parts.port not in (None, 80, 443) else None
    netloc = host if port is None else f"{host}:{port}"

    if host == "dev.azure.com":
        if len(segments) < 2:
            raise ValueError(f"Error parsing: '{url}' into components")
        organization = segments[0]
        project = segments[1]
        organization_url = f"{parts.scheme}://{netloc}/{organization}/"
    elif host.endswith("visualstudio.com"):
        if not segments:
            raise ValueError(f"Error parsing: '{url}' into components")
        organization = host.split(".")[0]
        project = segments[0]
        organization_url = f"{parts.scheme}://{netloc}/"
    else:
        raise ValueError(f"Error parsing: '{url}' into components")

    return ProjectUrl(
        scheme=parts.scheme,
        hostname=host,
        port=port,
        organization_name=organization,
        organization_url=organization_url,
        project_id_or_name=project,
    )


@dataclass
class ProviderProject:
    id: str
    name: str
    description: str | None
    private: bool


@dataclass
class ProviderRepository:
    id: str
    name: str
    default_branch: str | None
    is_disabled: bool = False
    is_fork: bool = False


@dataclass
class ConfigurationFile:
    path: str
    commit_id: str
    content: str


class AzureDevOpsProvider:
    def __init__(self, transport: httpx.AsyncBaseTransport | None = None, timeout: float = 30.0):
        self._transport = transport
        self._timeout = timeout
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(transport=self._transport, timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _send(
        self,
        project: Project,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        token = base64.b64encode(f":{project.token}".encode()).decode()
        query = {"api-version": API_VERSION, **(params or {})}
        try:
            response = await self._get_client().request(
                method,
                url,
                params=query,
                json=json,
                headers={"Authorization": f"Basic {token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"{method} {url} failed: {e}") from e

        if allow_not_found and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise ProviderError(
                f"{method} {url} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        return response.json()

    # ------------------------------------------------------------------
    # Projects and repositories
    # ------------------------------------------------------------------

    async def get_project(self, project: Project) -> ProviderProject:
        url = parse_project_url(project.url)
        data = await self._send(
            project,
            "GET",
            f"{url.organization_url}_apis/projects/{url.project_id_or_name}",
        )
        return ProviderProject(
            id=str(data["id"]),
            name=data.get("name") or url.project_id_or_name,
            description=data.get("description"),
            private=(data.get("visibility") or "private").lower() != "public",
        )

    async def get_repositories(self, project: Project) -> list[ProviderRepository]:
        url = parse_project_url(project.url)
        data = await self._send(
            project,
            "GET",
            f"{url.organization_url}{url.project_id_or_name}/_apis/git/repositories",
        )
        return [_repository_from(item) for item in data.get("value", [])]

    async def get_repository(self, project: Project, repository_id_or_name: str) -> ProviderRepository:
        url = parse_project_url(project.url)
        data = await self._send(
            project,
            "GET",
            f"{url.organization_url}{url.project_id_or_name}/_apis/git/repositories/{repository_id_or_name}",
        )
        return _repository_from(data)

    async def get_configuration_file(self, project: Project, repository_id_or_name: str) -> ConfigurationFile | None:
        """Fetch the first configuration file found, with the commit that last changed it."""
        url = parse_project_url(project.url)
        items_url = f"{url.organization_url}{url.project_id_or_name}/_apis/git/repositories/{repository_id_or_name}/items"
        for path in CONFIGURATION_FILE_PATHS:
            data = await self._send(
                project,
                "GET",
                items_url,
                params={"path": path, "includeContent": "true", "latestProcessedChange": "true"},
                allow_not_found=True,
            )
            if data is None:
                continue
            commit_id = (data.get("latestProcessedChange") or {}).get("commitId") or data.get("commitId")
            return ConfigurationFile(path=path, commit_id=commit_id, content=data.get("content") or "")
        return None

    # ------------------------------------------------------------------
    # Service hooks
    # ------------------------------------------------------------------

    async def create_or_update_subscriptions(self, project: Project) -> list[str]:
        """Ensure one webhook subscription per event type points at this service."""
        url = parse_project_url(project.url)
        provider_project = await self.get_project(project)
        webhook_url = settings.resolved_webhook_endpoint

        query = {
            "publisherId": "tfs",
            "publisherInputFilters": [
                {
                    "conditions": [
                        {"inputId": "projectId", "operator": "equals", "inputValue": provider_project.id},
                    ]
                }
            ],
            "consumerId": "webHooks",
            "consumerActionId": "httpRequest",
        }
        data = await self._send(project, "POST", f"{url.organization_url}_apis/hooks/subscriptionsquery", json=query)
        existing_subscriptions = data.get("results") or []

        ids: list[str] = []
        for event_type, resource_version in AZURE_SUBSCRIPTION_EVENT_TYPES:
            body = {
                "eventType": event_type,
                "resourceVersion": resource_version,
                "publisherId": "tfs",
                "publisherInputs": make_publisher_inputs(event_type, provider_project.id),
                "consumerId": "webHooks",
                "consumerActionId": "httpRequest",
                "consumerInputs": make_consumer_inputs(project, webhook_url),
            }
            existing = next(
                (
                    sub
                    for sub in existing_subscriptions
                    if sub.get("eventType") == event_type
                    and _same_url((sub.get("consumerInputs") or {}).get("url"), webhook_url)
                ),
                None,
            )
            if existing is not None:
                saved = await self._send(
                    project,
                    "PUT",
                    f"{url.organization_url}_apis/hooks/subscriptions/{existing['id']}",
                    json={**body, "id": existing["id"]},
                )
                logger.info(f"Updated {event_type} subscription {existing['id']} for project {project.id}")
            else:
                saved = await self._send(project, "POST", f"{url.organization_url}_apis/hooks/subscriptions", json=body)
                logger.info(f"Created {event_type} subscription {saved.get('id')} for project {project.id}")
            ids.append(str(saved.get("id")))
        return ids


def make_publisher_inputs(event_type: str, project_id: str) -> dict[str, str]:
    inputs = {"projectId": project_id}
    if event_type == "git.pullrequest.updated":
        inputs["notificationType"] = "StatusUpdateNotification"
    if event_type == "git.pullrequest.merged":
        inputs["mergeResult"] = "Conflicts"
    return inputs


def make_consumer_inputs(project: Project, webhook_url: str) -> dict[str, str]:
    return {
        "detailedMessagesToSend": "none",
        "messagesToSend": "none",
        "url": webhook_url,
        "basicAuthUsername": project.id,
        "basicAuthPassword": project.password,
    }


def _same_url(left: str | None, right: str) -> bool:
    if not left:
        return False
    a, b = urlsplit(left), urlsplit(right)
    return (
        a.scheme.lower() == b.scheme.lower()
        and a.hostname == b.hostname
        and (a.port or _default_port(a.scheme)) == (b.port or _default_port(b.scheme))
        and a.path.rstrip("/") == b.path.rstrip("/")
    )


def _default_port(scheme: str) -> int:
    return 443 if scheme.lower() == "https" else 80


def _repository_from(data: dict[str, Any]) -> ProviderRepository:
    return ProviderRepository(
        id=str(data["id"]),
        name=data["name"],
        default_branch=data.get("defaultBranch"),
        is_disabled=bool(data.get("isDisabled", False)),
        is_fork=bool(data.get("isFork", False)),
    )


provider = AzureDevOpsProvider()


def get_provider() -> AzureDevOpsProvider:
    return provider
