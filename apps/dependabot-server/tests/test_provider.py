from __future__ import annotations

import json

import httpx
import pytest

from dependabot_server.models import Project
from dependabot_server.services.provider import AzureDevOpsProvider
from dependabot_server.services.provider import ProviderError
from dependabot_server.services.provider import _same_url
from dependabot_server.services.provider import parse_project_url

PROJECT_GUID = "3a7c2d1e-0000-4000-8000-1234567890ab"


def _project(url="https://dev.azure.com/contoso/dependabot") -> Project:
    return Project(id="prj_1", url=url, token="pat", password="hook-pw")


@pytest.mark.parametrize(
    "url, organization, organization_url, project, hostname",
    [
        (
            "https://dev.azure.com/contoso/dependabot",
            "contoso",
            "https://dev.azure.com/contoso/",
            "dependabot",
            "dev.azure.com",
        ),
        (
            "https://contoso.visualstudio.com/dependabot",
            "contoso",
            "https://contoso.visualstudio.com/",
            "dependabot",
            "contoso.visualstudio.com",
        ),
        (
            f"https://dev.azure.com/contoso/_apis/projects/{PROJECT_GUID}",
            "contoso",
            "https://dev.azure.com/contoso/",
            PROJECT_GUID,
            "dev.azure.com",
        ),
    ],
)
def test_parse_project_url(url, organization, organization_url, project, hostname):
    parsed = parse_project_url(url)
    assert parsed.organization_name == organization
    assert parsed.organization_url == organization_url
    assert parsed.project_id_or_name == project
    assert parsed.hostname == hostname


def test_parse_project_url_by_id():
    parsed = parse_project_url(f"https://dev.azure.com/contoso/{PROJECT_GUID}")
    assert parsed.uses_project_id
    assert parsed.project_name is None
    assert parsed.make_repository_slug("web") == f"contoso/{PROJECT_GUID}/_git/web"


@pytest.mark.parametrize("url", ["https://github.com/contoso/dependabot", "https://dev.azure.com/contoso"])
def test_parse_project_url_rejects_unknown(url):
    with pytest.raises(ValueError):
        parse_project_url(url)


def test_same_url():
    assert _same_url("https://Example.com:443/webhooks/azure/", "https://example.com/webhooks/azure")
    assert not _same_url("http://example.com/webhooks/azure", "https://example.com/webhooks/azure")
    assert not _same_url(None, "https://example.com/webhooks/azure")


# ---------------------------------------------------------------------------
# REST calls
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_configuration_file_falls_back_to_yaml_extension():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.params["path"])
        assert request.headers["Authorization"].startswith("Basic ")
        assert request.url.params["api-version"] == "7.0"
        if request.url.params["path"] == ".github/dependabot.yml":
            return httpx.Response(404, json={"message": "not found"})
        return httpx.Response(
            200,
            json={"content": "version: 2", "latestProcessedChange": {"commitId": "c1"}},
        )

    provider = AzureDevOpsProvider(transport=httpx.MockTransport(handler))
    try:
        config_file = await provider.get_configuration_file(_project(), "r1")
    finally:
        await provider.close()

    assert seen == [".github/dependabot.yml", ".github/dependabot.yaml"]
    assert config_file.path == ".github/dependabot.yaml"
    assert config_file.commit_id == "c1"
    assert config_file.content == "version: 2"


@pytest.mark.asyncio
async def test_missing_configuration_file_is_none():
    provider = AzureDevOpsProvider(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
    try:
        assert await provider.get_configuration_file(_project(), "r1") is None
    finally:
        await provider.close()


@pytest.mark.asyncio
async def test_repositories_are_listed():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/contoso/dependabot/_apis/git/repositories"
        return httpx.Response(
            200,
            json={
                "value": [
                    {"id": "r1", "name": "web", "defaultBranch": "refs/heads/main"},
                    {"id": "r2", "name": "old", "isDisabled": True},
                ]
            },
        )

    provider = AzureDevOpsProvider(transport=httpx.MockTransport(handler))
    try:
        repositories = await provider.get_repositories(_project())
    finally:
        await provider.close()

    assert [(r.id, r.name, r.is_disabled) for r in repositories] == [("r1", "web", False), ("r2", "old", True)]
    assert repositories[0].default_branch == "refs/heads/main"


@pytest.mark.asyncio
@pytest.mark.parametrize("status_code, kind", [(401, "auth"), (404, "not_found"), (429, "rate_limited"), (500, "error")])
async def test_upstream_errors_are_classified(status_code, kind):
    provider = AzureDevOpsProvider(transport=httpx.MockTransport(lambda request: httpx.Response(status_code)))
    try:
        with pytest.raises(ProviderError) as exc:
            await provider.get_repository(_project(), "r1")
    finally:
        await provider.close()
    assert exc.value.kind == kind
    assert exc.value.status_code == status_code


@pytest.mark.asyncio
async def test_subscriptions_are_created_or_updated(monkeypatch):
    from dependabot_server.config import settings

    monkeypatch.setattr(settings, "webhook_endpoint", "https://hooks.example.com/webhooks/azure")
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        calls.append((request.method, request.url.path, body))
        if request.url.path.endswith("/_apis/projects/dependabot"):
            return httpx.Response(200, json={"id": "prov-project", "name": "dependabot"})
        if request.url.path.endswith("/subscriptionsquery"):
            return httpx.Response(
                200,
                json={
                    "results": [
                        {
                            "id": "existing-push",
                            "eventType": "git.push",
                            "consumerInputs": {"url": "https://hooks.example.com/webhooks/azure/"},
                        }
                    ]
                },
            )
        if request.method == "PUT":
            return httpx.Response(200, json={"id": body["id"]})
        return httpx.Response(200, json={"id": f"new-{body['eventType']}"})

    provider = AzureDevOpsProvider(transport=httpx.MockTransport(handler))
    try:
        ids = await provider.create_or_update_subscriptions(_project())
    finally:
        await provider.close()

    assert ids == [
        "existing-push",
        "new-git.pullrequest.updated",
        "new-git.pullrequest.merged",
        "new-ms.vss-code.git-pullrequest-comment-event",
    ]
    put = next(c for c in calls if c[0] == "PUT")
    assert put[1].endswith("/_apis/hooks/subscriptions/existing-push")
    assert put[2]["consumerInputs"]["basicAuthUsername"] == "prj_1"
    assert put[2]["consumerInputs"]["basicAuthPassword"] == "hook-pw"
    assert put[2]["publisherInputs"] == {"projectId": "prov-project"}
    merged = next(c for c in calls if c[2] and c[2].get("eventType") == "git.pullrequest.merged" and c[0] == "POST")
    assert merged[2]["publisherInputs"]["mergeResult"] == "Conflicts"
