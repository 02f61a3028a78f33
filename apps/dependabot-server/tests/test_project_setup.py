from __future__ import annotations

import json
from unittest.mock import AsyncMock
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from dependabot_server.models import Project
from dependabot_server.services.project_setup import apply_setups
from dependabot_server.services.project_setup import parse_setups
from dependabot_server.services.provider import ProviderProject
from tests.conftest import PROJECT_URL
from tests.conftest import _make_provider


def _setups(**overrides):
    values = {"url": PROJECT_URL, "token": "pat-token", "secrets": {"REGISTRY_TOKEN": "s3cret"}}
    values.update(overrides)
    return parse_setups(json.dumps([values]))


def _doubles():
    provider = _make_provider([], {})
    provider.get_project = AsyncMock(
        return_value=ProviderProject(id="prov-project", name="dependabot", description=None, private=True)
    )
    synchronizer = MagicMock()
    synchronizer.synchronize_project = AsyncMock()
    return provider, synchronizer


def test_parse_setups():
    assert parse_setups(None) == []
    assert parse_setups("  ") == []

    setups = _setups(auto_complete=True, auto_complete_merge_strategy="squash")
    assert setups[0].auto_complete
    assert setups[0].auto_complete_merge_strategy.value == "squash"


def test_parse_setups_rejects_bad_entries():
    with pytest.raises(ValidationError):
        parse_setups(json.dumps([{"url": PROJECT_URL}]))


@pytest.mark.asyncio
async def test_new_project_is_created_synced_and_hooked(db_session):
    provider, synchronizer = _doubles()

    changed = await apply_setups(db_session, _setups(), provider, synchronizer)

    assert changed == 1
    project = db_session.query(Project).one()
    assert project.url == PROJECT_URL
    assert project.provider_id == "prov-project"
    assert project.slug == "contoso/dependabot"
    assert project.secrets == {"REGISTRY_TOKEN": "s3cret"}
    assert project.password
    synchronizer.synchronize_project.assert_awaited_once()
    assert synchronizer.synchronize_project.await_args.kwargs == {"trigger": False}
    provider.create_or_update_subscriptions.assert_awaited_once()


@pytest.mark.asyncio
async def test_unchanged_setup_does_nothing(db_session):
    provider, synchronizer = _doubles()
    await apply_setups(db_session, _setups(), provider, synchronizer)
    password = db_session.query(Project).one().password

    provider, synchronizer = _doubles()
    changed = await apply_setups(db_session, _setups(), provider, synchronizer)

    assert changed == 0
    assert db_session.query(Project).one().password == password
    synchronizer.synchronize_project.assert_not_awaited()
    provider.create_or_update_subscriptions.assert_not_awaited()


@pytest.mark.asyncio
async def test_changed_token_updates_existing_project(db_session):
    provider, synchronizer = _doubles()
    await apply_setups(db_session, _setups(), provider, synchronizer)

    changed = await apply_setups(db_session, _setups(token="rotated"), provider, synchronizer)

    assert changed == 1
    assert db_session.query(Project).count() == 1
    assert db_session.query(Project).one().token == "rotated"
