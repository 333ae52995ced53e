"""Tests for the Meta integration lifecycle.

Tests verify:
- OAuth state is single-use, expires, and maps back to the tenant
- Completing OAuth stores the long-lived token encrypted and marks CONNECTED
- Disconnecting clears the token so live paths are skipped
"""

from datetime import timedelta

import pytest
from fastapi import HTTPException

from adboard.crypto import get_stored_access_token
from adboard.models import IntegrationStatus
from adboard.services import meta_integration
from adboard.settings import get_settings

from conftest import NOW, connect_integration, seed_tenant


@pytest.fixture
def meta_app(monkeypatch):
    monkeypatch.setattr(get_settings(), "meta_app_id", "app-1")


def test_oauth_state_is_single_use(meta_app, fake_meta):
    url = meta_integration.start_oauth(7, fake_meta, now=NOW)
    state = url.split("state=")[1]

    assert meta_integration.consume_oauth_state(state, now=NOW) == 7
    assert meta_integration.consume_oauth_state(state, now=NOW) is None
    assert meta_integration.consume_oauth_state(None) is None


def test_oauth_state_expires(meta_app, fake_meta):
    url = meta_integration.start_oauth(7, fake_meta, now=NOW)
    state = url.split("state=")[1]

    assert meta_integration.consume_oauth_state(state, now=NOW + timedelta(minutes=11)) is None


def test_oauth_start_requires_app_id(monkeypatch, fake_meta):
    monkeypatch.setattr(get_settings(), "meta_app_id", None)
    with pytest.raises(HTTPException) as exc_info:
        meta_integration.start_oauth(7, fake_meta)
    assert exc_info.value.status_code == 400


async def test_complete_oauth_stores_encrypted_token(session, fake_meta):
    user, _ = await seed_tenant(session)

    integration = await meta_integration.complete_oauth(session, user.id, "code-1", fake_meta, now=NOW)

    assert fake_meta.exchanged_codes == ["code-1"]
    assert integration.status == IntegrationStatus.connected.value
    assert integration.is_connected
    assert "long-token" not in integration.access_token_encrypted
    assert get_stored_access_token(integration.access_token_encrypted) == "long-token"
    assert integration.token_expires_at == NOW + timedelta(seconds=5184000)
    assert (integration.meta_user_id, integration.meta_user_name) == ("meta-42", "Agency Owner")


async def test_reconnect_updates_existing_row(session, fake_meta):
    user, _ = await seed_tenant(session)
    existing = await connect_integration(session, user, token="old-token")

    integration = await meta_integration.complete_oauth(session, user.id, "code-2", fake_meta, now=NOW)

    assert integration.id == existing.id
    assert get_stored_access_token(integration.access_token_encrypted) == "long-token"


async def test_disconnect_clears_token(session, fake_meta):
    user, _ = await seed_tenant(session)
    await connect_integration(session, user)

    await meta_integration.disconnect(session, user.id)

    integration = await meta_integration.get_integration(session, user.id)
    assert integration.status == IntegrationStatus.disconnected.value
    assert integration.access_token_encrypted is None
    assert integration.token_expires_at is None
    assert not integration.is_connected


async def test_disconnect_without_integration_is_a_no_op(session):
    user, _ = await seed_tenant(session)
    await meta_integration.disconnect(session, user.id)
    assert await meta_integration.get_integration(session, user.id) is None
