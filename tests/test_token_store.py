from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import httpx
import pytest

from qbo_sync.core.errors import ExternalApiError, NoConnection, OAuthExchangeFailed, TokenRefreshFailed
from qbo_sync.core.security import decrypt_refresh_token
from qbo_sync.services.qbo_oauth import QuickBooksOAuthClient
from qbo_sync.services.sync_log import SyncLogWriter
from qbo_sync.services.token_store import TokenStore

from conftest import REALM_ID


@pytest.fixture
def sync_log(session_factory) -> SyncLogWriter:
    return SyncLogWriter(session_factory)


@pytest.fixture
def token_store(settings, session_factory, fake_qbo, sync_log) -> TokenStore:
    oauth = QuickBooksOAuthClient(settings, transport=fake_qbo.transport)
    return TokenStore(settings, session_factory, oauth, sync_log)


async def test_missing_connection_raises(token_store):
    with pytest.raises(NoConnection):
        await token_store.get_valid_access_token(uuid.uuid4())


async def test_fresh_token_is_returned_without_refresh(token_store, seed, fake_qbo):
    await seed.connection(expires_in=3600)

    token = await token_store.get_valid_access_token(seed.account_id)

    assert token == "access-0"
    assert fake_qbo.token_calls == []


async def test_token_inside_margin_is_refreshed_and_persisted(token_store, seed, fake_qbo, settings):
    await seed.connection(expires_in=30)

    token = await token_store.get_valid_access_token(seed.account_id)

    assert token == "access-1"
    assert fake_qbo.token_calls == [{"grant_type": "refresh_token", "refresh_token": "refresh-0"}]
    connection = await token_store.get_connection(seed.account_id)
    assert connection.access_token == "access-1"
    assert connection.refresh_counter == 1
    assert decrypt_refresh_token(settings.fernet_key, connection.refresh_token_enc) == "refresh-1"
    assert not token_store._needs_refresh(connection)


async def test_concurrent_callers_share_one_refresh(token_store, seed, fake_qbo):
    await seed.connection(expires_in=-10)
    fake_qbo.token_delay = 0.05

    tokens = await asyncio.gather(*(token_store.get_valid_access_token(seed.account_id) for _ in range(5)))

    assert set(tokens) == {"access-1"}
    assert len(fake_qbo.token_calls) == 1


async def test_revoked_refresh_token_requires_reconnect(settings, session_factory, seed, fake_qbo, sync_log):
    retrying = settings.model_copy(update={"retry_max_attempts": 3, "retry_max_wait_seconds": 0})
    token_store = TokenStore(
        retrying,
        session_factory,
        QuickBooksOAuthClient(retrying, transport=fake_qbo.transport),
        sync_log,
    )
    await seed.connection(expires_in=-10)
    fake_qbo.token_failures.append(httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(TokenRefreshFailed) as excinfo:
        await token_store.get_valid_access_token(seed.account_id)

    assert len(fake_qbo.token_calls) == 1
    assert excinfo.value.provider_error == "invalid_grant"
    assert excinfo.value.code == "reconnect_required"
    assert not excinfo.value.retriable
    connection = await token_store.get_connection(seed.account_id)
    assert connection.access_token == "access-0"
    entries = await sync_log.recent(seed.account_id)
    assert [(entry.action, entry.status) for entry in entries] == [("token:refresh", "error")]


async def test_token_endpoint_outage_is_retriable(token_store, seed, fake_qbo):
    await seed.connection(expires_in=-10)
    fake_qbo.token_failures.append(httpx.Response(503, text="unavailable"))

    with pytest.raises(ExternalApiError) as excinfo:
        await token_store.get_valid_access_token(seed.account_id)

    assert excinfo.value.status_code == 503
    assert excinfo.value.retriable


async def test_force_refresh_skips_grant_when_token_already_replaced(token_store, seed, fake_qbo):
    await seed.connection(access_token="access-0")

    first = await token_store.force_refresh(seed.account_id, "access-0")
    second = await token_store.force_refresh(seed.account_id, "access-0")

    assert first == second == "access-1"
    assert len(fake_qbo.token_calls) == 1


async def test_exchange_authorization_code_upserts_connection(token_store, fake_qbo, settings, sync_log):
    account_id = uuid.uuid4()

    connection = await token_store.exchange_authorization_code(account_id, "auth-code", REALM_ID)

    assert connection.realm_id == REALM_ID
    assert connection.access_token == "access-1"
    assert decrypt_refresh_token(settings.fernet_key, connection.refresh_token_enc) == "refresh-1"
    assert fake_qbo.token_calls[0]["grant_type"] == "authorization_code"
    assert fake_qbo.token_calls[0]["redirect_uri"] == "http://localhost:8000/auth/callback"

    again = await token_store.exchange_authorization_code(account_id, "second-code", "4620816365")

    assert again.id == connection.id
    assert again.realm_id == "4620816365"
    assert again.access_token == "access-2"
    entries = await sync_log.recent(account_id)
    assert {entry.action for entry in entries} == {"oauth:exchange"}


async def test_exchange_failure_is_tagged(token_store, fake_qbo):
    fake_qbo.token_failures.append(httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(OAuthExchangeFailed) as excinfo:
        await token_store.exchange_authorization_code(uuid.uuid4(), "bad-code", REALM_ID)

    assert "invalid_grant" in str(excinfo.value)


async def test_expired_refresh_token_is_detected(token_store):
    expired = SimpleNamespace(refresh_expires_at=datetime.now(timezone.utc) - timedelta(days=1))
    valid = SimpleNamespace(refresh_expires_at=datetime.now(timezone.utc) + timedelta(days=1))

    assert token_store.is_refresh_token_expired(expired)
    assert not token_store.is_refresh_token_expired(valid)
