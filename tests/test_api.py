from __future__ import annotations

import uuid
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from qbo_sync.core.security import encode_oauth_state
from qbo_sync.main import create_app

from conftest import FERNET_KEY, REALM_ID, fault


API_HEADERS = {"X-API-Key": "test-key"}


@pytest.fixture
async def api(orchestrator):
    app = create_app()
    app.state.orchestrator = orchestrator
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


async def test_health_is_public(api):
    response = await api.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"


async def test_sync_requires_api_key(api, seed):
    response = await api.post(f"/sync/{seed.account_id}/clients/{uuid.uuid4()}")

    assert response.status_code == 401
    assert response.json()["message"] == "Invalid or missing API key"


async def test_sync_client_endpoint(api, seed, fake_qbo):
    await seed.connection()
    client = await seed.client()

    response = await api.post(f"/sync/{seed.account_id}/clients/{client.id}", headers=API_HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["local_entity_type"] == "client"
    assert body["external_entity_type"] == "customer"
    assert body["external_entity_id"] == fake_qbo.created("Customer")[0]["Id"]
    assert response.headers["X-Request-Id"]

    status_response = await api.get(f"/sync/{seed.account_id}/client/{client.id}", headers=API_HEADERS)
    assert status_response.json()["status"] == "synced"


async def test_sync_status_is_scoped_to_account(api, seed):
    await seed.connection()
    client = await seed.client()
    await api.post(f"/sync/{seed.account_id}/clients/{client.id}", headers=API_HEADERS)

    response = await api.get(f"/sync/{uuid.uuid4()}/client/{client.id}", headers=API_HEADERS)

    assert response.status_code == 404
    assert response.json()["error"] == "entity_not_found"
    assert "external_entity_id" not in response.json()


async def test_not_connected_is_rendered_as_conflict(api, seed):
    client = await seed.client()

    response = await api.post(
        f"/sync/{seed.account_id}/clients/{client.id}",
        headers={**API_HEADERS, "X-Request-Id": "req-123"},
    )

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "not_connected"
    assert body["retriable"] is False
    assert body["correlation_id"] == "req-123"


async def test_failed_dependency_is_rendered_with_cause(api, seed, fake_qbo):
    await seed.connection()
    client = await seed.client()
    invoice = await seed.invoice(client.id)
    fake_qbo.failures["customer"].append(fault(500, "Internal", "10000"))

    response = await api.post(f"/sync/{seed.account_id}/invoices/{invoice.id}", headers=API_HEADERS)

    assert response.status_code == 424
    body = response.json()
    assert body["error"] == "dependency_unresolved"
    assert body["retriable"] is True
    assert body["details"]["dependency_type"] == "client"
    assert body["details"]["cause_code"] == "external_api_error"


async def test_unknown_entity_type_is_rejected(api, seed):
    response = await api.post(f"/sync/{seed.account_id}/vendors/{uuid.uuid4()}", headers=API_HEADERS)

    assert response.status_code == 400


async def test_batch_sync_endpoint(api, seed):
    await seed.connection()
    first = await seed.client(name="First")
    second = await seed.client(name="Second")

    response = await api.post(
        f"/sync/{seed.account_id}/clients",
        json={"ids": [str(first.id), str(second.id), str(uuid.uuid4())]},
        headers=API_HEADERS,
    )

    assert response.status_code == 200
    statuses = [item["status"] for item in response.json()["items"]]
    assert statuses == ["synced", "synced", "failed"]


async def test_sync_logs_endpoint(api, seed):
    await seed.connection()
    client = await seed.client()
    await api.post(f"/sync/{seed.account_id}/clients/{client.id}", headers=API_HEADERS)

    response = await api.get(f"/sync/{seed.account_id}/logs", headers=API_HEADERS)

    assert response.status_code == 200
    assert [entry["action"] for entry in response.json()] == ["client:create"]


async def test_connect_redirects_to_intuit(api, seed):
    response = await api.get("/auth/connect", params={"account_id": str(seed.account_id)}, headers=API_HEADERS)

    assert response.status_code == 307
    location = urlparse(response.headers["location"])
    assert location.netloc == "appcenter.intuit.com"
    query = parse_qs(location.query)
    assert query["client_id"] == ["client-id"]
    assert query["scope"] == ["com.intuit.quickbooks.accounting"]
    assert query["state"]


async def test_callback_connects_account(api, seed, fake_qbo):
    state = encode_oauth_state(FERNET_KEY, str(seed.account_id))

    response = await api.get("/auth/callback", params={"code": "auth-code", "state": state, "realmId": REALM_ID})

    assert response.status_code == 200
    assert response.json()["connection"]["realm_id"] == REALM_ID
    assert fake_qbo.token_calls[0]["code"] == "auth-code"

    status_response = await api.get(f"/auth/{seed.account_id}/connection", headers=API_HEADERS)
    status = status_response.json()
    assert status["connected"] is True
    assert status["reconnect_required"] is False


async def test_callback_rejects_forged_state(api):
    response = await api.get("/auth/callback", params={"code": "c", "state": "forged", "realmId": REALM_ID})

    assert response.status_code == 400


async def test_callback_surfaces_exchange_failure(api, seed, fake_qbo):
    fake_qbo.token_failures.append(httpx.Response(400, json={"error": "invalid_grant"}))
    state = encode_oauth_state(FERNET_KEY, str(seed.account_id))

    response = await api.get("/auth/callback", params={"code": "c", "state": state, "realmId": REALM_ID})

    assert response.status_code == 400
    assert response.json()["error"] == "oauth_exchange_failed"
