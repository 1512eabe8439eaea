"""
End-to-end tests of the HTTP surface.

The FastAPI app runs in-process through httpx.ASGITransport with get_db and
get_delivery_engine overridden to use the per-test database and receiver.
"""
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from prometheus_client import REGISTRY

from conftest import OWNER_ID, OTHER_OWNER_ID, WEBHOOK_URL
from gateway.config import settings
from gateway.database import get_db
from gateway.dependencies.delivery import get_delivery_engine
from gateway.main import app
from gateway.services.delivery_service import DeliveryLedger
from gateway.services.jwt_service import JWTService
from gateway.services.rate_limiter import rate_limiter


def auth(user_id: str = OWNER_ID, role: str = "member") -> dict:
    return {"Authorization": f"Bearer {JWTService().create_token(user_id, role=role)}"}


@pytest_asyncio.fixture
async def client(session_factory, delivery_engine, monkeypatch):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_delivery_engine] = lambda: delivery_engine
    monkeypatch.setattr(rate_limiter, "is_allowed", AsyncMock(return_value=(True, 0)))
    monkeypatch.setattr(rate_limiter, "get_current_count", AsyncMock(return_value=1))

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c

    app.dependency_overrides.clear()


async def create_webhook(client, events=("listing.published",)) -> dict:
    response = await client.post(
        "/api/webhooks/", json={"url": WEBHOOK_URL, "events": list(events)}, headers=auth()
    )
    assert response.status_code == 201
    return response.json()


# ============================================================================
# Health
# ============================================================================

@pytest.mark.asyncio
async def test_root_and_health(client):
    root = await client.get("/")
    assert root.status_code == 200
    assert root.json()["status"] == "running"

    health = await client.get("/health")
    assert health.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    await client.get("/health")
    response = await client.get("/metrics")

    assert response.status_code == 200
    assert "http_requests_total" in response.text


# ============================================================================
# API keys
# ============================================================================

@pytest.mark.asyncio
async def test_api_key_lifecycle(client):
    response = await client.post(
        "/api/keys/", json={"name": "Inventory sync", "scopes": ["listings:read"]}, headers=auth()
    )
    assert response.status_code == 201
    body = response.json()
    plaintext = body["key"]
    assert plaintext.startswith("vg_")
    assert body["api_key"]["key_prefix"] == plaintext[:8]
    assert "key_hash" not in body["api_key"]

    listed = (await client.get("/api/keys/", headers=auth())).json()
    assert [k["id"] for k in listed] == [body["api_key"]["id"]]
    assert all("key" not in k and "key_hash" not in k for k in listed)

    key_info = await client.get("/api/v1/key", headers={"X-API-Key": plaintext})
    assert key_info.status_code == 200
    assert key_info.json()["key_prefix"] == plaintext[:8]
    assert key_info.json()["scopes"] == ["listings:read"]

    bearer = await client.get("/api/v1/key", headers={"Authorization": f"Bearer {plaintext}"})
    assert bearer.status_code == 200

    patched = await client.patch(
        f"/api/keys/{body['api_key']['id']}", json={"is_active": False}, headers=auth()
    )
    assert patched.status_code == 200
    assert patched.json()["is_active"] is False
    assert (await client.get("/api/v1/key", headers={"X-API-Key": plaintext})).status_code == 401

    deleted = await client.delete(f"/api/keys/{body['api_key']['id']}", headers=auth())
    assert deleted.status_code == 200
    assert (await client.get("/api/keys/", headers=auth())).json() == []


@pytest.mark.asyncio
async def test_api_key_validation(client):
    response = await client.post(
        "/api/keys/", json={"name": "x", "scopes": ["a"], "rate_limit": 50}, headers=auth()
    )
    assert response.status_code == 422

    response = await client.post("/api/keys/", json={"name": "x", "scopes": []}, headers=auth())
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_api_key_patch_rejects_unknown_fields(client):
    created = (await client.post("/api/keys/", json={"name": "x", "scopes": ["a"]}, headers=auth())).json()

    response = await client.patch(
        f"/api/keys/{created['api_key']['id']}", json={"owner_id": OTHER_OWNER_ID}, headers=auth()
    )
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_api_key_ownership(client):
    created = (await client.post("/api/keys/", json={"name": "x", "scopes": ["a"]}, headers=auth())).json()
    key_id = created["api_key"]["id"]

    assert (await client.delete(f"/api/keys/{key_id}", headers=auth(OTHER_OWNER_ID))).status_code == 403
    assert (await client.delete("/api/keys/missing", headers=auth())).status_code == 404
    assert len((await client.get("/api/keys/", headers=auth())).json()) == 1


@pytest.mark.asyncio
async def test_api_key_auth_failures(client):
    assert (await client.get("/api/v1/key")).status_code == 401
    assert (await client.get("/api/v1/key", headers={"X-API-Key": "vg_" + "0" * 64})).status_code == 401


@pytest.mark.asyncio
async def test_rate_limit_exceeded(client, monkeypatch):
    plaintext = (await client.post("/api/keys/", json={"name": "x", "scopes": ["a"]}, headers=auth())).json()["key"]
    monkeypatch.setattr(rate_limiter, "is_allowed", AsyncMock(return_value=(False, 120)))
    blocked_before = REGISTRY.get_sample_value("api_key_rate_limit_exceeded_total") or 0

    response = await client.get("/api/v1/key", headers={"X-API-Key": plaintext})

    assert response.status_code == 429
    assert response.headers["Retry-After"] == "120"
    assert REGISTRY.get_sample_value("api_key_rate_limit_exceeded_total") == blocked_before + 1


@pytest.mark.asyncio
async def test_requests_without_token_are_rejected(client):
    assert (await client.get("/api/keys/")).status_code in (401, 403)
    assert (await client.get("/api/webhooks/", headers={"Authorization": "Bearer not-a-jwt"})).status_code == 401


# ============================================================================
# Webhooks
# ============================================================================

@pytest.mark.asyncio
async def test_webhook_secret_shown_once(client):
    created = await create_webhook(client)
    secret = created["secret"]

    assert secret.startswith("whsec_")
    assert created["webhook"]["secret"] == secret[:12] + "..."

    listed = (await client.get("/api/webhooks/", headers=auth())).json()
    assert listed[0]["secret"] == secret[:12] + "..."
    assert secret not in str(listed)


@pytest.mark.asyncio
async def test_webhook_validation_errors(client):
    response = await client.post(
        "/api/webhooks/", json={"url": "not a url", "events": ["listing.published"]}, headers=auth()
    )
    assert response.status_code == 400

    response = await client.post(
        "/api/webhooks/", json={"url": WEBHOOK_URL, "events": ["nope"]}, headers=auth()
    )
    assert response.status_code == 400
    assert "nope" in response.json()["detail"]


@pytest.mark.asyncio
async def test_events_catalog(client):
    response = await client.get("/api/webhooks/events", headers=auth())

    assert response.status_code == 200
    assert len(response.json()["events"]) == 9


@pytest.mark.asyncio
async def test_update_and_delete_webhook(client):
    webhook_id = (await create_webhook(client))["webhook"]["id"]

    response = await client.patch(f"/api/webhooks/{webhook_id}", json={"is_active": False}, headers=auth())
    assert response.status_code == 200
    assert response.json()["is_active"] is False

    response = await client.patch(f"/api/webhooks/{webhook_id}", json={"secret": "whsec_x"}, headers=auth())
    assert response.status_code == 422

    response = await client.patch(
        f"/api/webhooks/{webhook_id}", json={"is_active": True}, headers=auth(OTHER_OWNER_ID)
    )
    assert response.status_code == 403

    assert (await client.delete(f"/api/webhooks/{webhook_id}", headers=auth())).status_code == 200
    assert (await client.get("/api/webhooks/", headers=auth())).json() == []


@pytest.mark.asyncio
async def test_deliveries_and_manual_retry(client, session_factory, receiver):
    webhook_id = (await create_webhook(client))["webhook"]["id"]
    async with session_factory() as db:
        delivery = await DeliveryLedger(db).enqueue_delivery(webhook_id, "listing.published", b'{"id":"l1"}')

    listed = await client.get(f"/api/webhooks/{webhook_id}/deliveries", headers=auth())
    assert listed.status_code == 200
    assert listed.json()[0]["status"] == "pending"
    assert listed.json()[0]["payload"] == '{"id":"l1"}'

    retried = await client.post(f"/api/webhooks/deliveries/{delivery.id}/retry", headers=auth())
    assert retried.status_code == 200
    assert retried.json()["outcome"] == "delivered"
    assert retried.json()["delivery"]["response_code"] == 200
    assert len(receiver.requests) == 1

    again = await client.post(f"/api/webhooks/deliveries/{delivery.id}/retry", headers=auth())
    assert again.status_code == 400

    missing = await client.post("/api/webhooks/deliveries/missing/retry", headers=auth())
    assert missing.status_code == 404

    too_many = await client.get(f"/api/webhooks/{webhook_id}/deliveries?limit=101", headers=auth())
    assert too_many.status_code == 422

    other = await client.get(f"/api/webhooks/{webhook_id}/deliveries", headers=auth(OTHER_OWNER_ID))
    assert other.status_code == 403


# ============================================================================
# Scheduler sweep
# ============================================================================

@pytest.mark.asyncio
async def test_sweep_requires_scheduler_credentials(client, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")

    assert (await client.post("/api/webhooks/deliveries/process")).status_code in (401, 403)
    assert (await client.post(
        "/api/webhooks/deliveries/process", headers={"Authorization": "Bearer wrong"}
    )).status_code == 401
    assert (await client.post("/api/webhooks/deliveries/process", headers=auth())).status_code == 403


@pytest.mark.asyncio
async def test_sweep_with_cron_secret(client, session_factory, receiver, monkeypatch):
    monkeypatch.setattr(settings, "CRON_SECRET", "cron-secret")
    webhook_id = (await create_webhook(client))["webhook"]["id"]
    async with session_factory() as db:
        await DeliveryLedger(db).enqueue_delivery(webhook_id, "listing.published", b"{}")

    response = await client.post(
        "/api/webhooks/deliveries/process", headers={"Authorization": "Bearer cron-secret"}
    )

    assert response.status_code == 200
    assert response.json() == {
        "processed": 1, "delivered": 1, "failed": 0, "retry_scheduled": 0, "skipped": 0,
    }
    assert len(receiver.requests) == 1


@pytest.mark.asyncio
async def test_sweep_with_admin_token(client):
    response = await client.post("/api/webhooks/deliveries/process", headers=auth("ops", role="admin"))

    assert response.status_code == 200
    assert response.json()["processed"] == 0
