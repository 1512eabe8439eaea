"""Tests for the webhook registry."""
import pytest
from pydantic import ValidationError as PydanticValidationError

from conftest import OWNER_ID, OTHER_OWNER_ID, WEBHOOK_URL
from gateway.errors import NotAuthorizedError, NotFoundError, ValidationError
from gateway.services.webhook_service import (
    AVAILABLE_EVENTS,
    WebhookPatch,
    WebhookService,
    get_available_events,
    validate_events,
    validate_url,
)


# ============================================================================
# Validation
# ============================================================================

class TestValidation:

    @pytest.mark.parametrize("url", [
        "https://hooks.example.com/vendgros",
        "http://localhost:8080/hook",
    ])
    def test_accepts_http_urls(self, url):
        assert validate_url(url) == url

    @pytest.mark.parametrize("url", ["", "   ", "not a url", "ftp://example.com/hook", "/relative/path"])
    def test_rejects_bad_urls(self, url):
        with pytest.raises(ValidationError):
            validate_url(url)

    def test_events_must_come_from_catalog(self):
        with pytest.raises(ValidationError):
            validate_events(["listing.deleted"])
        with pytest.raises(ValidationError):
            validate_events([])
        with pytest.raises(ValidationError):
            validate_events("listing.created")

    def test_events_are_deduplicated(self):
        assert validate_events(["rating.created", "rating.created"]) == ["rating.created"]

    def test_catalog(self):
        events = get_available_events()

        assert len(events) == len(AVAILABLE_EVENTS) == 9
        assert {"name", "description"} == set(events[0])
        assert "listing.published" in {e["name"] for e in events}

    def test_patch_cannot_touch_secret(self):
        with pytest.raises(PydanticValidationError):
            WebhookPatch(secret="whsec_mine")


# ============================================================================
# Service
# ============================================================================

@pytest.mark.asyncio
async def test_create_webhook_returns_full_secret(db):
    created = await WebhookService(db).create_webhook(OWNER_ID, WEBHOOK_URL, ["listing.created"])

    assert created.secret.startswith("whsec_")
    assert created.record.secret == created.secret
    assert created.record.is_active is True
    assert created.record.failure_count == 0
    assert created.record.events == ["listing.created"]


@pytest.mark.asyncio
async def test_create_webhook_rejects_invalid_input(db):
    service = WebhookService(db)
    with pytest.raises(ValidationError):
        await service.create_webhook(OWNER_ID, "nope", ["listing.created"])
    with pytest.raises(ValidationError):
        await service.create_webhook(OWNER_ID, WEBHOOK_URL, ["unknown.event"])

    assert await service.list_webhooks(OWNER_ID) == []


@pytest.mark.asyncio
async def test_list_webhooks_is_owner_scoped(db, webhook):
    await WebhookService(db).create_webhook(OTHER_OWNER_ID, WEBHOOK_URL, ["listing.created"])

    webhooks = await WebhookService(db).list_webhooks(OWNER_ID)

    assert [w.id for w in webhooks] == [webhook.id]


@pytest.mark.asyncio
async def test_update_webhook(db, webhook):
    service = WebhookService(db)
    secret = webhook.secret

    updated = await service.update_webhook(
        OWNER_ID, webhook.id,
        WebhookPatch(url="https://new.example.com/hook", events=["message.received"], is_active=False)
    )

    assert updated.url == "https://new.example.com/hook"
    assert updated.events == ["message.received"]
    assert updated.is_active is False
    assert updated.secret == secret


@pytest.mark.asyncio
async def test_update_webhook_partial(db, webhook):
    updated = await WebhookService(db).update_webhook(OWNER_ID, webhook.id, WebhookPatch(is_active=False))

    assert updated.is_active is False
    assert updated.url == WEBHOOK_URL
    assert updated.events == ["listing.published", "reservation.created"]


@pytest.mark.asyncio
async def test_update_webhook_validates_patch(db, webhook):
    with pytest.raises(ValidationError):
        await WebhookService(db).update_webhook(OWNER_ID, webhook.id, WebhookPatch(events=[]))


@pytest.mark.asyncio
async def test_webhook_ownership(db, webhook):
    service = WebhookService(db)

    with pytest.raises(NotAuthorizedError):
        await service.update_webhook(OTHER_OWNER_ID, webhook.id, WebhookPatch(is_active=False))
    with pytest.raises(NotAuthorizedError):
        await service.delete_webhook(OTHER_OWNER_ID, webhook.id)
    with pytest.raises(NotFoundError):
        await service.get_owned_webhook(OWNER_ID, "missing")


@pytest.mark.asyncio
async def test_delete_webhook(db, webhook):
    service = WebhookService(db)

    await service.delete_webhook(OWNER_ID, webhook.id)

    assert await service.list_webhooks(OWNER_ID) == []
