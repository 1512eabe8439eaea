"""
Webhook Service (Webhook Registry)

Manages subscriber endpoints, their event subscriptions and signing secrets.

SECURITY: Every mutation is scoped to the calling owner. The full secret is
returned only by create_webhook; later reads use mask_secret().
"""
from dataclasses import dataclass
from pydantic import AnyHttpUrl, BaseModel, ConfigDict, TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.errors import ValidationError, NotFoundError, NotAuthorizedError
from gateway.logging_config import get_logger
from gateway.models.webhook import Webhook
from gateway.services.security import generate_webhook_secret


# Subscribable events and what triggers them
AVAILABLE_EVENTS = {
    "listing.created": "Triggered when a new listing is created",
    "listing.updated": "Triggered when a listing is updated",
    "listing.published": "Triggered when a listing is published",
    "reservation.created": "Triggered when a reservation is made",
    "reservation.confirmed": "Triggered when a reservation is confirmed",
    "reservation.completed": "Triggered when a transaction is completed",
    "reservation.cancelled": "Triggered when a reservation is cancelled",
    "rating.created": "Triggered when a rating is submitted",
    "message.received": "Triggered when you receive a message",
}

_url_adapter = TypeAdapter(AnyHttpUrl)


class WebhookPatch(BaseModel):
    """Partial update for a webhook. The secret is never patchable."""
    model_config = ConfigDict(extra="forbid")

    url: str | None = None
    events: list[str] | None = None
    is_active: bool | None = None


@dataclass
class CreatedWebhook:
    """Result of create_webhook: the stored record plus the one-time secret."""
    record: Webhook
    secret: str


def get_available_events() -> list[dict]:
    """Static catalog of subscribable event names and descriptions."""
    return [
        {"name": name, "description": description}
        for name, description in AVAILABLE_EVENTS.items()
    ]


def validate_url(url: str) -> str:
    """Require an absolute http(s) URL with a host."""
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("url is required")
    try:
        _url_adapter.validate_python(url.strip())
    except PydanticValidationError:
        raise ValidationError(f"Invalid webhook URL: {url}")
    return url.strip()


def validate_events(events) -> list[str]:
    """Non-empty, de-duplicated list of catalog event names."""
    if isinstance(events, str) or not events:
        raise ValidationError("At least one event is required")
    cleaned = []
    for event in events:
        if event not in AVAILABLE_EVENTS:
            raise ValidationError(f"Unknown event: {event}")
        if event not in cleaned:
            cleaned.append(event)
    return cleaned


class WebhookService:
    """Service for managing an owner's webhook endpoints."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.log = get_logger(component="webhooks")

    async def create_webhook(self, owner_id: str, url: str, events: list[str]) -> CreatedWebhook:
        """
        Register a webhook endpoint.

        Args:
            owner_id: Marketplace user who owns the webhook
            url: Absolute http(s) URL receiving POSTs
            events: Event names to subscribe to

        Returns:
            CreatedWebhook with the record and the full signing secret
        """
        clean_url = validate_url(url)
        clean_events = validate_events(events)
        secret = generate_webhook_secret()

        webhook = Webhook(
            owner_id=owner_id,
            url=clean_url,
            events=clean_events,
            secret=secret,
            is_active=True,
        )
        self.db.add(webhook)
        await self.db.commit()
        await self.db.refresh(webhook)

        self.log.info("webhook_created", owner_id=owner_id, webhook_id=webhook.id, events=clean_events)
        return CreatedWebhook(record=webhook, secret=secret)

    async def list_webhooks(self, owner_id: str) -> list[Webhook]:
        """List an owner's webhooks, most recent first."""
        stmt = (
            select(Webhook)
            .where(Webhook.owner_id == owner_id)
            .order_by(Webhook.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_owned_webhook(self, owner_id: str, webhook_id: str) -> Webhook:
        """
        Load a webhook and enforce ownership.

        Raises:
            NotFoundError: no webhook with this id
            NotAuthorizedError: webhook belongs to another owner
        """
        webhook = await self.db.get(Webhook, webhook_id)
        if webhook is None:
            raise NotFoundError("Webhook not found")
        if webhook.owner_id != owner_id:
            raise NotAuthorizedError("You don't have permission to access this webhook")
        return webhook

    async def update_webhook(self, owner_id: str, webhook_id: str, patch: WebhookPatch) -> Webhook:
        """Apply a partial update to url, events and/or is_active."""
        clean_url = validate_url(patch.url) if patch.url is not None else None
        clean_events = validate_events(patch.events) if patch.events is not None else None

        webhook = await self.get_owned_webhook(owner_id, webhook_id)

        if clean_url is not None:
            webhook.url = clean_url
        if clean_events is not None:
            webhook.events = clean_events
        if patch.is_active is not None:
            webhook.is_active = patch.is_active

        await self.db.commit()
        await self.db.refresh(webhook)
        self.log.info("webhook_updated", owner_id=owner_id, webhook_id=webhook_id)
        return webhook

    async def delete_webhook(self, owner_id: str, webhook_id: str) -> None:
        """Remove a webhook. Ownership-checked."""
        webhook = await self.get_owned_webhook(owner_id, webhook_id)
        await self.db.delete(webhook)
        await self.db.commit()
        self.log.info("webhook_deleted", owner_id=owner_id, webhook_id=webhook_id)
