"""
Delivery ledger.

Creates PENDING delivery rows for domain events and exposes the ledger to
webhook owners. Rows are never mutated here; see delivery_engine.py.
"""
import json
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.errors import ValidationError, NotFoundError
from gateway.logging_config import get_logger
from gateway.models.base import utcnow
from gateway.models.webhook import Webhook, WebhookDelivery, DeliveryStatus
from gateway.routes.metrics import track_delivery_enqueued
from gateway.services.webhook_service import WebhookService


DEFAULT_DELIVERY_LIMIT = 50
MAX_DELIVERY_LIMIT = 100


def build_event_payload(event: str, data) -> bytes:
    """Serialise the standard event envelope sent to subscribers."""
    envelope = {
        "event": event,
        "data": data,
        "timestamp": utcnow().isoformat() + "Z",
    }
    return json.dumps(envelope, separators=(",", ":"), default=str).encode("utf-8")


class DeliveryLedger:
    """Service for recording and reading webhook deliveries."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.log = get_logger(component="delivery_ledger")

    async def enqueue_delivery(self, webhook_id: str, event: str, payload: bytes | str) -> WebhookDelivery:
        """
        Record that event must reach webhook.

        Args:
            webhook_id: Target webhook UUID
            event: Event name the webhook is subscribed to
            payload: Pre-serialised JSON body, stored untouched

        Returns:
            The new delivery row (pending, attempts=0, no retry scheduled)
        """
        if not event:
            raise ValidationError("event is required")
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        if not isinstance(payload, bytes):
            raise ValidationError("payload must be pre-serialised bytes or str")

        webhook = await self.db.get(Webhook, webhook_id)
        if webhook is None:
            raise NotFoundError("Webhook not found")
        if not webhook.is_active:
            raise ValidationError("Webhook is inactive")
        if event not in webhook.events:
            raise ValidationError(f"Webhook is not subscribed to {event}")

        delivery = WebhookDelivery(
            webhook_id=webhook.id,
            event=event,
            payload=payload,
            status=DeliveryStatus.PENDING,
            attempts=0,
            next_retry_at=None,
        )
        self.db.add(delivery)
        await self.db.commit()
        await self.db.refresh(delivery)

        track_delivery_enqueued(event)
        self.log.info("delivery_enqueued", webhook_id=webhook.id, delivery_id=delivery.id, event_name=event)
        return delivery

    async def trigger_event(self, owner_id: str, event: str, data) -> list[WebhookDelivery]:
        """
        Fan an event out to every active webhook of owner subscribed to it.

        Called by domain-event producers (listings, reservations, ratings,
        messaging). The envelope is serialised once and shared by all rows.
        """
        stmt = select(Webhook).where(
            Webhook.owner_id == owner_id,
            Webhook.is_active.is_(True)
        )
        result = await self.db.execute(stmt)
        subscribed = [w for w in result.scalars().all() if event in w.events]

        if not subscribed:
            self.log.debug("event_without_subscribers", owner_id=owner_id, event_name=event)
            return []

        payload = build_event_payload(event, data)
        return [
            await self.enqueue_delivery(webhook.id, event, payload)
            for webhook in subscribed
        ]

    async def get_deliveries(
        self,
        owner_id: str,
        webhook_id: str,
        limit: int = DEFAULT_DELIVERY_LIMIT
    ) -> list[WebhookDelivery]:
        """
        Recent deliveries for a webhook, newest first.

        Args:
            owner_id: Calling owner (must own the webhook)
            webhook_id: Webhook UUID
            limit: Maximum rows, 1-100
        """
        if not 1 <= limit <= MAX_DELIVERY_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_DELIVERY_LIMIT}")

        await WebhookService(self.db).get_owned_webhook(owner_id, webhook_id)

        stmt = (
            select(WebhookDelivery)
            .where(WebhookDelivery.webhook_id == webhook_id)
            .order_by(WebhookDelivery.created_at.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
