"""
Webhook API routes.

Register subscriber endpoints, inspect their delivery ledger, retry
deliveries by hand and run the scheduler-triggered retry sweep.
"""
from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gateway.database import get_db
from gateway.dependencies.auth import get_current_user, require_scheduler, TokenPayload
from gateway.dependencies.delivery import get_delivery_engine
from gateway.models.webhook import Webhook, WebhookDelivery
from gateway.services.delivery_engine import DeliveryEngine
from gateway.services.delivery_service import DeliveryLedger, DEFAULT_DELIVERY_LIMIT, MAX_DELIVERY_LIMIT
from gateway.services.security import mask_secret
from gateway.services.webhook_service import WebhookService, WebhookPatch, get_available_events


router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class CreateWebhookRequest(BaseModel):
    """Request model for registering a webhook."""
    url: str
    events: list[str] = Field(min_length=1)


class WebhookResponse(BaseModel):
    """Webhook as shown after creation: secret masked."""
    id: str
    url: str
    events: list[str]
    secret: str
    is_active: bool
    failure_count: int
    last_triggered_at: str | None = None
    last_failure_at: str | None = None
    created_at: str


class CreateWebhookResponse(BaseModel):
    webhook: WebhookResponse
    secret: str
    message: str


class DeliveryResponse(BaseModel):
    """One ledger row."""
    id: str
    webhook_id: str
    event: str
    payload: str
    status: str
    attempts: int
    response_code: int | None = None
    response_body: str | None = None
    error_message: str | None = None
    next_retry_at: str | None = None
    delivered_at: str | None = None
    created_at: str


class RetryResponse(BaseModel):
    outcome: str
    delivery: DeliveryResponse


class SweepResponse(BaseModel):
    processed: int
    delivered: int
    failed: int
    retry_scheduled: int
    skipped: int


def _iso(value):
    return value.isoformat() if value else None


def webhook_to_response(webhook: Webhook) -> WebhookResponse:
    """Convert Webhook model to WebhookResponse with the secret masked."""
    return WebhookResponse(
        id=webhook.id,
        url=webhook.url,
        events=list(webhook.events),
        secret=mask_secret(webhook.secret),
        is_active=webhook.is_active,
        failure_count=webhook.failure_count or 0,
        last_triggered_at=_iso(webhook.last_triggered_at),
        last_failure_at=_iso(webhook.last_failure_at),
        created_at=webhook.created_at.isoformat(),
    )


def delivery_to_response(delivery: WebhookDelivery) -> DeliveryResponse:
    """Convert WebhookDelivery model to DeliveryResponse."""
    return DeliveryResponse(
        id=delivery.id,
        webhook_id=delivery.webhook_id,
        event=delivery.event,
        payload=delivery.payload.decode("utf-8", errors="replace"),
        status=delivery.status.value,
        attempts=delivery.attempts,
        response_code=delivery.response_code,
        response_body=delivery.response_body,
        error_message=delivery.error_message,
        next_retry_at=_iso(delivery.next_retry_at),
        delivered_at=_iso(delivery.delivered_at),
        created_at=delivery.created_at.isoformat(),
    )


@router.post("/", response_model=CreateWebhookResponse, status_code=status.HTTP_201_CREATED)
async def create_webhook(
    request: CreateWebhookRequest,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Register a webhook endpoint.

    The signing secret is returned in full only in this response.
    """
    created = await WebhookService(db).create_webhook(token.sub, request.url, request.events)
    return CreateWebhookResponse(
        webhook=webhook_to_response(created.record),
        secret=created.secret,
        message="Webhook created successfully. Use the secret to verify webhook signatures.",
    )


@router.get("/", response_model=list[WebhookResponse])
async def list_webhooks(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the caller's webhooks."""
    webhooks = await WebhookService(db).list_webhooks(token.sub)
    return [webhook_to_response(w) for w in webhooks]


@router.get("/events", response_model=dict)
async def available_events(token: TokenPayload = Depends(get_current_user)):
    """Catalog of events a webhook can subscribe to."""
    return {"events": get_available_events()}


@router.post("/deliveries/process", response_model=SweepResponse)
async def process_pending_retries(
    caller: str = Depends(require_scheduler),
    engine: DeliveryEngine = Depends(get_delivery_engine)
):
    """
    Attempt every due pending delivery (up to one batch).

    Called periodically by the external scheduler.
    """
    result = await engine.process_pending_retries()
    return SweepResponse(**result.as_dict())


@router.post("/deliveries/{delivery_id}/retry", response_model=RetryResponse)
async def retry_webhook_delivery(
    delivery_id: str,
    token: TokenPayload = Depends(get_current_user),
    engine: DeliveryEngine = Depends(get_delivery_engine)
):
    """Attempt a pending delivery now, regardless of its retry schedule."""
    result = await engine.retry_delivery(token.sub, delivery_id)
    return RetryResponse(outcome=result.outcome.value, delivery=delivery_to_response(result.delivery))


@router.patch("/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(
    webhook_id: str,
    patch: WebhookPatch,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Change a webhook's URL, subscribed events or active flag."""
    webhook = await WebhookService(db).update_webhook(token.sub, webhook_id, patch)
    return webhook_to_response(webhook)


@router.delete("/{webhook_id}", response_model=dict)
async def delete_webhook(
    webhook_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Remove a webhook."""
    await WebhookService(db).delete_webhook(token.sub, webhook_id)
    return {"success": True, "message": "Webhook deleted successfully"}


@router.get("/{webhook_id}/deliveries", response_model=list[DeliveryResponse])
async def get_webhook_deliveries(
    webhook_id: str,
    limit: int = Query(DEFAULT_DELIVERY_LIMIT, ge=1, le=MAX_DELIVERY_LIMIT),
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Recent delivery attempts for a webhook, newest first."""
    deliveries = await DeliveryLedger(db).get_deliveries(token.sub, webhook_id, limit)
    return [delivery_to_response(d) for d in deliveries]
