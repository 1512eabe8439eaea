"""
Webhook delivery engine.

Turns ledger rows from PENDING into DELIVERED or FAILED. Every attempt,
whether triggered by a manual retry or by a sweep, follows the same steps:

    claim -> load -> sign -> POST (hard timeout) -> record outcome

A row is claimed with a conditional UPDATE on lease_expires_at, so two
concurrent sweeps can never attempt the same row. A worker that dies
mid-attempt leaves a lease behind that simply expires. The outcome write is
fenced by the same lease, so a worker whose lease lapsed cannot overwrite a
row another worker has since taken over.
"""
import asyncio
import enum
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Callable

import httpx
from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gateway.config import settings
from gateway.database import AsyncSessionLocal
from gateway.errors import (
    ConflictError, NotAuthorizedError, NotFoundError, ValidationError,
    TransientDeliveryError, TerminalDeliveryError,
)
from gateway.logging_config import get_logger
from gateway.models.base import utcnow
from gateway.models.webhook import Webhook, WebhookDelivery, DeliveryStatus
from gateway.routes.metrics import track_delivery_attempt, track_sweep
from gateway.sentry_config import capture_exception, capture_message
from gateway.services.security import sign_payload


# Seconds to wait after the Nth failed attempt: 1 min, 5 min, 15 min, 1 h, 3 h
BACKOFF_SCHEDULE = (60, 300, 900, 3600, 10800)
MAX_RESPONSE_BODY = 1000

SIGNATURE_HEADER = "X-Vendgros-Signature"
EVENT_HEADER = "X-Vendgros-Event"


def backoff_delay(attempts: int) -> timedelta:
    """
    Delay before the next attempt, indexed by the attempt count just reached.

    Counts past the end of the schedule reuse the last (3 hour) step.
    """
    index = min(max(attempts, 1), len(BACKOFF_SCHEDULE)) - 1
    return timedelta(seconds=BACKOFF_SCHEDULE[index])


class AttemptOutcome(str, enum.Enum):
    """What happened to a row on one pass through the engine."""
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    SKIPPED = "skipped"


class SkipReason(str, enum.Enum):
    """Why a SKIPPED attempt did not record an outcome."""
    NOT_CLAIMED = "not_claimed"          # another worker holds the lease, or the row is no longer pending
    ROW_DELETED = "row_deleted"          # webhook (and its deliveries) deleted
    WEBHOOK_INACTIVE = "webhook_inactive"
    LEASE_LOST = "lease_lost"            # lease lapsed and the row was taken over mid-attempt
    CRASHED = "crashed"


@dataclass
class AttemptResult:
    outcome: AttemptOutcome
    delivery: WebhookDelivery | None = None
    reason: SkipReason | None = None


@dataclass
class SweepResult:
    """Aggregate counters returned by process_pending_retries."""
    processed: int = 0
    delivered: int = 0
    failed: int = 0
    retry_scheduled: int = 0
    skipped: int = 0

    def record(self, outcome: AttemptOutcome) -> None:
        if outcome is AttemptOutcome.SKIPPED:
            self.skipped += 1
            return
        self.processed += 1
        if outcome is AttemptOutcome.DELIVERED:
            self.delivered += 1
        elif outcome is AttemptOutcome.FAILED:
            self.failed += 1
        else:
            self.retry_scheduled += 1

    def as_dict(self) -> dict:
        return asdict(self)


class DeliveryEngine:
    """
    State machine and backoff driver for webhook deliveries.

    Each row is handled in its own sessions from session_factory so the
    sweep can run attempts concurrently. Pass http_client to reuse a
    connection pool (the worker does); otherwise a client is opened per
    attempt.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] = AsyncSessionLocal,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utcnow,
        timeout_seconds: float = settings.WEBHOOK_TIMEOUT_SECONDS,
        max_retries: int = settings.WEBHOOK_MAX_RETRIES,
        batch_size: int = settings.WEBHOOK_BATCH_SIZE,
        concurrency: int = settings.WEBHOOK_CONCURRENCY,
        lease_seconds: int = settings.WEBHOOK_LEASE_SECONDS,
    ):
        self.session_factory = session_factory
        self.http_client = http_client
        self.clock = clock
        self.timeout = timeout_seconds
        self.max_retries = max_retries
        self.batch_size = batch_size
        self.concurrency = concurrency
        self.lease = timedelta(seconds=lease_seconds)
        self.log = get_logger(component="delivery_engine")

    # ============================================
    # Claiming
    # ============================================

    async def claim(self, delivery_id: str, due_only: bool = False) -> datetime | None:
        """
        Take an exclusive lease on a pending row.

        Only one concurrent caller can win: the UPDATE matches the row only
        while it is pending and unleased (or its lease has lapsed).

        Args:
            delivery_id: Delivery UUID
            due_only: Also require next_retry_at to have passed (sweeps)

        Returns:
            The lease expiry this caller now holds, or None. The value is the
            fencing token every later write on the row must match.
        """
        now = self.clock()
        lease = now + self.lease
        conditions = [
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.status == DeliveryStatus.PENDING,
            or_(
                WebhookDelivery.lease_expires_at.is_(None),
                WebhookDelivery.lease_expires_at <= now,
            ),
        ]
        if due_only:
            conditions.append(or_(
                WebhookDelivery.next_retry_at.is_(None),
                WebhookDelivery.next_retry_at <= now,
            ))

        stmt = (
            update(WebhookDelivery)
            .where(*conditions)
            .values(lease_expires_at=lease)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            await db.commit()
        return lease if result.rowcount == 1 else None

    async def release(self, delivery_id: str, lease: datetime) -> None:
        """Drop our lease without recording an attempt."""
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery_id,
                WebhookDelivery.lease_expires_at == lease,
            )
            .values(lease_expires_at=None)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            await db.execute(stmt)
            await db.commit()

    # ============================================
    # Attempt algorithm
    # ============================================

    async def _post(self, webhook: Webhook, delivery: WebhookDelivery) -> tuple[int, str]:
        """
        Sign and POST the raw payload.

        Returns:
            (status_code, truncated response body) for a 2xx response

        Raises:
            TransientDeliveryError: non-2xx, network error or timeout
        """
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(delivery.payload, webhook.secret),
            EVENT_HEADER: delivery.event,
            "User-Agent": settings.WEBHOOK_USER_AGENT,
        }

        try:
            response = await asyncio.wait_for(
                self._send(webhook.url, delivery.payload, headers),
                timeout=self.timeout
            )
        except asyncio.TimeoutError:
            raise TransientDeliveryError(f"Timed out after {self.timeout:g}s")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise TransientDeliveryError(str(e) or e.__class__.__name__)

        body = response.text[:MAX_RESPONSE_BODY]
        if not response.is_success:
            raise TransientDeliveryError(
                f"HTTP {response.status_code}",
                response_code=response.status_code,
                response_body=body
            )
        return response.status_code, body

    async def _send(self, url: str, payload: bytes, headers: dict) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.post(url, content=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, content=payload, headers=headers)

    async def _attempt(self, delivery_id: str, due_only: bool) -> AttemptResult:
        """Run one claimed attempt on a row and persist the outcome."""
        lease = await self.claim(delivery_id, due_only=due_only)
        if lease is None:
            return AttemptResult(AttemptOutcome.SKIPPED, reason=SkipReason.NOT_CLAIMED)

        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            webhook = await db.get(Webhook, delivery.webhook_id) if delivery else None

        if delivery is None or webhook is None:
            return AttemptResult(AttemptOutcome.SKIPPED, reason=SkipReason.ROW_DELETED)

        log = self.log.bind(delivery_id=delivery_id, webhook_id=webhook.id, event_name=delivery.event)

        if not webhook.is_active:
            await self.release(delivery_id, lease)
            log.info("delivery_skipped_inactive_webhook")
            return AttemptResult(AttemptOutcome.SKIPPED, delivery, SkipReason.WEBHOOK_INACTIVE)

        try:
            response_code, response_body = await self._post(webhook, delivery)
        except TransientDeliveryError as e:
            now = self.clock()
            outcome, values = self._failure_values(delivery, e, now)
            webhook_values = {"failure_count": Webhook.failure_count + 1, "last_failure_at": now}
            error = e
        else:
            now = self.clock()
            outcome, values = self._success_values(response_code, response_body, now)
            webhook_values = {"last_triggered_at": now}
            error = None

        recorded = await self._record(delivery, lease, values, webhook_values)

        if recorded is None:
            async with self.session_factory() as db:
                still_there = await db.get(WebhookDelivery, delivery_id) is not None
            reason = SkipReason.LEASE_LOST if still_there else SkipReason.ROW_DELETED
            log.warning("delivery_outcome_discarded", reason=reason.value, outcome=outcome.value)
            return AttemptResult(AttemptOutcome.SKIPPED, reason=reason)

        if error is not None:
            log.warning(
                "delivery_attempt_failed",
                attempts=recorded.attempts,
                response_code=error.response_code,
                error=error.message,
                outcome=outcome.value,
                next_retry_at=recorded.next_retry_at.isoformat() if recorded.next_retry_at else None,
            )
        else:
            log.info("delivery_succeeded", response_code=response_code, attempts=recorded.attempts)

        if outcome is AttemptOutcome.FAILED:
            capture_message(
                "Webhook delivery failed permanently",
                level="warning",
                delivery_id=recorded.id,
                webhook_id=recorded.webhook_id,
            )

        track_delivery_attempt(recorded.event, outcome.value)
        return AttemptResult(outcome, recorded)

    def _success_values(self, response_code: int, response_body: str, now: datetime) -> tuple[AttemptOutcome, dict]:
        return AttemptOutcome.DELIVERED, {
            "status": DeliveryStatus.DELIVERED,
            "response_code": response_code,
            "response_body": response_body,
            "error_message": None,
            "delivered_at": now,
            "next_retry_at": None,
        }

    def _failure_values(
        self,
        delivery: WebhookDelivery,
        error: TransientDeliveryError,
        now: datetime
    ) -> tuple[AttemptOutcome, dict]:
        attempts = delivery.attempts + 1
        values = {
            "attempts": attempts,
            "response_code": error.response_code,
            "response_body": error.response_body,
        }

        if attempts >= self.max_retries:
            terminal = TerminalDeliveryError(delivery.id, attempts)
            values.update(status=DeliveryStatus.FAILED, error_message=terminal.message, next_retry_at=None)
            return AttemptOutcome.FAILED, values

        values.update(error_message=error.message, next_retry_at=now + backoff_delay(attempts))
        return AttemptOutcome.RETRY_SCHEDULED, values

    async def _record(
        self,
        delivery: WebhookDelivery,
        lease: datetime,
        values: dict,
        webhook_values: dict
    ) -> WebhookDelivery | None:
        """
        Write an attempt's outcome, fenced by the lease taken in claim().

        The row only changes while it is still pending and still carries our
        lease. If the lease lapsed and another worker claimed the row, or the
        row was deleted with its webhook, nothing is written.

        Returns:
            The updated row, or None if the write was fenced off
        """
        stmt = (
            update(WebhookDelivery)
            .where(
                WebhookDelivery.id == delivery.id,
                WebhookDelivery.status == DeliveryStatus.PENDING,
                WebhookDelivery.lease_expires_at == lease,
            )
            .values(lease_expires_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            if result.rowcount != 1:
                await db.rollback()
                return None

            await db.execute(
                update(Webhook)
                .where(Webhook.id == delivery.webhook_id)
                .values(**webhook_values)
            )
            await db.commit()
            return await db.get(WebhookDelivery, delivery.id)

    # ============================================
    # Triggers
    # ============================================

    async def retry_delivery(self, owner_id: str, delivery_id: str) -> AttemptResult:
        """
        Attempt a delivery immediately, ignoring next_retry_at.

        Shares the attempts counter and retry ceiling with automatic retries.

        Raises:
            NotFoundError: delivery (or its webhook) does not exist
            NotAuthorizedError: webhook belongs to another owner
            ValidationError: row is terminal or the webhook is inactive
            ConflictError: another worker holds (or took over) the row's lease
        """
        async with self.session_factory() as db:
            delivery = await db.get(WebhookDelivery, delivery_id)
            if delivery is None:
                raise NotFoundError("Delivery not found")
            webhook = await db.get(Webhook, delivery.webhook_id)

        if webhook is None:
            raise NotFoundError("Webhook not found")
        if webhook.owner_id != owner_id:
            raise NotAuthorizedError("Not authorized")
        if delivery.is_terminal:
            raise ValidationError(f"Delivery is already {delivery.status.value}")
        if not webhook.is_active:
            raise ValidationError("Webhook is inactive")

        result = await self._attempt(delivery_id, due_only=False)
        if result.reason is SkipReason.ROW_DELETED:
            raise NotFoundError("Delivery not found")
        if result.reason is SkipReason.WEBHOOK_INACTIVE:
            raise ValidationError("Webhook is inactive")
        if result.reason is SkipReason.LEASE_LOST:
            raise ConflictError("Delivery was taken over by another worker")
        if result.outcome is AttemptOutcome.SKIPPED:
            raise ConflictError("Delivery is already being attempted")

        self.log.info("delivery_retried_manually", owner_id=owner_id, delivery_id=delivery_id, outcome=result.outcome.value)
        return result

    async def due_delivery_ids(self) -> list[str]:
        """Oldest pending, due, unleased rows of active webhooks."""
        now = self.clock()
        stmt = (
            select(WebhookDelivery.id)
            .join(Webhook, Webhook.id == WebhookDelivery.webhook_id)
            .where(
                WebhookDelivery.status == DeliveryStatus.PENDING,
                Webhook.is_active.is_(True),
                or_(
                    WebhookDelivery.next_retry_at.is_(None),
                    WebhookDelivery.next_retry_at <= now,
                ),
                or_(
                    WebhookDelivery.lease_expires_at.is_(None),
                    WebhookDelivery.lease_expires_at <= now,
                ),
            )
            .order_by(WebhookDelivery.created_at)
            .limit(self.batch_size)
        )
        async with self.session_factory() as db:
            result = await db.execute(stmt)
            return list(result.scalars().all())

    async def process_pending_retries(self) -> SweepResult:
        """
        Sweep due rows through a bounded pool of concurrent attempts.

        Invoked by an external scheduler. A crash on one row is logged and
        reported but never aborts the rest of the batch.
        """
        started = time.monotonic()
        due_ids = await self.due_delivery_ids()
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(delivery_id: str) -> AttemptResult:
            async with semaphore:
                try:
                    return await self._attempt(delivery_id, due_only=True)
                except Exception:
                    self.log.exception("delivery_attempt_crashed", delivery_id=delivery_id)
                    try:
                        capture_exception(delivery_id=delivery_id)
                    except Exception as report_error:
                        self.log.warning("error_report_failed", delivery_id=delivery_id, error=str(report_error))
                    return AttemptResult(AttemptOutcome.SKIPPED, reason=SkipReason.CRASHED)

        result = SweepResult()
        for attempt in await asyncio.gather(*(run(delivery_id) for delivery_id in due_ids)):
            result.record(attempt.outcome)

        track_sweep(time.monotonic() - started, result.processed, result.skipped)
        self.log.info("sweep_completed", selected=len(due_ids), **result.as_dict())
        return result
