"""
ARQ Background Worker for the integration gateway.

Runs delivery sweeps and event fan-out off the request path. The worker
does not schedule sweeps itself: an external scheduler calls enqueue_sweep()
(or hits POST /api/webhooks/deliveries/process) on its own cadence.

Run with: arq gateway.worker.WorkerSettings
"""
import asyncio

import httpx
from arq import create_pool
from arq.connections import RedisSettings
from redis.exceptions import RedisError

from gateway.config import settings
from gateway.database import AsyncSessionLocal
from gateway.logging_config import get_logger
from gateway.services.delivery_engine import DeliveryEngine
from gateway.services.delivery_service import DeliveryLedger


log = get_logger(component="worker")


async def startup(ctx: dict) -> None:
    """Share one HTTP connection pool across all delivery attempts."""
    ctx["http_client"] = httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)


async def shutdown(ctx: dict) -> None:
    client = ctx.get("http_client")
    if client is not None:
        await client.aclose()


async def process_pending_retries_task(ctx: dict) -> dict:
    """Run one sweep over due deliveries and return its counters."""
    engine = DeliveryEngine(session_factory=AsyncSessionLocal, http_client=ctx.get("http_client"))
    result = await engine.process_pending_retries()
    return result.as_dict()


async def trigger_event_task(ctx: dict, owner_id: str, event: str, data: dict) -> list[str]:
    """
    Fan a domain event out to the owner's subscribed webhooks.

    Returns the ids of the delivery rows created.
    """
    async with AsyncSessionLocal() as db:
        deliveries = await DeliveryLedger(db).trigger_event(owner_id, event, data)
    return [d.id for d in deliveries]


# Register functions for ARQ
ARQ_FUNCTIONS = [
    process_pending_retries_task,
    trigger_event_task,
]


async def _enqueue(function: str, *args) -> bool:
    try:
        redis = await create_pool(RedisSettings.from_dsn(settings.REDIS_URL))
        try:
            await redis.enqueue_job(function, *args)
        finally:
            await redis.aclose()
    except (OSError, RedisError) as e:
        log.error("enqueue_failed", function=function, error=str(e))
        return False

    log.info("enqueued", function=function)
    return True


async def enqueue_sweep() -> bool:
    """Queue a delivery sweep. Intended for the external scheduler."""
    return await _enqueue("process_pending_retries_task")


async def enqueue_event(owner_id: str, event: str, data: dict) -> bool:
    """Queue event fan-out for producers running in other processes."""
    return await _enqueue("trigger_event_task", owner_id, event, data)


async def main():
    """Queue one sweep; lets a plain cron line drive the worker."""
    await enqueue_sweep()


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq gateway.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    job_timeout = 300
    max_tries = 1
    functions = ARQ_FUNCTIONS
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    asyncio.run(main())
