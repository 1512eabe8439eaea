"""
Shared fixtures.

Each test gets its own SQLite database file, a clock it can move forward
and a mock subscriber endpoint served through httpx.MockTransport.
"""
import io
import json
import logging
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio
import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gateway.models.base import Base, utcnow
from gateway.models.api_key import ApiKey  # noqa: F401
from gateway.models.webhook import Webhook
from gateway.services.delivery_engine import DeliveryEngine
from gateway.services.webhook_service import WebhookService


OWNER_ID = "user-alice"
OTHER_OWNER_ID = "user-bob"
WEBHOOK_URL = "https://hooks.example.com/vendgros"


class FakeClock:
    """Callable returning a fixed naive-UTC time until advanced."""

    def __init__(self, start=None):
        self.now = start or utcnow()

    def __call__(self):
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class Receiver:
    """
    Mock subscriber endpoint.

    Replies with queued status codes first, then with `default`. Every
    request is kept so tests can inspect headers and bodies.
    """

    def __init__(self, default: int = 200, body: str = "ok"):
        self.default = default
        self.statuses = []
        self.body = body
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else self.default
        return httpx.Response(status, text=self.body)


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}")

    # SQLite only honours ON DELETE CASCADE with foreign keys switched on
    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fetch(session_factory):
    """Read a row in a fresh session, bypassing any identity map."""
    async def _fetch(model, row_id):
        async with session_factory() as session:
            return await session.get(model, row_id)
    return _fetch


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def receiver():
    return Receiver()


@pytest_asyncio.fixture
async def http_client(receiver):
    async with httpx.AsyncClient(transport=httpx.MockTransport(receiver.handler)) as client:
        yield client


@pytest.fixture
def delivery_engine(session_factory, http_client, clock):
    return DeliveryEngine(
        session_factory=session_factory,
        http_client=http_client,
        clock=clock,
        timeout_seconds=5.0,
        lease_seconds=60,
    )


@pytest_asyncio.fixture
async def webhook(db) -> Webhook:
    created = await WebhookService(db).create_webhook(
        OWNER_ID, WEBHOOK_URL, ["listing.published", "reservation.created"]
    )
    return created.record


class LogCapture:
    """A real structlog logger rendering JSON lines into a buffer."""

    def __init__(self):
        self.buffer = io.StringIO()
        self.logger = structlog.wrap_logger(
            structlog.PrintLogger(file=self.buffer),
            processors=[structlog.processors.JSONRenderer()],
            wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        )

    @property
    def entries(self) -> list[dict]:
        return [json.loads(line) for line in self.buffer.getvalue().splitlines()]

    def find(self, event: str) -> dict:
        return next(entry for entry in self.entries if entry["event"] == event)


@pytest.fixture
def log_capture():
    return LogCapture()
