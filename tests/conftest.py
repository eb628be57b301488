"""Shared fixtures: SQLite database, click recorder and HTTP client."""

import asyncio
import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta

_db_dir = tempfile.mkdtemp(prefix="linkpulse-tests-")

# Settings are read once at import time, so configure before importing the app
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"
os.environ["CACHE_ENABLED"] = "false"
os.environ["LIVE_UPDATES_ENABLED"] = "false"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["RATE_LIMIT_STORAGE_URL"] = "memory://"
os.environ["SENTRY_DSN"] = ""
os.environ["OTLP_ENDPOINT"] = ""

import httpx  # noqa: E402
import pytest  # noqa: E402
import redis.asyncio as redis  # noqa: E402
from sqlalchemy import func, select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from app.core.clock import utcnow  # noqa: E402
from app.core.database import async_session_factory, drop_db, engine, init_db  # noqa: E402
from app.main import app  # noqa: E402
from app.models import ClickEvent, ClickLedger, UrlMapping  # noqa: E402
from app.services import click_recorder as click_recorder_module  # noqa: E402
from app.services import ledger_service  # noqa: E402
from app.services.click_recorder import ClickRecorder  # noqa: E402

_DEFAULT = object()


@pytest.fixture(autouse=True)
async def database() -> AsyncGenerator[None, None]:
    """Fresh tables for every test."""
    await init_db()
    yield
    await drop_db()
    # Pooled aiosqlite connections belong to this test's event loop
    await engine.dispose()


@pytest.fixture
async def session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_factory() as session:
        yield session


@pytest.fixture
def make_mapping():
    """Insert a mapping (and by default its ledger) directly."""

    async def _make(
        short_code: str = "abc123",
        original_url: str = "https://example.com",
        *,
        is_active: bool = True,
        expires_at: datetime | None | object = _DEFAULT,
        with_ledger: bool = True,
    ) -> None:
        if expires_at is _DEFAULT:
            expires_at = utcnow() + timedelta(days=30)
        async with async_session_factory() as session:
            session.add(
                UrlMapping(
                    short_code=short_code,
                    original_url=original_url,
                    created_at=utcnow(),
                    clicks=0,
                    is_active=is_active,
                    expires_at=expires_at,
                )
            )
            if with_ledger:
                session.add(
                    ClickLedger(short_code=short_code, total_clicks=0, created_at=utcnow())
                )
            await session.commit()

    return _make


@pytest.fixture
def record_clicks():
    """Record clicks one transaction at a time."""

    async def _record(short_code: str, count: int = 1, **kwargs) -> list[ClickEvent]:
        events = []
        for _ in range(count):
            async with async_session_factory() as session:
                async with session.begin():
                    events.append(
                        await ledger_service.record_click(session, short_code, **kwargs)
                    )
        return events

    return _record


@pytest.fixture
def ledger_state():
    """Return (mapping clicks, ledger total or None, event count) for a code."""

    async def _state(short_code: str) -> tuple[int | None, int | None, int]:
        async with async_session_factory() as session:
            clicks = (
                await session.execute(
                    select(UrlMapping.clicks).where(UrlMapping.short_code == short_code)
                )
            ).scalar_one_or_none()
            total = (
                await session.execute(
                    select(ClickLedger.total_clicks).where(ClickLedger.short_code == short_code)
                )
            ).scalar_one_or_none()
            events = (
                await session.execute(
                    select(func.count(ClickEvent.id)).where(ClickEvent.short_code == short_code)
                )
            ).scalar_one()
        return clicks, total, events

    return _state


@pytest.fixture
def published() -> list[tuple[str, str]]:
    """(channel, payload) pairs published by the recorder."""
    return []


@pytest.fixture
async def recorder(monkeypatch, published) -> AsyncGenerator[ClickRecorder, None]:
    """A running click recorder installed as the global instance."""

    async def capture(channel: str, payload: str) -> None:
        published.append((channel, payload))

    recorder = ClickRecorder(
        publisher=capture,
        workers=2,
        retry_backoff=0,
        max_attempts=3,
        timeout=5.0,
    )
    monkeypatch.setattr(click_recorder_module, "_click_recorder", recorder)
    await recorder.start()
    yield recorder
    await recorder.stop()


@pytest.fixture
async def client(recorder) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class FakePubSub:
    """In-memory stand-in for a redis.asyncio PubSub connection."""

    def __init__(self, broker: "FakeBroker"):
        self._broker = broker
        self._messages: asyncio.Queue = asyncio.Queue()
        self.channels: set[str] = set()
        self.closed = False

    async def subscribe(self, channel: str) -> None:
        self.channels.add(channel)
        self._messages.put_nowait({"type": "subscribe", "channel": channel, "data": 1})

    async def unsubscribe(self, channel: str) -> None:
        self.channels.discard(channel)

    async def listen(self):
        while True:
            message = await self._messages.get()
            if isinstance(message, Exception):
                raise message
            yield message

    async def aclose(self) -> None:
        self.closed = True
        self.channels.clear()

    def deliver(self, message) -> None:
        self._messages.put_nowait(message)


class FakeRedis:
    """Client whose pubsub connections share one broker."""

    def __init__(self, broker: "FakeBroker"):
        self._broker = broker
        self.closed = False

    def pubsub(self) -> FakePubSub:
        pubsub = FakePubSub(self._broker)
        self._broker.pubsubs.append(pubsub)
        return pubsub

    async def aclose(self) -> None:
        self.closed = True


class FakeBroker:
    """Routes published messages to subscribed fake connections."""

    def __init__(self):
        self.clients: list[FakeRedis] = []
        self.pubsubs: list[FakePubSub] = []

    def client(self) -> FakeRedis:
        client = FakeRedis(self)
        self.clients.append(client)
        return client

    async def publish(self, channel: str, data: str) -> int:
        receivers = [p for p in self.pubsubs if channel in p.channels and not p.closed]
        for pubsub in receivers:
            pubsub.deliver({"type": "message", "channel": channel, "data": data})
        return len(receivers)

    def break_connections(self) -> None:
        """Fail every open connection as if the server went away."""
        for pubsub in self.pubsubs:
            if not pubsub.closed:
                pubsub.deliver(redis.ConnectionError("Connection reset by peer"))


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()
