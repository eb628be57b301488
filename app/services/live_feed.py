"""Live ledger and dashboard subscriptions over Redis Pub/Sub."""

import asyncio
import random
from typing import Any, Awaitable, Callable, Coroutine

import redis.asyncio as redis
import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.core.config import get_settings
from app.core.database import async_session_factory
from app.core.errors import ShortCodeNotFound
from app.core.observability import record_live_reconnect, set_live_subscriptions
from app.core.redis import create_redis_client, dashboard_channel, ledger_channel
from app.schemas.analytics import ClickEventResponse, DashboardSnapshot, LedgerSnapshot
from app.services.ledger import get_ledger, get_recent_clicks, get_top_urls

settings = get_settings()
logger = structlog.get_logger()

UpdateHandler = Callable[[Any], Coroutine[None, None, None]]
ErrorHandler = Callable[[Exception], Coroutine[None, None, None]]
SnapshotLoader = Callable[[str], Awaitable[LedgerSnapshot | None]]
DashboardLoader = Callable[[], Awaitable[DashboardSnapshot]]
ClientFactory = Callable[[], redis.Redis]
Unsubscribe = Callable[[], Coroutine[None, None, None]]


async def load_snapshot(short_code: str) -> LedgerSnapshot | None:
    """Read the current ledger snapshot from the database."""
    async with async_session_factory() as session:
        try:
            return await get_ledger(session, short_code)
        except ShortCodeNotFound:
            return None


async def load_dashboard() -> DashboardSnapshot:
    """Read the top URLs and newest clicks from the database."""
    async with async_session_factory() as session:
        top_urls = await get_top_urls(session, limit=settings.dashboard_top_limit)
        recent_clicks = await get_recent_clicks(session, limit=settings.dashboard_recent_limit)
    return DashboardSnapshot(top_urls=top_urls, recent_clicks=recent_clicks)


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Capped exponential backoff with full jitter."""
    return random.uniform(0, min(cap, base * (2 ** attempt)))


class LiveSubscription:
    """One observer's subscription to a Pub/Sub channel.

    Owns a dedicated Pub/Sub connection and a background task. Each time the
    connection is (re)established the subscription first subscribes to the
    channel and then loads the stored state, so an update published in
    between is never missed. The observer may therefore see the same state
    twice and must treat every update as a full replacement.

    Subclasses provide ``_reconcile`` and ``_handle``.
    """

    def __init__(
        self,
        channel: str,
        on_update: UpdateHandler,
        on_error: ErrorHandler | None = None,
        client_factory: ClientFactory | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
    ):
        self.channel = channel
        self._on_update = on_update
        self._on_error = on_error
        self._client_factory = client_factory or create_redis_client
        self._backoff_base = backoff_base or settings.feed_backoff_base
        self._backoff_cap = backoff_cap or settings.feed_backoff_cap
        self._client: redis.Redis | None = None
        self._pubsub: redis.client.PubSub | None = None
        self._task: asyncio.Task | None = None
        self._closed = False
        self._updates_delivered = 0
        self._reconnects = 0

    async def start(self) -> None:
        """Start listening in the background."""
        if self._task is not None or self._closed:
            return
        self._task = asyncio.create_task(self._run())
        logger.info("Live subscription started", channel=self.channel)

    async def unsubscribe(self) -> None:
        """Stop the subscription and release its connection.

        Safe to call more than once. No callback fires after this returns.
        """
        if self._closed:
            return
        self._closed = True

        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._disconnect()
        logger.info(
            "Live subscription closed",
            channel=self.channel,
            updates_delivered=self._updates_delivered,
            reconnects=self._reconnects,
        )

    async def _connect(self) -> None:
        self._client = self._client_factory()
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(self.channel)

    async def _disconnect(self) -> None:
        pubsub, self._pubsub = self._pubsub, None
        client, self._client = self._client, None
        if pubsub is not None:
            try:
                await pubsub.unsubscribe(self.channel)
            except redis.RedisError as e:
                logger.debug("Unsubscribe failed", channel=self.channel, error=str(e))
            await pubsub.aclose()
        if client is not None:
            await client.aclose()

    async def _run(self) -> None:
        """Connect, reconcile, listen; reconnect with backoff on failure."""
        attempt = 0
        while not self._closed:
            try:
                await self._connect()
                await self._reconcile()
                attempt = 0
                await self._listen()
                raise redis.ConnectionError("Subscription stream ended")
            except asyncio.CancelledError:
                raise
            except (redis.RedisError, SQLAlchemyError, OSError) as e:
                if self._closed:
                    return
                self._reconnects += 1
                record_live_reconnect()
                delay = backoff_delay(attempt, self._backoff_base, self._backoff_cap)
                attempt += 1
                logger.warning(
                    "Live subscription transport error",
                    channel=self.channel,
                    error=str(e),
                    retry_in=round(delay, 2),
                )
                await self._notify_error(e)
                await self._disconnect()
                await asyncio.sleep(delay)

    async def _reconcile(self) -> None:
        """Deliver the stored state after (re)subscribing."""
        raise NotImplementedError

    async def _handle(self, data: str) -> None:
        """Process one published message."""
        raise NotImplementedError

    async def _listen(self) -> None:
        if self._pubsub is None:
            return
        async for message in self._pubsub.listen():
            if self._closed:
                return
            # Skip subscription confirmation messages
            if message["type"] != "message":
                continue
            try:
                await self._handle(message["data"])
            except ValidationError as e:
                logger.warning(
                    "Invalid live update",
                    channel=self.channel,
                    error=str(e),
                )

    async def _deliver(self, update: Any) -> None:
        if self._closed:
            return
        try:
            await self._on_update(update)
            self._updates_delivered += 1
        except Exception as e:
            logger.error(
                "Live update handler error",
                channel=self.channel,
                error=str(e),
            )

    async def _notify_error(self, error: Exception) -> None:
        if self._closed or self._on_error is None:
            return
        try:
            await self._on_error(error)
        except Exception as e:
            logger.error(
                "Live error handler error",
                channel=self.channel,
                error=str(e),
            )

    @property
    def is_active(self) -> bool:
        """Whether the subscription is still open."""
        return not self._closed

    @property
    def stats(self) -> dict:
        """Get subscription statistics."""
        return {
            "channel": self.channel,
            "active": not self._closed,
            "updates_delivered": self._updates_delivered,
            "reconnects": self._reconnects,
        }


class LedgerSubscription(LiveSubscription):
    """Ledger snapshots for one short code.

    Snapshots are published by concurrent workers and may arrive out of
    order. The ledger total never decreases, so a snapshot with a lower
    total than the last one delivered is stale and dropped; equal totals
    are delivered again.
    """

    def __init__(
        self,
        short_code: str,
        on_update: UpdateHandler,
        on_error: ErrorHandler | None = None,
        client_factory: ClientFactory | None = None,
        snapshot_loader: SnapshotLoader | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
    ):
        super().__init__(
            ledger_channel(short_code),
            on_update,
            on_error,
            client_factory=client_factory,
            backoff_base=backoff_base,
            backoff_cap=backoff_cap,
        )
        self.short_code = short_code
        self._snapshot_loader = snapshot_loader or load_snapshot
        self._last_total: int | None = None

    async def _reconcile(self) -> None:
        snapshot = await self._snapshot_loader(self.short_code)
        if snapshot is not None:
            await self._deliver(snapshot)

    async def _handle(self, data: str) -> None:
        await self._deliver(LedgerSnapshot.model_validate_json(data))

    async def _deliver(self, snapshot: LedgerSnapshot) -> None:
        if self._last_total is not None and snapshot.total_clicks < self._last_total:
            logger.debug(
                "Stale ledger update dropped",
                short_code=self.short_code,
                total_clicks=snapshot.total_clicks,
                last_total=self._last_total,
            )
            return
        self._last_total = snapshot.total_clicks
        await super()._deliver(snapshot)

    @property
    def stats(self) -> dict:
        """Get subscription statistics."""
        return {"short_code": self.short_code, **super().stats}


class DashboardSubscription(LiveSubscription):
    """Top URLs and newest clicks across all short codes.

    Every committed click is announced on the dashboard channel. Rather than
    patching the previous state, each announcement triggers a fresh read,
    so the observer always converges to the stored data regardless of the
    order announcements arrive in.
    """

    def __init__(
        self,
        on_update: UpdateHandler,
        on_error: ErrorHandler | None = None,
        client_factory: ClientFactory | None = None,
        dashboard_loader: DashboardLoader | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
    ):
        super().__init__(
            dashboard_channel(),
            on_update,
            on_error,
            client_factory=client_factory,
            backoff_base=backoff_base,
            backoff_cap=backoff_cap,
        )
        self._dashboard_loader = dashboard_loader or load_dashboard

    async def _reconcile(self) -> None:
        await self._deliver(await self._dashboard_loader())

    async def _handle(self, data: str) -> None:
        event = ClickEventResponse.model_validate_json(data)
        logger.debug("Dashboard click announced", short_code=event.short_code, event_id=event.id)
        await self._reconcile()


class LedgerFeed:
    """Registry of live subscriptions.

    Usage:
        feed = LedgerFeed()
        unsubscribe = await feed.subscribe("abc123", on_update, on_error)
        # ... later ...
        await unsubscribe()
    """

    def __init__(
        self,
        client_factory: ClientFactory | None = None,
        snapshot_loader: SnapshotLoader | None = None,
        dashboard_loader: DashboardLoader | None = None,
        backoff_base: float | None = None,
        backoff_cap: float | None = None,
    ):
        self._client_factory = client_factory
        self._snapshot_loader = snapshot_loader
        self._dashboard_loader = dashboard_loader
        self._backoff_base = backoff_base
        self._backoff_cap = backoff_cap
        self._subscriptions: set[LiveSubscription] = set()

    async def subscribe(
        self,
        short_code: str,
        on_update: UpdateHandler,
        on_error: ErrorHandler | None = None,
    ) -> Unsubscribe:
        """Push every ledger change for ``short_code`` to ``on_update``.

        Returns a coroutine function that ends the subscription.
        """
        subscription = LedgerSubscription(
            short_code,
            on_update,
            on_error,
            client_factory=self._client_factory,
            snapshot_loader=self._snapshot_loader,
            backoff_base=self._backoff_base,
            backoff_cap=self._backoff_cap,
        )
        return await self._register(subscription)

    async def subscribe_dashboard(
        self,
        on_update: UpdateHandler,
        on_error: ErrorHandler | None = None,
    ) -> Unsubscribe:
        """Push the top URLs and newest clicks to ``on_update`` on every click."""
        subscription = DashboardSubscription(
            on_update,
            on_error,
            client_factory=self._client_factory,
            dashboard_loader=self._dashboard_loader,
            backoff_base=self._backoff_base,
            backoff_cap=self._backoff_cap,
        )
        return await self._register(subscription)

    async def _register(self, subscription: LiveSubscription) -> Unsubscribe:
        self._subscriptions.add(subscription)
        set_live_subscriptions(len(self._subscriptions))
        await subscription.start()

        async def unsubscribe() -> None:
            await subscription.unsubscribe()
            self._subscriptions.discard(subscription)
            set_live_subscriptions(len(self._subscriptions))

        return unsubscribe

    async def close(self) -> None:
        """End all open subscriptions."""
        subscriptions = list(self._subscriptions)
        self._subscriptions.clear()
        set_live_subscriptions(0)
        for subscription in subscriptions:
            await subscription.unsubscribe()
        if subscriptions:
            logger.info("Live feed closed", subscriptions=len(subscriptions))

    @property
    def stats(self) -> dict:
        """Get feed statistics."""
        return {"subscriptions": len(self._subscriptions)}


# Global feed instance
_ledger_feed: LedgerFeed | None = None


def get_ledger_feed() -> LedgerFeed:
    """Get the global feed instance, creating it if necessary."""
    global _ledger_feed
    if _ledger_feed is None:
        _ledger_feed = LedgerFeed()
    return _ledger_feed


async def close_ledger_feed() -> None:
    """Close all subscriptions on the global feed."""
    if _ledger_feed is not None:
        await _ledger_feed.close()
