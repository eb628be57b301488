"""Tests for live ledger subscriptions."""

import asyncio
import json
from datetime import datetime

import pytest

from app.core.redis import dashboard_channel, ledger_channel
from app.schemas.analytics import ClickEventResponse, DashboardSnapshot, LedgerSnapshot, TopUrl
from app.services.click_recorder import ClickRecorder
from app.services.live_feed import LedgerFeed, LedgerSubscription, backoff_delay

WAIT = 2.0


def snapshot(total: int, short_code: str = "abc123") -> LedgerSnapshot:
    return LedgerSnapshot(short_code=short_code, total_clicks=total, clicks=total)


class Observer:
    """Collects callbacks so tests can await them."""

    def __init__(self):
        self.updates: asyncio.Queue[LedgerSnapshot] = asyncio.Queue()
        self.errors: asyncio.Queue[Exception] = asyncio.Queue()

    async def on_update(self, update: LedgerSnapshot) -> None:
        self.updates.put_nowait(update)

    async def on_error(self, error: Exception) -> None:
        self.errors.put_nowait(error)

    async def next_update(self) -> LedgerSnapshot:
        return await asyncio.wait_for(self.updates.get(), WAIT)

    async def next_error(self) -> Exception:
        return await asyncio.wait_for(self.errors.get(), WAIT)


def make_feed(broker, loader) -> LedgerFeed:
    return LedgerFeed(
        client_factory=broker.client,
        snapshot_loader=loader,
        backoff_base=0.001,
        backoff_cap=0.01,
    )


async def test_subscriber_receives_stored_snapshot_then_updates(broker):
    async def loader(short_code):
        return snapshot(4)

    feed = make_feed(broker, loader)
    observer = Observer()
    unsubscribe = await feed.subscribe("abc123", observer.on_update, observer.on_error)

    assert (await observer.next_update()).total_clicks == 4

    await broker.publish(ledger_channel("abc123"), snapshot(5).model_dump_json(by_alias=True))
    assert (await observer.next_update()).total_clicks == 5

    await unsubscribe()


async def test_updates_for_other_codes_are_not_delivered(broker):
    async def loader(short_code):
        return snapshot(0, short_code)

    feed = make_feed(broker, loader)
    observer = Observer()
    unsubscribe = await feed.subscribe("abc123", observer.on_update)
    await observer.next_update()

    await broker.publish(
        ledger_channel("xyz789"),
        snapshot(9, "xyz789").model_dump_json(by_alias=True),
    )
    await broker.publish(ledger_channel("abc123"), snapshot(1).model_dump_json(by_alias=True))

    assert (await observer.next_update()).short_code == "abc123"
    await unsubscribe()


async def test_no_callbacks_after_unsubscribe(broker):
    async def loader(short_code):
        return snapshot(0)

    feed = make_feed(broker, loader)
    observer = Observer()
    unsubscribe = await feed.subscribe("abc123", observer.on_update, observer.on_error)
    await observer.next_update()

    await unsubscribe()
    await broker.publish(ledger_channel("abc123"), snapshot(1).model_dump_json(by_alias=True))
    broker.break_connections()
    await asyncio.sleep(0.05)

    assert observer.updates.empty()
    assert observer.errors.empty()
    assert all(p.closed for p in broker.pubsubs)
    assert all(c.closed for c in broker.clients)
    assert feed.stats == {"subscriptions": 0}


async def test_unsubscribe_is_idempotent(broker):
    async def loader(short_code):
        return snapshot(0)

    feed = make_feed(broker, loader)
    observer = Observer()
    unsubscribe = await feed.subscribe("abc123", observer.on_update)
    await observer.next_update()

    await unsubscribe()
    await unsubscribe()


async def test_transport_failure_reports_error_and_reconciles(broker):
    totals = iter([1, 3])

    async def loader(short_code):
        return snapshot(next(totals))

    feed = make_feed(broker, loader)
    observer = Observer()
    unsubscribe = await feed.subscribe("abc123", observer.on_update, observer.on_error)
    assert (await observer.next_update()).total_clicks == 1

    broker.break_connections()

    error = await observer.next_error()
    assert "Connection reset" in str(error)
    # Missed updates are covered by the fresh snapshot after resubscribing
    assert (await observer.next_update()).total_clicks == 3
    assert len(broker.clients) == 2
    assert broker.pubsubs[0].closed

    await broker.publish(ledger_channel("abc123"), snapshot(4).model_dump_json(by_alias=True))
    assert (await observer.next_update()).total_clicks == 4

    await unsubscribe()


async def test_malformed_update_is_skipped(broker):
    async def loader(short_code):
        return snapshot(0)

    feed = make_feed(broker, loader)
    observer = Observer()
    unsubscribe = await feed.subscribe("abc123", observer.on_update, observer.on_error)
    await observer.next_update()

    await broker.publish(ledger_channel("abc123"), "not json")
    await broker.publish(ledger_channel("abc123"), json.dumps({"shortCode": "abc123"}))
    await broker.publish(ledger_channel("abc123"), snapshot(2).model_dump_json(by_alias=True))

    assert (await observer.next_update()).total_clicks == 2
    assert observer.errors.empty()
    await unsubscribe()


async def test_failing_handler_does_not_stop_subscription(broker):
    async def loader(short_code):
        return snapshot(0)

    received = asyncio.Queue()

    async def on_update(update: LedgerSnapshot) -> None:
        if update.total_clicks == 1:
            raise RuntimeError("dashboard went away")
        received.put_nowait(update)

    feed = make_feed(broker, loader)
    unsubscribe = await feed.subscribe("abc123", on_update)
    await asyncio.wait_for(received.get(), WAIT)

    await broker.publish(ledger_channel("abc123"), snapshot(1).model_dump_json(by_alias=True))
    await broker.publish(ledger_channel("abc123"), snapshot(2).model_dump_json(by_alias=True))

    assert (await asyncio.wait_for(received.get(), WAIT)).total_clicks == 2
    await unsubscribe()


async def test_unknown_code_gets_no_initial_snapshot(broker):
    async def loader(short_code):
        return None

    subscription = LedgerSubscription(
        "nope00",
        Observer().on_update,
        client_factory=broker.client,
        snapshot_loader=loader,
    )
    await subscription.start()
    await asyncio.sleep(0.01)

    assert subscription.stats["updates_delivered"] == 0
    assert subscription.is_active
    await subscription.unsubscribe()
    assert not subscription.is_active


async def test_feed_close_ends_all_subscriptions(broker):
    async def loader(short_code):
        return snapshot(0, short_code)

    feed = make_feed(broker, loader)
    observer = Observer()
    await feed.subscribe("abc123", observer.on_update)
    await feed.subscribe("xyz789", observer.on_update)
    assert feed.stats == {"subscriptions": 2}

    await feed.close()

    assert feed.stats == {"subscriptions": 0}
    assert all(c.closed for c in broker.clients)


async def test_recorded_click_reaches_subscriber(broker, make_mapping):
    await make_mapping("abc123")

    recorder = ClickRecorder(publisher=broker.publish, workers=1, retry_backoff=0)
    await recorder.start()
    feed = LedgerFeed(client_factory=broker.client, backoff_base=0.001, backoff_cap=0.01)
    observer = Observer()
    unsubscribe = await feed.subscribe("abc123", observer.on_update)

    assert (await observer.next_update()).total_clicks == 0

    recorder.dispatch("abc123", ip="203.0.113.7")
    update = await observer.next_update()

    assert update.total_clicks == 1
    assert update.clicks == 1
    assert update.recent_events[0].ip == "203.0.113.7"

    await unsubscribe()
    await recorder.stop()


async def test_stale_snapshot_is_not_delivered(broker):
    async def loader(short_code):
        return snapshot(0)

    feed = make_feed(broker, loader)
    observer = Observer()
    unsubscribe = await feed.subscribe("abc123", observer.on_update)
    await observer.next_update()

    channel = ledger_channel("abc123")
    await broker.publish(channel, snapshot(5).model_dump_json(by_alias=True))
    await broker.publish(channel, snapshot(4).model_dump_json(by_alias=True))
    await broker.publish(channel, snapshot(5).model_dump_json(by_alias=True))

    assert (await observer.next_update()).total_clicks == 5
    # The late total of 4 is dropped; an equal total is delivered again
    assert (await observer.next_update()).total_clicks == 5
    await asyncio.sleep(0.01)
    assert observer.updates.empty()
    await unsubscribe()


async def test_out_of_order_publishes_converge_to_stored_total(broker, make_mapping):
    await make_mapping("abc123")
    delayed = []

    async def slow_first_publish(channel: str, payload: str) -> None:
        if not delayed:
            delayed.append(channel)
            await asyncio.sleep(0.2)
        await broker.publish(channel, payload)

    recorder = ClickRecorder(publisher=slow_first_publish, workers=2, retry_backoff=0)
    await recorder.start()
    feed = LedgerFeed(client_factory=broker.client, backoff_base=0.001, backoff_cap=0.01)
    observer = Observer()
    unsubscribe = await feed.subscribe("abc123", observer.on_update)
    assert (await observer.next_update()).total_clicks == 0

    recorder.dispatch("abc123")
    recorder.dispatch("abc123")
    await recorder.drain()
    await asyncio.sleep(0.05)

    totals = []
    while not observer.updates.empty():
        totals.append(observer.updates.get_nowait().total_clicks)
    assert totals[-1] == 2
    assert totals == sorted(totals)

    await unsubscribe()
    await recorder.stop()


def dashboard(*totals: int) -> DashboardSnapshot:
    return DashboardSnapshot(
        top_urls=[
            TopUrl(short_code=f"code{n:02d}", clicks=total, original_url="https://example.com")
            for n, total in enumerate(totals)
        ]
    )


async def test_dashboard_reloads_on_every_click(broker):
    states = iter([dashboard(), dashboard(1), dashboard(2)])

    async def loader():
        return next(states)

    feed = LedgerFeed(
        client_factory=broker.client,
        dashboard_loader=loader,
        backoff_base=0.001,
        backoff_cap=0.01,
    )
    observer = Observer()
    unsubscribe = await feed.subscribe_dashboard(observer.on_update, observer.on_error)

    assert (await observer.next_update()).top_urls == []

    event = ClickEventResponse(
        id="0000000000001-aaaaaaaaaaaa",
        short_code="abc123",
        timestamp=datetime(2026, 1, 1),
        user_agent="",
        referer="",
        ip="",
    )
    await broker.publish(dashboard_channel(), "not json")
    await broker.publish(dashboard_channel(), event.model_dump_json(by_alias=True))

    assert (await observer.next_update()).top_urls[0].clicks == 1
    assert observer.errors.empty()
    await unsubscribe()


async def test_dashboard_reconciles_after_reconnect(broker):
    states = iter([dashboard(1), dashboard(3)])

    async def loader():
        return next(states)

    feed = LedgerFeed(
        client_factory=broker.client,
        dashboard_loader=loader,
        backoff_base=0.001,
        backoff_cap=0.01,
    )
    observer = Observer()
    unsubscribe = await feed.subscribe_dashboard(observer.on_update, observer.on_error)
    assert (await observer.next_update()).top_urls[0].clicks == 1

    broker.break_connections()

    await observer.next_error()
    assert (await observer.next_update()).top_urls[0].clicks == 3
    await unsubscribe()
    assert feed.stats == {"subscriptions": 0}


async def test_recorded_clicks_reach_dashboard(broker, make_mapping):
    await make_mapping("one111", "https://one.example.com")
    await make_mapping("two222", "https://two.example.com")
    recorder = ClickRecorder(publisher=broker.publish, workers=1, retry_backoff=0)
    await recorder.start()
    feed = LedgerFeed(client_factory=broker.client, backoff_base=0.001, backoff_cap=0.01)
    observer = Observer()
    unsubscribe = await feed.subscribe_dashboard(observer.on_update)

    initial = await observer.next_update()
    assert initial.top_urls == []
    assert initial.recent_clicks == []

    recorder.dispatch("two222")
    recorder.dispatch("two222")
    recorder.dispatch("one111")
    await recorder.drain()

    update = await observer.next_update()
    while update.top_urls == [] or sum(t.clicks for t in update.top_urls) < 3:
        update = await observer.next_update()

    assert [(t.short_code, t.clicks) for t in update.top_urls] == [("two222", 2), ("one111", 1)]
    assert len(update.recent_clicks) == 3

    await unsubscribe()
    await recorder.stop()


@pytest.mark.parametrize("attempt", range(8))
def test_backoff_delay_is_capped(attempt):
    for _ in range(20):
        delay = backoff_delay(attempt, base=0.5, cap=4.0)
        assert 0 <= delay <= min(4.0, 0.5 * 2**attempt)
