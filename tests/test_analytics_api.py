"""Analytics API tests."""

import asyncio

import pytest
from fastapi import WebSocketDisconnect
from sqlalchemy import select

from app.api import analytics as analytics_api
from app.models import ClickEvent
from app.services.click_recorder import ClickRecorder
from app.services.live_feed import LedgerFeed


async def test_analytics_for_code(client, make_mapping, record_clicks):
    await make_mapping("abc123", "https://example.com")
    await record_clicks("abc123", 3, ip="203.0.113.7")

    response = await client.get("/analytics/abc123")

    assert response.status_code == 200
    data = response.json()
    assert data["mapping"]["shortCode"] == "abc123"
    assert data["mapping"]["originalUrl"] == "https://example.com"
    assert data["mapping"]["clicks"] == 3
    assert data["ledger"]["totalClicks"] == 3
    assert len(data["ledger"]["recentEvents"]) == 3
    assert data["ledger"]["recentEvents"][0]["ip"] == "203.0.113.7"


async def test_analytics_still_served_for_deactivated_code(client, make_mapping):
    await make_mapping("off123", is_active=False)

    response = await client.get("/analytics/off123")

    assert response.status_code == 200
    assert response.json()["mapping"]["isActive"] is False


async def test_analytics_unknown_code(client):
    response = await client.get("/analytics/nope00")

    assert response.status_code == 404
    assert response.json() == {"error": "Short code not found"}


async def test_click_events_paging(client, make_mapping, record_clicks):
    await make_mapping("abc123")
    await record_clicks("abc123", 3)

    first = (await client.get("/analytics/abc123/events", params={"limit": 2})).json()
    assert len(first["events"]) == 2
    assert first["nextCursor"] == first["events"][-1]["id"]

    second = (
        await client.get(
            "/analytics/abc123/events",
            params={"limit": 2, "before": first["nextCursor"]},
        )
    ).json()
    assert len(second["events"]) == 1
    assert second["nextCursor"] is None


async def test_click_events_unknown_code(client):
    response = await client.get("/analytics/nope00/events")

    assert response.status_code == 404


async def test_track_click(client, recorder, make_mapping, session, ledger_state):
    await make_mapping("abc123")

    response = await client.post(
        "/analytics/abc123/clicks",
        json={"clickSource": "test", "sessionId": "sess-42"},
        headers={"User-Agent": "pytest"},
    )

    assert response.status_code == 202
    event_id = response.json()["eventId"]
    await recorder.drain()

    event = (await session.execute(select(ClickEvent))).scalar_one()
    assert event.id == event_id
    assert event.click_source == "test"
    assert event.session_id == "sess-42"
    assert event.user_agent == "pytest"
    assert await ledger_state("abc123") == (1, 1, 1)


async def test_track_click_rejects_unknown_source(client, make_mapping):
    await make_mapping("abc123")

    response = await client.post("/analytics/abc123/clicks", json={"clickSource": "bot"})

    assert response.status_code == 400


async def test_track_click_expired_code(client, make_mapping):
    await make_mapping("off123", is_active=False)

    response = await client.post("/analytics/off123/clicks", json={})

    assert response.status_code == 404
    assert response.json() == {"error": "Short code expired"}


async def test_top_and_recent(client, make_mapping, record_clicks):
    await make_mapping("one111", "https://one.example.com")
    await make_mapping("two222", "https://two.example.com")
    await record_clicks("one111", 1)
    await record_clicks("two222", 2)

    top = (await client.get("/analytics/top", params={"limit": 5})).json()
    assert [t["shortCode"] for t in top] == ["two222", "one111"]
    assert top[0]["originalUrl"] == "https://two.example.com"

    recent = (await client.get("/analytics/recent", params={"limit": 2})).json()
    assert len(recent) == 2


async def test_top_rejects_out_of_range_limit(client):
    response = await client.get("/analytics/top", params={"limit": 0})

    assert response.status_code == 400


class FakeWebSocket:
    """Minimal WebSocket for driving the live endpoint directly."""

    def __init__(self):
        self.accepted = False
        self.close_code: int | None = None
        self.sent: asyncio.Queue = asyncio.Queue()
        self._disconnect = asyncio.Event()

    async def accept(self) -> None:
        self.accepted = True

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_code = code

    async def send_json(self, data) -> None:
        self.sent.put_nowait(data)

    async def receive_text(self) -> str:
        await self._disconnect.wait()
        raise WebSocketDisconnect(code=1000)

    def disconnect(self) -> None:
        self._disconnect.set()


@pytest.fixture
def live_feed(broker, monkeypatch) -> LedgerFeed:
    feed = LedgerFeed(client_factory=broker.client, backoff_base=0.001, backoff_cap=0.01)
    monkeypatch.setattr(analytics_api, "get_ledger_feed", lambda: feed)
    return feed


async def test_live_unknown_code_is_closed(live_feed):
    websocket = FakeWebSocket()

    await analytics_api.live_ledger(websocket, "nope00")

    assert websocket.accepted
    assert websocket.close_code == analytics_api.WS_CLOSE_NOT_FOUND
    assert live_feed.stats == {"subscriptions": 0}


async def test_live_streams_snapshots(live_feed, broker, make_mapping):
    await make_mapping("abc123")
    websocket = FakeWebSocket()
    handler = asyncio.create_task(analytics_api.live_ledger(websocket, "abc123"))

    message = await asyncio.wait_for(websocket.sent.get(), 2.0)
    assert message["type"] == "snapshot"
    assert message["data"]["totalClicks"] == 0

    broker.break_connections()
    message = await asyncio.wait_for(websocket.sent.get(), 2.0)
    assert message["type"] == "error"

    websocket.disconnect()
    await asyncio.wait_for(handler, 2.0)
    assert live_feed.stats == {"subscriptions": 0}


async def test_live_dashboard_streams_clicks(live_feed, broker, make_mapping):
    await make_mapping("abc123")
    recorder = ClickRecorder(publisher=broker.publish, workers=1, retry_backoff=0)
    await recorder.start()
    websocket = FakeWebSocket()
    handler = asyncio.create_task(analytics_api.live_dashboard(websocket))

    message = await asyncio.wait_for(websocket.sent.get(), 2.0)
    assert message["type"] == "dashboard"
    assert message["data"] == {"topUrls": [], "recentClicks": []}

    event_id = recorder.dispatch("abc123", ip="203.0.113.7")
    await recorder.drain()

    message = await asyncio.wait_for(websocket.sent.get(), 2.0)
    assert message["type"] == "dashboard"
    assert message["data"]["topUrls"][0]["shortCode"] == "abc123"
    assert message["data"]["topUrls"][0]["clicks"] == 1
    assert message["data"]["recentClicks"][0]["id"] == event_id

    websocket.disconnect()
    await asyncio.wait_for(handler, 2.0)
    assert live_feed.stats == {"subscriptions": 0}
    await recorder.stop()
