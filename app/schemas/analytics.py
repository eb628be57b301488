"""Pydantic schemas for click analytics."""

from datetime import datetime
from typing import Literal

from pydantic import Field

from app.schemas.url import CamelModel, MappingResponse

ClickSource = Literal["direct", "analytics_page", "test"]


class ClickPayload(CamelModel):
    """A click waiting to be written to the ledger.

    The event id is assigned when the click is dispatched so that retries of
    the same click are de-duplicated.
    """

    event_id: str = Field(description="Idempotency key and click event id")
    short_code: str = Field(description="The short code that was accessed")
    user_agent: str = Field(default="", description="HTTP User-Agent header")
    referer: str = Field(default="", description="HTTP Referer header")
    ip: str = Field(default="", description="Client IP address")
    session_id: str | None = None
    click_source: ClickSource | None = None


class ClickEventResponse(CamelModel):
    """A recorded click event."""

    id: str
    short_code: str
    timestamp: datetime
    user_agent: str
    referer: str
    ip: str
    session_id: str | None = None
    click_source: str | None = None


class LedgerSnapshot(CamelModel):
    """Point-in-time state of a click ledger.

    Pushed to live subscribers. Each snapshot replaces the previous one.
    """

    short_code: str
    total_clicks: int = Field(description="Authoritative ledger count")
    clicks: int = Field(description="Denormalized counter on the mapping")
    created_at: datetime | None = None
    last_click_at: datetime | None = None
    recent_events: list[ClickEventResponse] = Field(default_factory=list)


class AnalyticsResponse(CamelModel):
    """Mapping and ledger for a short code."""

    mapping: MappingResponse
    ledger: LedgerSnapshot


class ClickEventsPage(CamelModel):
    """Newest-first page of click events."""

    short_code: str
    events: list[ClickEventResponse]
    next_cursor: str | None = Field(
        default=None,
        description="Pass as `before` to fetch the next page",
    )


class TopUrl(CamelModel):
    """A frequently clicked short URL."""

    short_code: str
    clicks: int
    original_url: str


class TrackClickRequest(CamelModel):
    """Schema for a click tracked from a page rather than a redirect."""

    click_source: ClickSource = "analytics_page"
    session_id: str | None = Field(default=None, max_length=64)


class DashboardSnapshot(CamelModel):
    """Top URLs and newest clicks for the live dashboard."""

    top_urls: list[TopUrl] = Field(default_factory=list)
    recent_clicks: list[ClickEventResponse] = Field(default_factory=list)
