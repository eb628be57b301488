"""Pydantic schemas."""

from app.schemas.analytics import (
    AnalyticsResponse,
    ClickEventResponse,
    ClickEventsPage,
    ClickPayload,
    ClickSource,
    DashboardSnapshot,
    LedgerSnapshot,
    TopUrl,
    TrackClickRequest,
)
from app.schemas.url import (
    CamelModel,
    MappingResponse,
    RedirectTarget,
    ShortenRequest,
    ShortenResponse,
)

__all__ = [
    "CamelModel",
    "MappingResponse",
    "RedirectTarget",
    "ShortenRequest",
    "ShortenResponse",
    "AnalyticsResponse",
    "ClickEventResponse",
    "ClickEventsPage",
    "ClickPayload",
    "ClickSource",
    "DashboardSnapshot",
    "LedgerSnapshot",
    "TopUrl",
    "TrackClickRequest",
]
