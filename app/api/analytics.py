"""Analytics API endpoints: ledger reads, tracked clicks and live updates."""

from typing import Annotated

import structlog
from fastapi import (
    APIRouter,
    Depends,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import async_session_factory, get_async_session
from app.core.errors import ShortCodeNotFound
from app.core.rate_limit import RATE_LIMIT_API, limiter
from app.schemas.analytics import (
    AnalyticsResponse,
    ClickEventResponse,
    ClickEventsPage,
    DashboardSnapshot,
    LedgerSnapshot,
    TopUrl,
    TrackClickRequest,
)
from app.schemas.url import MappingResponse
from app.services import ledger_service, url_service
from app.services.click_recorder import get_click_recorder
from app.services.live_feed import get_ledger_feed
from app.services.redirect import RequestMetadata

logger = structlog.get_logger()

router = APIRouter(prefix="/analytics", tags=["analytics"])

# Close code sent to live clients asking for an unknown short code
WS_CLOSE_NOT_FOUND = 4404


@router.get("/top", response_model=list[TopUrl])
@limiter.limit(RATE_LIMIT_API)
async def top_urls(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_async_session)],
    limit: Annotated[int, Query(ge=1, le=100)] = 10,
) -> list[TopUrl]:
    """Most clicked active short URLs."""
    return await ledger_service.get_top_urls(session, limit=limit)


@router.get("/recent", response_model=list[ClickEventResponse])
@limiter.limit(RATE_LIMIT_API)
async def recent_clicks(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_async_session)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
) -> list[ClickEventResponse]:
    """Newest clicks across all short URLs."""
    return await ledger_service.get_recent_clicks(session, limit=limit)


@router.get("/{short_code}", response_model=AnalyticsResponse)
@limiter.limit(RATE_LIMIT_API)
async def get_analytics(
    request: Request,
    short_code: str,
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> AnalyticsResponse:
    """Mapping and ledger for a short code, including expired ones."""
    ledger = await ledger_service.get_ledger(session, short_code)
    mapping = await url_service.get_mapping_record(session, short_code)
    return AnalyticsResponse(
        mapping=MappingResponse.model_validate(mapping),
        ledger=ledger,
    )


@router.get("/{short_code}/events", response_model=ClickEventsPage)
@limiter.limit(RATE_LIMIT_API)
async def list_events(
    request: Request,
    short_code: str,
    session: Annotated[AsyncSession, Depends(get_async_session)],
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    before: Annotated[str | None, Query(description="Event id cursor")] = None,
) -> ClickEventsPage:
    """Page over a short code's click events, newest first."""
    if await url_service.get_mapping_record(session, short_code) is None:
        raise ShortCodeNotFound(short_code)
    return await ledger_service.list_click_events(
        session,
        short_code,
        limit=limit,
        before=before,
    )


@router.post("/{short_code}/clicks", status_code=status.HTTP_202_ACCEPTED)
@limiter.limit(RATE_LIMIT_API)
async def track_click(
    request: Request,
    short_code: str,
    body: TrackClickRequest,
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> dict[str, str | None]:
    """Record a click originating from a page rather than a redirect.

    The click is queued; the response does not wait for the ledger write.
    """
    await url_service.get_mapping(session, short_code)

    metadata = RequestMetadata.from_request(request)
    event_id = get_click_recorder().dispatch(
        short_code,
        user_agent=metadata.user_agent,
        referer=metadata.referer,
        ip=metadata.ip,
        click_source=body.click_source,
        session_id=body.session_id,
    )
    logger.info(
        "Tracked click queued",
        short_code=short_code,
        click_source=body.click_source,
        event_id=event_id,
    )
    return {"eventId": event_id}


@router.websocket("/live")
async def live_dashboard(websocket: WebSocket) -> None:
    """Push the top URLs and newest clicks to a dashboard on every click.

    Messages are ``{"type": "dashboard", "data": ...}`` and
    ``{"type": "error", "error": ...}``.
    """
    await websocket.accept()

    async def on_update(dashboard: DashboardSnapshot) -> None:
        await websocket.send_json(
            {"type": "dashboard", "data": dashboard.model_dump(mode="json", by_alias=True)}
        )

    async def on_error(error: Exception) -> None:
        await websocket.send_json(
            {"type": "error", "error": "Live updates interrupted, reconnecting"}
        )

    unsubscribe = await get_ledger_feed().subscribe_dashboard(on_update, on_error)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Live dashboard disconnected")
    finally:
        await unsubscribe()


@router.websocket("/{short_code}/live")
async def live_ledger(websocket: WebSocket, short_code: str) -> None:
    """Push ledger snapshots to a dashboard as clicks are recorded.

    Messages are ``{"type": "snapshot", "data": ...}`` and
    ``{"type": "error", "error": ...}``. Every snapshot is complete and
    replaces the previous one.
    """
    await websocket.accept()

    async with async_session_factory() as session:
        mapping = await url_service.get_mapping_record(session, short_code)
    if mapping is None:
        await websocket.close(code=WS_CLOSE_NOT_FOUND, reason="Short code not found")
        return

    async def on_update(snapshot: LedgerSnapshot) -> None:
        await websocket.send_json(
            {"type": "snapshot", "data": snapshot.model_dump(mode="json", by_alias=True)}
        )

    async def on_error(error: Exception) -> None:
        await websocket.send_json(
            {"type": "error", "error": "Live updates interrupted, reconnecting"}
        )

    unsubscribe = await get_ledger_feed().subscribe(short_code, on_update, on_error)
    try:
        while True:
            # Clients only listen; incoming frames are ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Live client disconnected", short_code=short_code)
    finally:
        await unsubscribe()
