"""Click ledger service: transactional click recording and ledger reads."""

import secrets
import time

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.errors import DuplicateClick, ShortCodeNotFound, TargetMissing
from app.core.observability import record_ledger_drift
from app.models.ledger import ClickEvent, ClickLedger
from app.models.url import UrlMapping
from app.schemas.analytics import ClickEventResponse, ClickEventsPage, LedgerSnapshot, TopUrl

logger = structlog.get_logger()

USER_AGENT_MAX = 200
REFERER_MAX = 200
IP_MAX = 15

RECENT_EVENTS_IN_SNAPSHOT = 10


def generate_event_id() -> str:
    """Time-ordered click event id: epoch milliseconds plus a random suffix."""
    return f"{int(time.time() * 1000):013d}-{secrets.token_hex(6)}"


async def _event_exists(session: AsyncSession, event_id: str) -> bool:
    result = await session.execute(select(ClickEvent.id).where(ClickEvent.id == event_id))
    return result.scalar_one_or_none() is not None


async def record_click(
    session: AsyncSession,
    short_code: str,
    user_agent: str = "",
    referer: str = "",
    ip: str = "",
    *,
    event_id: str | None = None,
    session_id: str | None = None,
    click_source: str | None = None,
) -> ClickEvent:
    """Record one click against both counters and append its event.

    Must run inside a transaction owned by the caller; nothing is committed
    here. Both counters are incremented server-side, and the UPDATE on the
    mapping row takes its row lock first, so concurrent calls for the same
    code serialize on that row and no increment is lost.

    Raises:
        TargetMissing: no mapping exists; nothing was written.
        DuplicateClick: ``event_id`` was already recorded; the caller must
            roll back the mapping increment.
    """
    now = utcnow()

    result = await session.execute(
        update(UrlMapping)
        .where(UrlMapping.short_code == short_code)
        .values(clicks=UrlMapping.clicks + 1, last_click_at=now)
    )
    if result.rowcount == 0:
        raise TargetMissing(short_code)

    if event_id is not None and await _event_exists(session, event_id):
        raise DuplicateClick(event_id)

    result = await session.execute(
        update(ClickLedger)
        .where(ClickLedger.short_code == short_code)
        .values(total_clicks=ClickLedger.total_clicks + 1, last_click_at=now)
    )
    if result.rowcount == 0:
        # Mapping row lock is held, so no concurrent writer can insert this ledger
        logger.info("Creating missing ledger", short_code=short_code)
        session.add(
            ClickLedger(
                short_code=short_code,
                total_clicks=1,
                created_at=now,
                last_click_at=now,
            )
        )
        await session.flush()

    event = ClickEvent(
        id=event_id or generate_event_id(),
        short_code=short_code,
        timestamp=now,
        user_agent=(user_agent or "")[:USER_AGENT_MAX],
        referer=(referer or "")[:REFERER_MAX],
        ip=(ip or "")[:IP_MAX],
        session_id=session_id,
        click_source=click_source,
    )
    session.add(event)
    await session.flush()

    logger.debug("Click recorded", short_code=short_code, event_id=event.id)
    return event


async def _recent_events(
    session: AsyncSession,
    short_code: str,
    limit: int,
) -> list[ClickEvent]:
    result = await session.execute(
        select(ClickEvent)
        .where(ClickEvent.short_code == short_code)
        .order_by(ClickEvent.timestamp.desc(), ClickEvent.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_ledger(
    session: AsyncSession,
    short_code: str,
    recent: int = RECENT_EVENTS_IN_SNAPSHOT,
) -> LedgerSnapshot:
    """Read the ledger for a short code.

    A mapping without a ledger row reads as an empty ledger. Disagreement
    between the two counters and the event log is reported through logging
    and the ``ledger_drift_total`` metric; the stored values are returned
    unchanged.
    """
    # One statement so both counters and the event count come from the same snapshot
    event_count_query = (
        select(func.count(ClickEvent.id))
        .where(ClickEvent.short_code == UrlMapping.short_code)
        .scalar_subquery()
    )
    row = (
        await session.execute(
            select(UrlMapping, ClickLedger, event_count_query.label("event_count"))
            .outerjoin(ClickLedger, ClickLedger.short_code == UrlMapping.short_code)
            .where(UrlMapping.short_code == short_code)
            .execution_options(populate_existing=True)
        )
    ).one_or_none()
    if row is None:
        raise ShortCodeNotFound(short_code, reason="missing")
    mapping, ledger, event_count = row

    total_clicks = ledger.total_clicks if ledger else 0
    if total_clicks != mapping.clicks or total_clicks != event_count:
        logger.warning(
            "Ledger drift detected",
            short_code=short_code,
            total_clicks=total_clicks,
            mapping_clicks=mapping.clicks,
            event_count=event_count,
        )
        record_ledger_drift()

    events = await _recent_events(session, short_code, recent)
    return LedgerSnapshot(
        short_code=short_code,
        total_clicks=total_clicks,
        clicks=mapping.clicks,
        created_at=ledger.created_at if ledger else None,
        last_click_at=ledger.last_click_at if ledger else None,
        recent_events=[ClickEventResponse.model_validate(e) for e in events],
    )


async def list_click_events(
    session: AsyncSession,
    short_code: str,
    limit: int = 50,
    before: str | None = None,
) -> ClickEventsPage:
    """Page over a code's click events, newest first.

    ``before`` is the id of the last event of the previous page.
    """
    query = select(ClickEvent).where(ClickEvent.short_code == short_code)

    if before is not None:
        cursor = await session.get(ClickEvent, before)
        if cursor is None or cursor.short_code != short_code:
            return ClickEventsPage(short_code=short_code, events=[])
        query = query.where(
            or_(
                ClickEvent.timestamp < cursor.timestamp,
                and_(ClickEvent.timestamp == cursor.timestamp, ClickEvent.id < cursor.id),
            )
        )

    result = await session.execute(
        query.order_by(ClickEvent.timestamp.desc(), ClickEvent.id.desc()).limit(limit + 1)
    )
    events = list(result.scalars().all())

    next_cursor = None
    if len(events) > limit:
        events = events[:limit]
        next_cursor = events[-1].id

    return ClickEventsPage(
        short_code=short_code,
        events=[ClickEventResponse.model_validate(e) for e in events],
        next_cursor=next_cursor,
    )


async def get_top_urls(session: AsyncSession, limit: int = 10) -> list[TopUrl]:
    """Active mappings with at least one click, most clicked first."""
    result = await session.execute(
        select(UrlMapping)
        .where(
            UrlMapping.is_active == True,  # noqa: E712
            UrlMapping.clicks > 0,
        )
        .order_by(UrlMapping.clicks.desc(), UrlMapping.short_code)
        .limit(limit)
    )
    return [TopUrl.model_validate(m) for m in result.scalars().all()]


async def get_recent_clicks(
    session: AsyncSession,
    limit: int = 50,
) -> list[ClickEventResponse]:
    """Newest click events across all short codes."""
    result = await session.execute(
        select(ClickEvent)
        .order_by(ClickEvent.timestamp.desc(), ClickEvent.id.desc())
        .limit(limit)
    )
    return [ClickEventResponse.model_validate(e) for e in result.scalars().all()]
