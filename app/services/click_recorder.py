"""Background click recording with bounded retries and a dead-letter log."""

import asyncio
import time
from collections import deque
from typing import Callable, Coroutine

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.database import async_session_factory
from app.core.errors import DuplicateClick, PersistenceError, ShortCodeNotFound, TargetMissing
from app.core.observability import (
    record_click_latency,
    record_click_outcome,
    record_click_retry,
    set_click_queue_depth,
)
from app.core.redis import dashboard_channel, ledger_channel, publish_live_update
from app.models.ledger import ClickEvent
from app.schemas.analytics import ClickEventResponse, ClickPayload, LedgerSnapshot
from app.services.ledger import generate_event_id, get_ledger, record_click

settings = get_settings()
logger = structlog.get_logger()

# Receives (channel, serialized payload)
LivePublisher = Callable[[str, str], Coroutine[None, None, None]]

RETRYABLE_ERRORS = (SQLAlchemyError, PersistenceError, asyncio.TimeoutError)


class ClickRecorder:
    """Writes clicks to the ledger off the request path.

    Redirect handlers call ``dispatch``, which only enqueues. Worker tasks
    record each click in its own transaction, bounded by a timeout and
    retried with exponential backoff. Clicks that cannot be recorded are
    logged at error level and kept in a bounded dead-letter list.

    Usage:
        recorder = ClickRecorder()
        await recorder.start()
        recorder.dispatch("abc123", user_agent="...", referer="", ip="1.2.3.4")
        await recorder.stop()  # Drains the queue first
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        publisher: LivePublisher | None = None,
        workers: int | None = None,
        queue_size: int | None = None,
        timeout: float | None = None,
        max_attempts: int | None = None,
        retry_backoff: float | None = None,
        dead_letter_size: int | None = None,
        drain_timeout: float = 10.0,
    ):
        self._session_factory = session_factory or async_session_factory
        self._publisher = publisher or publish_live_update
        self._workers_count = workers or settings.click_workers
        self._timeout = timeout or settings.click_record_timeout
        self._max_attempts = max_attempts or settings.click_record_max_attempts
        self._retry_backoff = (
            settings.click_retry_backoff if retry_backoff is None else retry_backoff
        )
        self._drain_timeout = drain_timeout
        self._queue: asyncio.Queue[ClickPayload] = asyncio.Queue(
            maxsize=queue_size or settings.click_queue_size
        )
        self._dead_letters: deque[dict] = deque(
            maxlen=dead_letter_size or settings.dead_letter_size
        )
        self._workers: list[asyncio.Task] = []
        self._running = False
        self._clicks_recorded = 0
        self._clicks_duplicate = 0
        self._clicks_dropped = 0
        self._clicks_dead_lettered = 0

    async def start(self) -> None:
        """Start the worker tasks."""
        if self._running:
            logger.warning("Click recorder already running")
            return

        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(n)) for n in range(self._workers_count)
        ]
        logger.info(
            "Click recorder started",
            workers=self._workers_count,
            timeout=self._timeout,
            max_attempts=self._max_attempts,
        )

    async def stop(self) -> None:
        """Drain queued clicks, then stop the workers."""
        if not self._running:
            return

        try:
            await asyncio.wait_for(self._queue.join(), timeout=self._drain_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Click recorder stopped with pending clicks",
                pending=self._queue.qsize(),
            )

        self._running = False
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        logger.info("Click recorder stopped", **self.stats)

    def dispatch(
        self,
        short_code: str,
        user_agent: str = "",
        referer: str = "",
        ip: str = "",
        *,
        click_source: str | None = None,
        session_id: str | None = None,
    ) -> str | None:
        """Queue a click for recording without waiting for the write.

        Returns the assigned event id, or None when the queue is full and
        the click was dropped.
        """
        payload = ClickPayload(
            event_id=generate_event_id(),
            short_code=short_code,
            user_agent=user_agent,
            referer=referer,
            ip=ip,
            click_source=click_source,
            session_id=session_id,
        )
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            self._clicks_dropped += 1
            record_click_outcome("dropped")
            logger.warning(
                "Click queue full, dropping click",
                short_code=short_code,
                event_id=payload.event_id,
            )
            return None

        set_click_queue_depth(self._queue.qsize())
        return payload.event_id

    async def drain(self) -> None:
        """Wait until every queued click has been processed."""
        await self._queue.join()

    async def record(self, payload: ClickPayload) -> bool:
        """Record a single click, retrying transient failures.

        Returns True when the click is in the ledger (including when an
        earlier attempt already stored it).
        """
        for attempt in range(1, self._max_attempts + 1):
            start_time = time.perf_counter()
            try:
                event, snapshot = await asyncio.wait_for(
                    self._record_once(payload), timeout=self._timeout
                )
            except DuplicateClick:
                # A timed-out attempt committed after all
                self._clicks_duplicate += 1
                record_click_outcome("duplicate")
                logger.info(
                    "Click already recorded",
                    short_code=payload.short_code,
                    event_id=payload.event_id,
                )
                await self._publish_committed(payload)
                return True
            except TargetMissing:
                self._dead_letter(payload, "target_missing")
                return False
            except RETRYABLE_ERRORS as e:
                if attempt == self._max_attempts:
                    self._dead_letter(payload, "exhausted", error=e)
                    return False
                delay = self._retry_backoff * (2 ** (attempt - 1))
                record_click_retry()
                logger.warning(
                    "Click recording failed, retrying",
                    short_code=payload.short_code,
                    event_id=payload.event_id,
                    attempt=attempt,
                    delay=delay,
                    error=str(e) or type(e).__name__,
                )
                await asyncio.sleep(delay)
                continue

            duration = time.perf_counter() - start_time
            self._clicks_recorded += 1
            record_click_outcome("recorded")
            record_click_latency(duration)
            logger.debug(
                "Click committed",
                short_code=payload.short_code,
                event_id=payload.event_id,
                total_clicks=snapshot.total_clicks,
                duration_ms=round(duration * 1000, 2),
            )
            await self._publish(event, snapshot)
            return True

        return False

    async def _record_once(
        self,
        payload: ClickPayload,
    ) -> tuple[ClickEventResponse, LedgerSnapshot]:
        """One transactional attempt; returns the event and ledger as committed."""
        async with self._session_factory() as session:
            async with session.begin():
                event = await record_click(
                    session,
                    payload.short_code,
                    payload.user_agent,
                    payload.referer,
                    payload.ip,
                    event_id=payload.event_id,
                    session_id=payload.session_id,
                    click_source=payload.click_source,
                )
                # Read while the mapping row lock is still held
                snapshot = await get_ledger(session, payload.short_code)
                return ClickEventResponse.model_validate(event), snapshot

    async def _publish_committed(self, payload: ClickPayload) -> None:
        """Publish a click that an earlier, timed-out attempt committed."""
        try:
            async with self._session_factory() as session:
                event = await session.get(ClickEvent, payload.event_id)
                snapshot = await get_ledger(session, payload.short_code)
        except (SQLAlchemyError, ShortCodeNotFound) as e:
            logger.warning(
                "Failed to load committed click",
                short_code=payload.short_code,
                event_id=payload.event_id,
                error=str(e),
            )
            return
        if event is not None:
            await self._publish(ClickEventResponse.model_validate(event), snapshot)

    async def _publish(self, event: ClickEventResponse, snapshot: LedgerSnapshot) -> None:
        updates = (
            (ledger_channel(snapshot.short_code), snapshot.model_dump_json(by_alias=True)),
            (dashboard_channel(), event.model_dump_json(by_alias=True)),
        )
        for channel, payload in updates:
            try:
                await self._publisher(channel, payload)
            except Exception as e:
                logger.warning(
                    "Failed to publish live update",
                    channel=channel,
                    short_code=snapshot.short_code,
                    error=str(e),
                )

    def _dead_letter(
        self,
        payload: ClickPayload,
        reason: str,
        error: BaseException | None = None,
    ) -> None:
        self._clicks_dead_lettered += 1
        record_click_outcome(reason)
        entry = {
            **payload.model_dump(mode="json"),
            "reason": reason,
            "error": (str(error) or type(error).__name__) if error else None,
            "failed_at": utcnow().isoformat(),
        }
        self._dead_letters.append(entry)
        logger.error("Click dead-lettered", **entry)

    async def _worker(self, worker_id: int) -> None:
        logger.debug("Click worker started", worker_id=worker_id)
        while True:
            payload = await self._queue.get()
            try:
                await self.record(payload)
            except Exception as e:
                logger.error(
                    "Unexpected error recording click",
                    worker_id=worker_id,
                    error=str(e),
                )
                self._dead_letter(payload, "unexpected_error", error=e)
            finally:
                self._queue.task_done()
                set_click_queue_depth(self._queue.qsize())

    @property
    def is_running(self) -> bool:
        """Check if the workers are running."""
        return self._running

    @property
    def dead_letters(self) -> list[dict]:
        """Most recent clicks that could not be recorded."""
        return list(self._dead_letters)

    @property
    def stats(self) -> dict:
        """Get recorder statistics."""
        return {
            "running": self._running,
            "queue_size": self._queue.qsize(),
            "clicks_recorded": self._clicks_recorded,
            "clicks_duplicate": self._clicks_duplicate,
            "clicks_dropped": self._clicks_dropped,
            "clicks_dead_lettered": self._clicks_dead_lettered,
        }


# Global recorder instance
_click_recorder: ClickRecorder | None = None


def get_click_recorder() -> ClickRecorder:
    """Get the global recorder instance, creating it if necessary."""
    global _click_recorder
    if _click_recorder is None:
        _click_recorder = ClickRecorder()
    return _click_recorder


async def start_click_recorder() -> None:
    """Start the global recorder."""
    await get_click_recorder().start()


async def stop_click_recorder() -> None:
    """Stop the global recorder, flushing queued clicks."""
    await get_click_recorder().stop()
