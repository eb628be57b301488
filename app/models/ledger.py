"""Click ledger and click event SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.clock import utcnow
from app.core.database import Base


class ClickLedger(Base):
    """Per-code aggregate holding the authoritative click count.

    Keyed by the same short code as ``UrlMapping``. Individual events live in
    ``click_events`` so the ledger row stays a fixed size.
    """

    __tablename__ = "analytics"

    short_code: Mapped[str] = mapped_column(
        String(20),
        ForeignKey("urls.short_code", ondelete="CASCADE"),
        primary_key=True,
    )
    total_clicks: Mapped[int] = mapped_column(
        default=0,
        nullable=False,
        comment="Authoritative count of recorded clicks",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    last_click_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<ClickLedger {self.short_code} total={self.total_clicks}>"


class ClickEvent(Base):
    """A single recorded click. Rows are insert-only."""

    __tablename__ = "click_events"

    id: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        comment="Millisecond timestamp plus random suffix",
    )
    short_code: Mapped[str] = mapped_column(
        String(20),
        ForeignKey("analytics.short_code", ondelete="CASCADE"),
        nullable=False,
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        comment="Server-assigned time the click was recorded",
    )
    user_agent: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    referer: Mapped[str] = mapped_column(String(200), default="", nullable=False)
    ip: Mapped[str] = mapped_column(
        String(15),
        default="",
        nullable=False,
        comment="Client IP truncated to 15 characters",
    )
    session_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    click_source: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="direct, analytics_page or test",
    )

    __table_args__ = (
        Index("ix_click_events_short_code_timestamp_id", "short_code", "timestamp", "id"),
        Index("ix_click_events_timestamp", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<ClickEvent {self.id} code={self.short_code} at={self.timestamp}>"
