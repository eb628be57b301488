"""Short URL mapping SQLAlchemy model."""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Index, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.clock import utcnow
from app.core.database import Base


class UrlMapping(Base):
    """Association of a short code with its destination URL."""

    __tablename__ = "urls"

    short_code: Mapped[str] = mapped_column(
        String(20),
        primary_key=True,
        comment="Short code for the URL (e.g., 'abc123')",
    )
    original_url: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="The destination URL to redirect to",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    clicks: Mapped[int] = mapped_column(
        default=0,
        nullable=False,
        comment="Total click count (denormalized for quick access)",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        comment="Whether the link is active (soft delete)",
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
        comment="Expiration timestamp",
    )
    last_click_at: Mapped[datetime | None] = mapped_column(
        DateTime,
        nullable=True,
        comment="Timestamp of the most recent recorded click",
    )

    # Serves the top URLs query
    __table_args__ = (Index("ix_urls_active_clicks", "is_active", "clicks"),)

    def __repr__(self) -> str:
        return f"<UrlMapping {self.short_code} -> {self.original_url[:50]}>"
