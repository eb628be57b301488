"""Create analytics ledger and click_events tables.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the ledger and its event log."""
    op.create_table(
        "analytics",
        sa.Column("short_code", sa.String(20), nullable=False),
        sa.Column(
            "total_clicks",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
            comment="Authoritative count of recorded clicks",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("last_click_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("short_code", name=op.f("pk_analytics")),
        sa.ForeignKeyConstraint(
            ["short_code"],
            ["urls.short_code"],
            name=op.f("fk_analytics_short_code_urls"),
            ondelete="CASCADE",
        ),
    )

    op.create_table(
        "click_events",
        sa.Column(
            "id",
            sa.String(32),
            nullable=False,
            comment="Millisecond timestamp plus random suffix",
        ),
        sa.Column("short_code", sa.String(20), nullable=False),
        sa.Column(
            "timestamp",
            sa.DateTime(),
            nullable=False,
            comment="Server-assigned time the click was recorded",
        ),
        sa.Column("user_agent", sa.String(200), nullable=False, server_default=""),
        sa.Column("referer", sa.String(200), nullable=False, server_default=""),
        sa.Column(
            "ip",
            sa.String(15),
            nullable=False,
            server_default="",
            comment="Client IP truncated to 15 characters",
        ),
        sa.Column("session_id", sa.String(64), nullable=True),
        sa.Column(
            "click_source",
            sa.String(20),
            nullable=True,
            comment="direct, analytics_page or test",
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_click_events")),
        sa.ForeignKeyConstraint(
            ["short_code"],
            ["analytics.short_code"],
            name=op.f("fk_click_events_short_code_analytics"),
            ondelete="CASCADE",
        ),
    )
    op.create_index(
        "ix_click_events_short_code_timestamp_id",
        "click_events",
        ["short_code", "timestamp", "id"],
    )
    op.create_index(
        "ix_click_events_timestamp",
        "click_events",
        ["timestamp"],
    )


def downgrade() -> None:
    """Drop the ledger and its event log."""
    op.drop_index("ix_click_events_timestamp", table_name="click_events")
    op.drop_index("ix_click_events_short_code_timestamp_id", table_name="click_events")
    op.drop_table("click_events")
    op.drop_table("analytics")
