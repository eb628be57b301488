"""Create urls table.

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the urls table."""
    op.create_table(
        "urls",
        sa.Column(
            "short_code",
            sa.String(20),
            nullable=False,
            comment="Short code for the URL (e.g., 'abc123')",
        ),
        sa.Column(
            "original_url",
            sa.Text(),
            nullable=False,
            comment="The destination URL to redirect to",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "clicks",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
            comment="Total click count (denormalized for quick access)",
        ),
        sa.Column(
            "is_active",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("true"),
            comment="Whether the link is active (soft delete)",
        ),
        sa.Column(
            "expires_at",
            sa.DateTime(),
            nullable=True,
            comment="Expiration timestamp",
        ),
        sa.Column(
            "last_click_at",
            sa.DateTime(),
            nullable=True,
            comment="Timestamp of the most recent recorded click",
        ),
        sa.PrimaryKeyConstraint("short_code", name=op.f("pk_urls")),
    )
    op.create_index(
        "ix_urls_active_clicks",
        "urls",
        ["is_active", "clicks"],
    )


def downgrade() -> None:
    """Drop the urls table."""
    op.drop_index("ix_urls_active_clicks", table_name="urls")
    op.drop_table("urls")
