"""SQLAlchemy models.

All models should be imported here for Alembic to detect them.
"""

from app.core.database import Base
from app.models.ledger import ClickEvent, ClickLedger
from app.models.url import UrlMapping

__all__ = ["Base", "UrlMapping", "ClickLedger", "ClickEvent"]
