"""Business logic services."""

from app.services import ledger as ledger_service
from app.services import redirect as redirect_service
from app.services import url as url_service

__all__ = ["ledger_service", "redirect_service", "url_service"]
