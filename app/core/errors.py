"""Domain exceptions and their HTTP rendering."""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.config import get_settings

settings = get_settings()
logger = structlog.get_logger()


class LinkpulseError(Exception):
    """Base class for all service errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    public_message: str = "Internal server error"


class ShortCodeNotFound(LinkpulseError):
    """Short code is absent, inactive, or expired.

    ``reason`` is ``"missing"`` or ``"expired"``. Inactive mappings report
    ``"expired"`` since neither may be redirected.
    """

    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, short_code: str, reason: str = "missing") -> None:
        super().__init__(f"Short code '{short_code}' not found ({reason})")
        self.short_code = short_code
        self.reason = reason

    @property
    def public_message(self) -> str:  # type: ignore[override]
        if self.reason == "expired":
            return "Short code expired"
        return "Short code not found"


class InvalidInput(LinkpulseError):
    """Malformed input supplied by the caller."""

    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.public_message = message


class InvalidState(LinkpulseError):
    """A stored record is missing a field it must have."""

    public_message = "Invalid URL data"


class PersistenceError(LinkpulseError):
    """A backing store operation failed."""


class CodeGenerationError(PersistenceError):
    """No free short code was found within the attempt budget."""


class TargetMissing(LinkpulseError):
    """A click was recorded against a short code with no mapping."""

    status_code = status.HTTP_404_NOT_FOUND
    public_message = "Short code not found"

    def __init__(self, short_code: str) -> None:
        super().__init__(f"No mapping for short code '{short_code}'")
        self.short_code = short_code


class DuplicateClick(LinkpulseError):
    """A click event with the same id was already recorded."""

    status_code = status.HTTP_409_CONFLICT
    public_message = "Click already recorded"

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Click event '{event_id}' already recorded")
        self.event_id = event_id


async def linkpulse_error_handler(request: Request, exc: LinkpulseError) -> JSONResponse:
    """Render a domain error as ``{"error": ...}``."""
    if exc.status_code >= 500:
        logger.error(
            "Request failed",
            error_type=type(exc).__name__,
            error=str(exc),
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.public_message},
    )


async def validation_error_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    """Render request validation failures as 400 responses."""
    content: dict = {"error": "Invalid request body"}
    if settings.debug:
        content["details"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """Attach the error handlers to the application."""
    app.add_exception_handler(LinkpulseError, linkpulse_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
