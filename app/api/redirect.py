"""Redirect endpoint for short links."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_async_session
from app.core.errors import LinkpulseError
from app.core.observability import record_redirect
from app.core.rate_limit import RATE_LIMIT_REDIRECT, limiter
from app.schemas.url import RedirectTarget
from app.services import redirect_service
from app.services.redirect import RequestMetadata

logger = structlog.get_logger()

router = APIRouter(tags=["redirect"])


@router.get("/redirect/{short_code}", response_model=RedirectTarget)
@limiter.limit(RATE_LIMIT_REDIRECT)
async def resolve_short_code(
    request: Request,
    short_code: str,
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> RedirectTarget | JSONResponse:
    """Resolve a short code to its destination URL.

    The caller performs the actual redirect. The click is recorded in the
    background and never delays or fails this response.
    """
    try:
        redirect_url = await redirect_service.resolve(
            session,
            short_code,
            RequestMetadata.from_request(request),
        )
    except LinkpulseError as e:
        logger.info(
            "Redirect failed",
            short_code=short_code,
            reason=type(e).__name__,
        )
        record_redirect(e.status_code)
        raise
    except Exception as e:
        logger.exception("Unexpected redirect error", short_code=short_code, error=str(e))
        record_redirect(status.HTTP_500_INTERNAL_SERVER_ERROR)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    record_redirect(status.HTTP_200_OK)
    return RedirectTarget(redirect_url=redirect_url)
