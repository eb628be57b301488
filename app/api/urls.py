"""Short URL creation and lifecycle endpoints."""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.database import get_async_session
from app.core.errors import InvalidInput
from app.core.observability import record_link_operation
from app.core.rate_limit import RATE_LIMIT_API, RATE_LIMIT_SHORTEN, limiter
from app.schemas.url import ShortenRequest, ShortenResponse
from app.services import url_service

settings = get_settings()
logger = structlog.get_logger()

router = APIRouter(tags=["urls"])


def build_short_url(request: Request, short_code: str) -> str:
    """Public URL for a short code."""
    base_url = settings.public_base_url or str(request.base_url)
    return f"{base_url.rstrip('/')}/{short_code}"


@router.post(
    "/shorten",
    response_model=ShortenResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit(RATE_LIMIT_SHORTEN)
async def shorten(
    request: Request,
    body: ShortenRequest,
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> ShortenResponse | JSONResponse:
    """Create a short code for a URL.

    URLs without a scheme are stored with ``https://``.
    """
    try:
        mapping = await url_service.shorten_url(session, body.url)
        await session.commit()
    except InvalidInput:
        raise
    except Exception as e:
        await session.rollback()
        logger.error("Failed to shorten URL", url=body.url, error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "details": str(e) if settings.debug else None,
            },
        )

    logger.info(
        "Short URL created",
        short_code=mapping.short_code,
        original_url=mapping.original_url,
    )
    record_link_operation("create")
    return ShortenResponse(
        short_url=build_short_url(request, mapping.short_code),
        original_url=mapping.original_url,
        short_code=mapping.short_code,
        created_at=mapping.created_at,
    )


@router.delete("/urls/{short_code}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit(RATE_LIMIT_API)
async def deactivate(
    request: Request,
    short_code: str,
    session: Annotated[AsyncSession, Depends(get_async_session)],
) -> Response:
    """Deactivate a short code. The mapping and its ledger are kept."""
    await url_service.deactivate_mapping(session, short_code)
    await session.commit()

    logger.info("Short URL deactivated", short_code=short_code)
    record_link_operation("deactivate")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
