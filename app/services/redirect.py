"""Short code resolution for the redirect endpoint."""

from dataclasses import dataclass

import structlog
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from app.core.errors import InvalidState
from app.core.rate_limit import get_real_client_ip
from app.services.click_recorder import ClickRecorder, get_click_recorder
from app.services.url import ensure_scheme, get_mapping

logger = structlog.get_logger()


@dataclass(frozen=True)
class RequestMetadata:
    """Inbound request details stored with a click."""

    user_agent: str = ""
    referer: str = ""
    ip: str = ""

    @classmethod
    def from_request(cls, request: Request) -> "RequestMetadata":
        """Extract click metadata from a request.

        The client IP is resolved the same way as for rate limiting.
        """
        return cls(
            user_agent=request.headers.get("User-Agent", ""),
            referer=request.headers.get("Referer", ""),
            ip=get_real_client_ip(request),
        )


async def resolve(
    session: AsyncSession,
    short_code: str,
    metadata: RequestMetadata,
    recorder: ClickRecorder | None = None,
) -> str:
    """Resolve a short code to its destination and queue the click.

    Raises ShortCodeNotFound for absent, inactive or expired codes and
    InvalidState when the stored mapping has no destination. The click is
    recorded in the background; its outcome never affects the result.
    """
    mapping = await get_mapping(session, short_code)

    if not mapping.original_url:
        logger.error("Mapping has no destination", short_code=short_code)
        raise InvalidState(f"Mapping '{short_code}' has no original URL")

    redirect_url = ensure_scheme(mapping.original_url)

    recorder = recorder or get_click_recorder()
    recorder.dispatch(
        short_code,
        user_agent=metadata.user_agent,
        referer=metadata.referer,
        ip=metadata.ip,
        click_source="direct",
    )

    logger.info("Short code resolved", short_code=short_code)
    return redirect_url
