"""URL mapping service for database operations and short code generation."""

import secrets
import string
from datetime import datetime, timedelta

import structlog
from pydantic import HttpUrl, TypeAdapter, ValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utcnow
from app.core.config import get_settings
from app.core.errors import (
    CodeGenerationError,
    InvalidInput,
    PersistenceError,
    ShortCodeNotFound,
)
from app.core.redis import cache_link, get_cached_link, invalidate_link_cache
from app.models.ledger import ClickLedger
from app.models.url import UrlMapping

settings = get_settings()
logger = structlog.get_logger()

# Characters for random short code generation (base62)
SHORT_CODE_CHARS = string.ascii_lowercase + string.ascii_uppercase + string.digits

_http_url = TypeAdapter(HttpUrl)


def generate_short_code(length: int | None = None) -> str:
    """Generate a random short code using base62 characters."""
    length = length or settings.short_code_length
    return "".join(secrets.choice(SHORT_CODE_CHARS) for _ in range(length))


async def is_short_code_available(session: AsyncSession, short_code: str) -> bool:
    """Check if a short code is available (not already used)."""
    result = await session.execute(
        select(UrlMapping.short_code).where(UrlMapping.short_code == short_code)
    )
    return result.scalar_one_or_none() is None


async def generate_unique_short_code(
    session: AsyncSession,
    max_attempts: int | None = None,
) -> str:
    """Generate a unique short code with collision detection.

    Raises CodeGenerationError if every attempt collides.
    """
    max_attempts = max_attempts or settings.short_code_max_attempts
    for attempt in range(max_attempts):
        code = generate_short_code()
        if await is_short_code_available(session, code):
            return code
        logger.debug("Short code collision", short_code=code, attempt=attempt + 1)
    raise CodeGenerationError(
        f"Unable to generate unique short code after {max_attempts} attempts"
    )


def ensure_scheme(url: str) -> str:
    """Prepend https:// to URLs without an http(s) scheme."""
    if url.lower().startswith(("http://", "https://")):
        return url
    return f"https://{url}"


def normalize_url(raw_url: str | None) -> str:
    """Validate a user-supplied URL and return it with a scheme.

    Raises InvalidInput for missing or malformed URLs.
    """
    if raw_url is None or not raw_url.strip():
        raise InvalidInput("URL is required")
    url = ensure_scheme(raw_url.strip())
    try:
        _http_url.validate_python(url)
    except ValidationError:
        raise InvalidInput("Invalid URL format")
    return url


async def get_mapping_record(
    session: AsyncSession,
    short_code: str,
) -> UrlMapping | None:
    """Get a mapping by short code regardless of its lifecycle flags."""
    result = await session.execute(
        select(UrlMapping).where(UrlMapping.short_code == short_code)
    )
    return result.scalar_one_or_none()


async def create_mapping(
    session: AsyncSession,
    short_code: str,
    original_url: str,
) -> UrlMapping:
    """Create a mapping and its empty ledger in one unit of work."""
    mapping = UrlMapping(
        short_code=short_code,
        original_url=original_url,
        created_at=utcnow(),
        clicks=0,
        is_active=True,
        expires_at=utcnow() + timedelta(days=settings.link_ttl_days),
    )
    ledger = ClickLedger(
        short_code=short_code,
        total_clicks=0,
        created_at=mapping.created_at,
    )
    session.add(mapping)
    session.add(ledger)
    try:
        await session.flush()
    except SQLAlchemyError as e:
        logger.error("Failed to create mapping", short_code=short_code, error=str(e))
        raise PersistenceError(f"Could not create mapping '{short_code}'") from e
    return mapping


async def shorten_url(session: AsyncSession, raw_url: str | None) -> UrlMapping:
    """Validate a URL, pick a free short code and create the mapping."""
    original_url = normalize_url(raw_url)
    try:
        short_code = await generate_unique_short_code(session)
    except SQLAlchemyError as e:
        raise PersistenceError("Could not check short code availability") from e
    return await create_mapping(session, short_code, original_url)


def _check_lifecycle(
    short_code: str,
    is_active: bool,
    expires_at: datetime | None,
) -> None:
    if not is_active or (expires_at is not None and utcnow() > expires_at):
        raise ShortCodeNotFound(short_code, reason="expired")


async def get_mapping(session: AsyncSession, short_code: str) -> UrlMapping:
    """Get an active, non-expired mapping by its short code.

    Raises ShortCodeNotFound when the mapping is absent, inactive or expired.
    Active lookups go through the Redis link cache first.
    """
    cached = await get_cached_link(short_code)
    if cached:
        expires_at = cached.get("expires_at")
        _check_lifecycle(
            short_code,
            cached.get("is_active", True),
            datetime.fromisoformat(expires_at) if expires_at else None,
        )
        return UrlMapping(
            short_code=short_code,
            original_url=cached["original_url"],
            is_active=cached.get("is_active", True),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )

    mapping = await get_mapping_record(session, short_code)
    if mapping is None:
        raise ShortCodeNotFound(short_code, reason="missing")
    _check_lifecycle(short_code, mapping.is_active, mapping.expires_at)

    await cache_link(
        short_code=short_code,
        link_data={
            "original_url": mapping.original_url,
            "is_active": mapping.is_active,
            "expires_at": mapping.expires_at.isoformat() if mapping.expires_at else None,
        },
    )
    return mapping


async def deactivate_mapping(session: AsyncSession, short_code: str) -> UrlMapping:
    """Soft delete a mapping so it no longer resolves."""
    mapping = await get_mapping_record(session, short_code)
    if mapping is None:
        raise ShortCodeNotFound(short_code, reason="missing")
    mapping.is_active = False
    await session.flush()

    # Invalidate cache so redirects return 404
    await invalidate_link_cache(short_code)
    return mapping
