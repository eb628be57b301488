"""Rate limiting configuration using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address
from starlette.requests import Request

from app.core.config import get_settings

settings = get_settings()


def get_real_client_ip(request: Request) -> str:
    """Get the real client IP address, handling proxies.

    Checks X-Forwarded-For and X-Real-IP headers before falling back
    to the direct client address.
    """
    # X-Forwarded-For can contain multiple IPs: client, proxy1, proxy2
    # The first one is the original client
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    # Common in nginx setups
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


limiter = Limiter(
    key_func=get_real_client_ip,
    default_limits=["1000/hour"],
    storage_uri=settings.rate_limit_storage_url or settings.redis_url,
    strategy="fixed-window",
    enabled=settings.rate_limit_enabled,
)

# Rate limit constants for different endpoint types
# These can be used as decorators: @limiter.limit(RATE_LIMIT_REDIRECT)

# Hot path: 1000 requests per minute per IP
RATE_LIMIT_REDIRECT = "1000/minute"

# 60 per hour = 1 per minute average, with burst capacity
RATE_LIMIT_SHORTEN = "60/hour"

# Dashboard reads and tracked clicks
RATE_LIMIT_API = "100/minute"
