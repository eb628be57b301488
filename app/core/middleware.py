"""Custom middleware for security headers."""

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Paths whose responses must reach the server on every visit
NO_STORE_PREFIXES = ("/redirect/", "/analytics/")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Middleware to add security headers to all responses.

    Headers added:
    - X-Content-Type-Options: Prevents MIME type sniffing
    - X-Frame-Options: The API is never framed
    - Referrer-Policy: Controls referrer information sent with requests
    - Content-Security-Policy: JSON-only API, nothing may load
    - Cache-Control: no-store on resolutions and analytics, so a cached
      response never hides a click or serves a stale ledger
    - Strict-Transport-Security: Forces HTTPS (when enabled)
    """

    def __init__(
        self,
        app: object,
        enable_hsts: bool = False,
        hsts_max_age: int = 31536000,  # 1 year
    ) -> None:
        super().__init__(app)
        self.enable_hsts = enable_hsts
        self.hsts_max_age = hsts_max_age

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Interactive docs load scripts from a CDN
        if not request.url.path.startswith(("/docs", "/redoc")):
            response.headers["Content-Security-Policy"] = (
                "default-src 'none'; frame-ancestors 'none'"
            )

        if request.url.path.startswith(NO_STORE_PREFIXES):
            response.headers["Cache-Control"] = "no-store"

        # HSTS - only enable in production with HTTPS
        if self.enable_hsts:
            response.headers["Strict-Transport-Security"] = (
                f"max-age={self.hsts_max_age}; includeSubDomains"
            )

        return response
