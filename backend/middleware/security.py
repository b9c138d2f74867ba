"""Security headers middleware for HTTP response hardening."""

import logging
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from config import get_settings

logger = logging.getLogger(__name__)

# The API only serves JSON and audio bytes; nothing is meant to be rendered
API_CONTENT_SECURITY_POLICY = "default-src 'none'; frame-ancestors 'none'; base-uri 'none'"

# Swagger UI pulls its assets from a CDN
DOCS_CONTENT_SECURITY_POLICY = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "img-src 'self' data: https:; "
    "frame-ancestors 'none'"
)

DOCS_PATHS = ("/docs", "/redoc")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to every response.

    - X-Content-Type-Options / X-Frame-Options / Referrer-Policy / Permissions-Policy
    - Content-Security-Policy (locked down except on the docs pages)
    - Strict-Transport-Security in production only
    - no-store caching for /api responses that did not set their own
      Cache-Control (media responses do)
    """

    def __init__(self, app):
        super().__init__(app)
        self.is_production = get_settings().is_production

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        path = request.url.path

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Permissions-Policy"] = (
            "camera=(), geolocation=(), microphone=(), payment=(), usb=()"
        )

        if path.startswith(DOCS_PATHS) and not self.is_production:
            response.headers["Content-Security-Policy"] = DOCS_CONTENT_SECURITY_POLICY
        else:
            response.headers["Content-Security-Policy"] = API_CONTENT_SECURITY_POLICY

        if self.is_production:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        if path.startswith("/api/") and "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"

        return response
