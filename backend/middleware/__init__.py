"""Middleware package for security, rate limiting and request hygiene."""

from .content_type import ContentTypeValidationMiddleware
from .logging import RequestLoggingMiddleware
from .rate_limit import RateLimitMiddleware, RateLimiter, get_client_ip
from .security import SecurityHeadersMiddleware

__all__ = [
    "ContentTypeValidationMiddleware",
    "RequestLoggingMiddleware",
    "RateLimitMiddleware",
    "RateLimiter",
    "get_client_ip",
    "SecurityHeadersMiddleware",
]
