"""Content-Type and body size checks for JSON API endpoints.

POST/PUT/PATCH requests under /api/ that carry a body must declare
application/json and stay under MAX_JSON_BODY_BYTES.
"""

import logging
from typing import Callable, Optional

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from config import get_settings

logger = logging.getLogger(__name__)

METHODS_WITH_BODY = {"POST", "PUT", "PATCH"}


def is_json_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    # Tolerates parameters such as "; charset=utf-8"
    return content_type.lower().strip().startswith("application/json")


def should_validate_content_type(request: Request) -> bool:
    return request.method in METHODS_WITH_BODY and request.url.path.startswith("/api/")


def _declared_length(request: Request) -> Optional[int]:
    raw = request.headers.get("content-length")
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


class ContentTypeValidationMiddleware(BaseHTTPMiddleware):
    """Reject non-JSON (415) and oversized (413) request bodies on the API."""

    def __init__(self, app, max_body_bytes: Optional[int] = None):
        super().__init__(app)
        self.max_body_bytes = max_body_bytes or get_settings().MAX_JSON_BODY_BYTES

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not should_validate_content_type(request):
            return await call_next(request)

        length = _declared_length(request)
        has_body = bool(length) or (length is None and "transfer-encoding" in request.headers)
        if not has_body:
            return await call_next(request)

        if length is not None and length > self.max_body_bytes:
            logger.warning(
                f"Request body too large for {request.method} {request.url.path}: {length} bytes"
            )
            return JSONResponse(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                content={"detail": "Request body too large"},
            )

        content_type = request.headers.get("content-type")
        if not is_json_content_type(content_type):
            logger.warning(
                f"Invalid Content-Type for {request.method} {request.url.path}: "
                f"expected application/json, got {content_type}"
            )
            return JSONResponse(
                status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
                content={
                    "detail": "Content-Type must be application/json for this endpoint",
                    "code": "UNSUPPORTED_MEDIA_TYPE",
                },
            )

        return await call_next(request)
