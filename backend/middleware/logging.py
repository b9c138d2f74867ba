"""Request/Response logging middleware.

One line per request with a short request id, method, path, masked query
parameters, client address, status and duration. Stream capability tokens
travel in the query string, so they are masked here.
"""

import logging
import time
import uuid
from typing import Callable, Mapping

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from middleware.rate_limit import get_client_ip

logger = logging.getLogger("api.requests")

EXCLUDED_PATHS = {
    "/health",
    "/",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/favicon.ico",
}

SENSITIVE_QUERY_PARAMS = {"t", "token", "password", "key", "access_token", "refresh_token"}
MASK = "***"


def mask_query_params(params: Mapping[str, str]) -> dict:
    return {
        key: (MASK if key.lower() in SENSITIVE_QUERY_PARAMS else value)
        for key, value in params.items()
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Log every API request on completion.

    5xx is logged as error, 4xx as warning, successful GETs (mostly media
    range requests) at debug and other successes at info. The request id is
    echoed back in X-Request-ID.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in EXCLUDED_PATHS:
            return await call_next(request)

        request_id = uuid.uuid4().hex[:8]
        start_time = time.perf_counter()

        parts = [f"[{request_id}]", f"{request.method} {request.url.path}"]
        if request.query_params:
            parts.append(f"params={mask_query_params(request.query_params)}")
        parts.append(f"client={get_client_ip(request)}")
        request_desc = " ".join(parts)

        try:
            response = await call_next(request)
        except Exception as e:
            duration = time.perf_counter() - start_time
            logger.error(f"{request_desc} - ERROR ({duration:.3f}s): {e}")
            raise

        duration = time.perf_counter() - start_time
        status_class = response.status_code // 100
        if status_class == 5:
            log_func = logger.error
        elif status_class == 4:
            log_func = logger.warning
        elif request.method == "GET":
            log_func = logger.debug
        else:
            log_func = logger.info
        log_func(f"{request_desc} - {response.status_code} ({duration:.3f}s)")

        response.headers["X-Request-ID"] = request_id
        return response


def configure_request_logging(log_level: str = "INFO") -> None:
    """Give the request logger its own handler and level."""
    request_logger = logging.getLogger("api.requests")
    request_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    request_logger.propagate = False

    if not request_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        request_logger.addHandler(handler)
