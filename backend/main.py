import logging
import sys
from contextlib import asynccontextmanager
from typing import Any

from api.routes import auth, media
from config import AppMode, get_settings
from db.database import init_db
from fastapi import APIRouter, FastAPI, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from middleware.content_type import ContentTypeValidationMiddleware
from middleware.rate_limit import RateLimitMiddleware
from middleware.security import SecurityHeadersMiddleware
from services.storage import HttpStorage
from starlette.requests import Request

APP_NAME = "Music Stream API"
APP_VERSION = "1.0.0"

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Quiet noisy loggers
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("botocore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""

    # === STARTUP ===
    logger.info(f"Starting {APP_NAME} in {settings.APP_MODE.value} mode...")

    await init_db()
    logger.info("Database initialized")

    logger.info(f"Storage backend: {settings.STORAGE_BACKEND}")

    # Periodic refresh token cleanup (skip during pytest)
    if "pytest" not in sys.modules:
        auth.start_cleanup_task()

    yield

    # === SHUTDOWN ===
    if "pytest" not in sys.modules:
        auth.stop_cleanup_task()
    await HttpStorage.shutdown()
    logger.info(f"Shutting down {APP_NAME}...")


app = FastAPI(
    title=APP_NAME,
    description="Session authentication and authorized media streaming",
    version=APP_VERSION,
    lifespan=lifespan,
    debug=(settings.APP_MODE == AppMode.DEV),
)

MAX_ERROR_STRING_CHARS = 400
MAX_ERROR_CONTAINER_ITEMS = 50
MAX_ERROR_DEPTH = 8


def _sanitize_for_json(value: Any, *, _depth: int = 0) -> Any:
    """
    Make validation error payloads safe to encode.

    Error details can echo user input: unpaired surrogates would crash the
    JSON encoder, and large inputs would be reflected back in full.
    """
    if _depth > MAX_ERROR_DEPTH:
        return "<max depth reached>"
    if value is None or isinstance(value, (int, float, bool)):
        return value
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="replace")
    if isinstance(value, str):
        safe = value.encode("utf-8", errors="replace").decode("utf-8", errors="replace")
        if len(safe) > MAX_ERROR_STRING_CHARS:
            return f"{safe[:MAX_ERROR_STRING_CHARS]}...(truncated)"
        return safe
    if isinstance(value, (list, tuple, set)):
        items = list(value)
        out = [_sanitize_for_json(v, _depth=_depth + 1) for v in items[:MAX_ERROR_CONTAINER_ITEMS]]
        if len(items) > MAX_ERROR_CONTAINER_ITEMS:
            out.append(f"... ({len(items) - MAX_ERROR_CONTAINER_ITEMS} more items truncated)")
        return out
    if isinstance(value, dict):
        items = list(value.items())
        return {
            str(_sanitize_for_json(k, _depth=_depth + 1)): _sanitize_for_json(v, _depth=_depth + 1)
            for k, v in items[:MAX_ERROR_CONTAINER_ITEMS]
        }
    # Validation contexts can carry exception instances
    return _sanitize_for_json(str(value), _depth=_depth + 1)


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": _sanitize_for_json(exc.errors())},
    )


# Middlewares (order matters - first added = last executed)
# 1. Security headers on every response
app.add_middleware(SecurityHeadersMiddleware)

# 2. JSON content type and body size for API writes
app.add_middleware(ContentTypeValidationMiddleware)

# 3. Rate limiting
app.add_middleware(RateLimitMiddleware)

# 4. Request logging (development only)
if settings.APP_MODE == AppMode.DEV:
    from middleware.logging import RequestLoggingMiddleware, configure_request_logging
    configure_request_logging(settings.LOG_LEVEL)
    app.add_middleware(RequestLoggingMiddleware)

# 5. CORS - added last so it runs first
allow_credentials = "*" not in settings.CORS_ORIGINS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Range"],
    expose_headers=[
        "Content-Range",
        "Content-Length",
        "Accept-Ranges",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-Request-ID",
    ],
)

api_router = APIRouter(prefix="/api")
api_router.include_router(auth.router)
api_router.include_router(media.router)
app.include_router(api_router)


@app.get("/")
async def root():
    """Service info"""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "docs": "/docs",
        "endpoints": {
            "auth": "/api/auth",
            "media": "/api/media",
        },
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "mode": settings.APP_MODE.value,
        "storage_backend": settings.STORAGE_BACKEND,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=(settings.APP_MODE == AppMode.DEV),
    )
