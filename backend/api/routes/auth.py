"""Authentication routes: password login with lockout and refresh token rotation."""

import asyncio
import logging
from typing import Optional, Type

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_clock, get_current_user, get_optional_user, get_session_manager
from db.database import get_db
from models.user import User
from schemas.user import (
    AuthResponse,
    LogoutAllResponse,
    MeResponse,
    SessionListResponse,
    SessionResponse,
    UserLogin,
    UserRegister,
    UserResponse,
)
from services.auth import SessionManager, get_client_info
from services.cookies import CookiePolicy, get_cookie_policy
from services.errors import AuthError, InvalidInput, MalformedCredentials, MissingToken
from services.refresh_registry import RefreshTokenRegistry
from services.tokens import Clock, hash_token, utcnow

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


# Background task for periodic token cleanup
_cleanup_task: Optional[asyncio.Task] = None
CLEANUP_INTERVAL_SECONDS = 3600  # Run cleanup every hour


async def _periodic_token_cleanup():
    """Background task to periodically delete expired refresh token records."""
    while True:
        try:
            await asyncio.sleep(CLEANUP_INTERVAL_SECONDS)
            # Import here to avoid circular imports
            from db.database import AsyncSessionLocal
            async with AsyncSessionLocal() as db:
                removed = await RefreshTokenRegistry(db).cleanup_expired(utcnow())
                await db.commit()
                if removed > 0:
                    logger.info(f"Token cleanup completed: {removed} expired refresh tokens removed")
        except asyncio.CancelledError:
            logger.info("Token cleanup task cancelled")
            break
        except Exception as e:
            logger.error(f"Error in token cleanup task: {e}")
            # Continue running despite errors


def start_cleanup_task():
    """Start the periodic token cleanup background task."""
    global _cleanup_task
    if _cleanup_task is None or _cleanup_task.done():
        _cleanup_task = asyncio.create_task(_periodic_token_cleanup())
        logger.debug("Started periodic token cleanup task")


def stop_cleanup_task():
    """Stop the periodic token cleanup background task."""
    global _cleanup_task
    if _cleanup_task and not _cleanup_task.done():
        _cleanup_task.cancel()
        logger.debug("Stopped periodic token cleanup task")


async def _parse_body(
    request: Request, model: Type[BaseModel], error: Type[AuthError]
) -> BaseModel:
    """
    Validate a JSON body, mapping every failure to one fixed client error.

    Auth endpoints must not answer with FastAPI's detailed 422 payload.
    """
    try:
        payload = await request.json()
        return model.model_validate(payload)
    except (ValueError, ValidationError):
        raise error()


def _error_response(exc: AuthError, policy: CookiePolicy) -> JSONResponse:
    error_response = JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail},
        headers=exc.headers,
    )
    policy.clear_session_cookies(error_response)
    return error_response


@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
async def register(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    """
    Create an account and start a session.

    Validation failures and taken usernames both answer 400 "Invalid input".
    """
    data: UserRegister = await _parse_body(request, UserRegister, InvalidInput)
    ip_address, user_agent = get_client_info(request)

    user, tokens = await sessions.register(
        data.username,
        data.password,
        ip_address=ip_address,
        user_agent=user_agent,
        display_name=data.display_name,
        email=data.email,
    )
    await db.commit()

    # Only set cookies after a successful commit so we never hand out a
    # refresh token that was rolled back.
    policy.set_session_cookies(response, tokens)
    return AuthResponse(message="Registered", user=UserResponse.model_validate(user))


@router.post("/login", response_model=AuthResponse)
async def login(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    """
    Password login.

    Unknown username and wrong password are indistinguishable (401). A
    locked account answers 403 without the password being checked.
    """
    data: UserLogin = await _parse_body(request, UserLogin, MalformedCredentials)
    ip_address, user_agent = get_client_info(request)

    try:
        user, tokens = await sessions.login(
            data.username,
            data.password,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except AuthError:
        # Failure counters, lock state and audit rows must survive the rejection
        await db.commit()
        raise

    await db.commit()
    policy.set_session_cookies(response, tokens)
    return AuthResponse(message="Logged in", user=UserResponse.model_validate(user))


@router.post("/refresh", response_model=AuthResponse)
async def refresh_tokens(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    """
    Rotate the refresh cookie.

    The presented refresh token is consumed and replaced. Presenting one that
    was already consumed revokes every session of the account. Any failure
    clears both session cookies.
    """
    ip_address, user_agent = get_client_info(request)
    raw_token = request.cookies.get(policy.refresh_name)

    try:
        user, tokens = await sessions.refresh(
            raw_token,
            ip_address=ip_address,
            user_agent=user_agent,
        )
    except AuthError as exc:
        # Reuse revocation and its audit entry must be persisted
        await db.commit()
        return _error_response(exc, policy)

    await db.commit()
    policy.set_session_cookies(response, tokens)
    return AuthResponse(message="Refreshed", user=UserResponse.model_validate(user))


@router.post("/logout")
async def logout(
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    """
    Logout current session.

    Removes only the record of the presented refresh token. Always succeeds
    and always clears cookies, whatever the state of the tokens.
    """
    ip_address, user_agent = get_client_info(request)
    raw_token = request.cookies.get(policy.refresh_name)

    try:
        await sessions.logout(raw_token, ip_address=ip_address, user_agent=user_agent)
        await db.commit()
    except Exception:
        await db.rollback()
        logger.exception("Failed to revoke refresh token during logout")

    policy.clear_session_cookies(response)
    return {"message": "Logged out"}


@router.post("/logout-all", response_model=LogoutAllResponse)
async def logout_all(
    request: Request,
    response: Response,
    current_user: Optional[User] = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
    policy: CookiePolicy = Depends(get_cookie_policy),
):
    """
    Logout from all sessions.

    The caller is identified by the access token, or by a refresh token that
    is still registered (so this works after the access token expired).
    """
    ip_address, user_agent = get_client_info(request)

    user = current_user
    if user is None:
        user = await sessions.identify_by_refresh(request.cookies.get(policy.refresh_name))
    if user is None:
        return _error_response(MissingToken(), policy)

    count = await sessions.logout_all(user, ip_address=ip_address, user_agent=user_agent)
    await db.commit()

    policy.clear_session_cookies(response)
    return LogoutAllResponse(message=f"Logged out from {count} session(s)", revoked=count)


@router.get("/me", response_model=MeResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Account behind the access token. 401 means: call /refresh."""
    return MeResponse(user=UserResponse.model_validate(current_user))


@router.get("/sessions", response_model=SessionListResponse)
async def get_sessions(
    request: Request,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    policy: CookiePolicy = Depends(get_cookie_policy),
    clock: Clock = Depends(get_clock),
):
    """
    List the caller's outstanding refresh tokens.

    Each one is a device/browser that can still refresh its session.
    """
    records = await RefreshTokenRegistry(db).list_active(current_user.id, clock())

    refresh_cookie = request.cookies.get(policy.refresh_name)
    current_hash = hash_token(refresh_cookie) if refresh_cookie else None

    session_responses = [
        SessionResponse(
            id=record.id,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            created_at=record.created_at,
            expires_at=record.expires_at,
            is_current=record.token_hash == current_hash,
        )
        for record in records
    ]
    return SessionListResponse(sessions=session_responses, total=len(session_responses))
