from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from db.database import get_db
from models.user import User
from services.auth import SessionManager
from services.cookies import CookiePolicy, get_cookie_policy
from services.errors import AuthError, MissingToken
from services.media_proxy import MediaProxy
from services.passwords import PasswordService, get_password_service
from services.storage import StorageBackend, get_storage
from services.tokens import Clock, TokenIssuer, utcnow

security = HTTPBearer(auto_error=False)


def get_clock() -> Clock:
    """Time source for token and lockout checks (overridden in tests)."""
    return utcnow


def get_token_issuer(clock: Clock = Depends(get_clock)) -> TokenIssuer:
    return TokenIssuer.from_settings(get_settings(), clock=clock)


def get_session_manager(
    db: AsyncSession = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
    passwords: PasswordService = Depends(get_password_service),
) -> SessionManager:
    return SessionManager(db, issuer, passwords)


def get_media_proxy(storage: StorageBackend = Depends(get_storage)) -> MediaProxy:
    return MediaProxy(storage)


def access_token_candidates(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials],
    policy: CookiePolicy,
) -> list[str]:
    """Access tokens carried by the request: session cookie first, then Bearer."""
    tokens = []
    cookie = request.cookies.get(policy.access_name)
    if cookie:
        tokens.append(cookie)
    if credentials is not None and credentials.credentials:
        bearer = credentials.credentials.strip()
        if bearer and bearer not in tokens:
            tokens.append(bearer)
    return tokens


async def authenticate_request(sessions: SessionManager, tokens: list[str]) -> User:
    """
    Account behind the first token that verifies.

    A stale access cookie does not hide a valid Bearer header. With no
    token at all this is ``MissingToken``; otherwise the last failure is
    raised.
    """
    if not tokens:
        raise MissingToken()
    error: Optional[AuthError] = None
    for token in tokens:
        try:
            return await sessions.authenticate_access(token)
        except AuthError as e:
            error = e
    raise error


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    sessions: SessionManager = Depends(get_session_manager),
    policy: CookiePolicy = Depends(get_cookie_policy),
) -> User:
    """Authenticated account, or 401."""
    return await authenticate_request(
        sessions, access_token_candidates(request, credentials, policy)
    )


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    sessions: SessionManager = Depends(get_session_manager),
    policy: CookiePolicy = Depends(get_cookie_policy),
) -> Optional[User]:
    """Authenticated account, or None."""
    tokens = access_token_candidates(request, credentials, policy)
    if not tokens:
        return None
    try:
        return await authenticate_request(sessions, tokens)
    except AuthError:
        return None
