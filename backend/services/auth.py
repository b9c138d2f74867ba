"""Session lifecycle: register, login, refresh rotation, logout."""

import asyncio
import json
import logging
import sys
from typing import Optional

from fastapi import Request
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from middleware.rate_limit import get_client_ip
from models.auth_audit import AuthAuditLog
from models.user import DEFAULT_ROLES, User, normalize_username
from services.errors import (
    AccountLocked,
    InvalidCredentials,
    InvalidInput,
    InvalidOrExpiredToken,
    MissingToken,
    RefreshReuseDetected,
)
from services.lockout import LockoutGuard
from services.passwords import PasswordService
from services.refresh_registry import RefreshTokenRegistry
from services.tokens import TokenIssuer, TokenPair, hash_token

logger = logging.getLogger(__name__)


async def _run_blocking(fn, *args):
    """
    Run CPU-heavy password hashing off the event loop.

    In pytest we avoid creating executor threads to prevent intermittent
    loop teardown hangs.
    """
    if "pytest" in sys.modules:
        return fn(*args)
    return await asyncio.to_thread(fn, *args)


class AuditService:
    """Service for logging authentication events."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def log(
        self,
        action: str,
        user_id: Optional[int] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        error_message: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> AuthAuditLog:
        """Log an authentication event."""
        log_entry = AuthAuditLog(
            user_id=user_id,
            action=action,
            ip_address=ip_address[:45] if ip_address else None,
            user_agent=user_agent[:500] if user_agent else None,
            success=success,
            error_message=error_message,
            metadata_json=json.dumps(metadata) if metadata else None,
        )
        self.db.add(log_entry)
        await self.db.flush()
        return log_entry


def get_client_info(request: Request) -> tuple[str, str]:
    """Extract client IP (proxy-aware) and User-Agent from request."""
    ip_address = get_client_ip(request)
    user_agent = request.headers.get("User-Agent", "unknown")
    return ip_address, user_agent


class SessionManager:
    """
    Orchestrates credential checks, lockout, token issuance and the refresh
    registry.

    Methods flush but never commit: the route decides when the unit of work
    ends, including on failure paths where lockout counters or a reuse
    revocation must still be persisted.
    """

    def __init__(
        self,
        db: AsyncSession,
        issuer: TokenIssuer,
        passwords: PasswordService,
        settings=None,
    ):
        settings = settings or get_settings()
        self.db = db
        self.issuer = issuer
        self.passwords = passwords
        self.lockout = LockoutGuard.from_settings(db, settings)
        self.registry = RefreshTokenRegistry(db)
        self.audit = AuditService(db)

    async def get_user(self, user_id: int) -> Optional[User]:
        result = await self.db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_user_by_username(self, username: str) -> Optional[User]:
        result = await self.db.execute(
            select(User).where(User.username == normalize_username(username))
        )
        return result.scalar_one_or_none()

    async def _start_session(
        self, user: User, ip_address: Optional[str], user_agent: Optional[str]
    ) -> TokenPair:
        tokens = self.issuer.issue_pair(user)
        await self.registry.store(
            user.id,
            tokens.refresh.token,
            tokens.refresh.expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return tokens

    async def register(
        self,
        username: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        display_name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        """
        Create an account and open its first session.

        A taken username gets the same ``InvalidInput`` as a malformed
        payload so registration can't be used to enumerate accounts. The
        password is hashed either way so both paths cost the same.
        """
        username = normalize_username(username)
        password_hash = await _run_blocking(self.passwords.hash, password)
        if await self.get_user_by_username(username) is not None:
            logger.info(f"Registration rejected: username taken (ip={ip_address})")
            raise InvalidInput()

        user = User(
            username=username,
            display_name=display_name or username,
            email=email.strip().lower() if email else None,
            password_hash=password_hash,
            roles=list(DEFAULT_ROLES),
            failed_login_attempts=0,
        )
        self.db.add(user)
        try:
            await self.db.flush()
        except IntegrityError:
            # Lost a race with a concurrent registration of the same name/email
            await self.db.rollback()
            raise InvalidInput()
        await self.db.refresh(user)

        tokens = await self._start_session(user, ip_address, user_agent)
        await self.audit.log(
            action=AuthAuditLog.ACTION_REGISTER,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(f"Registered user {user.id} ({user.username})")
        return user, tokens

    async def login(
        self,
        username: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        now = self.issuer.now()
        user = await self.get_user_by_username(username)

        if user is None:
            # Spend the same hashing time as a wrong password
            await _run_blocking(self.passwords.verify_dummy, password)
            await self.audit.log(
                action=AuthAuditLog.ACTION_FAILED_LOGIN,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="unknown username",
                metadata={"username": normalize_username(username)[:48]},
            )
            raise InvalidCredentials()

        if self.lockout.is_locked(user, now):
            logger.warning(
                f"Login attempt on locked account user_id={user.id} ip={ip_address} ua={user_agent}"
            )
            await self.audit.log(
                action=AuthAuditLog.ACTION_FAILED_LOGIN,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="account locked",
            )
            raise AccountLocked()

        if not await _run_blocking(self.passwords.verify, user.password_hash, password):
            locked = await self.lockout.register_failure(user, now)
            if locked:
                logger.warning(
                    f"Account locked: user_id={user.id} ip={ip_address} ua={user_agent}"
                )
                await self.audit.log(
                    action=AuthAuditLog.ACTION_ACCOUNT_LOCKED,
                    user_id=user.id,
                    ip_address=ip_address,
                    user_agent=user_agent,
                    success=False,
                    metadata={"lock_until": user.lock_until.isoformat() if user.lock_until else None},
                )
                raise AccountLocked()
            await self.audit.log(
                action=AuthAuditLog.ACTION_FAILED_LOGIN,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="wrong password",
                metadata={"failed_attempts": user.failed_login_attempts},
            )
            raise InvalidCredentials()

        await self.lockout.register_success(user, now)

        if self.passwords.needs_rehash(user.password_hash):
            user.password_hash = await _run_blocking(self.passwords.hash, password)
            logger.info(f"Rehashed password for user {user.id} with current parameters")

        tokens = await self._start_session(user, ip_address, user_agent)
        await self.audit.log(
            action=AuthAuditLog.ACTION_LOGIN,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user, tokens

    async def refresh(
        self,
        raw_token: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, TokenPair]:
        """
        Rotate a refresh token.

        The presented token is consumed atomically. If it verifies but is not
        in the registry it has been used before (or revoked): every session
        of the account is revoked and ``RefreshReuseDetected`` is raised.
        """
        if not raw_token:
            raise MissingToken()

        claims = self.issuer.decode_refresh(raw_token)
        user = await self.get_user(claims.subject_id)
        if user is None:
            raise InvalidOrExpiredToken()

        now = self.issuer.now()
        consumed = await self.registry.consume(user.id, raw_token, now)
        if consumed is None:
            revoked = await self.registry.revoke_all(user.id)
            logger.warning(
                f"Refresh token reuse detected for user {user.id} (jti={claims.jti}, "
                f"ip={ip_address}, ua={user_agent}). Revoked {revoked} session(s)."
            )
            await self.audit.log(
                action=AuthAuditLog.ACTION_REFRESH_REUSE,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                success=False,
                error_message="Refresh token not found - possible token reuse",
                metadata={"jti": claims.jti, "sessions_revoked": revoked},
            )
            raise RefreshReuseDetected()

        anomaly = {}
        if consumed.ip_address and ip_address and consumed.ip_address != ip_address:
            anomaly["ip_changed"] = {"from": consumed.ip_address, "to": ip_address}
        if consumed.user_agent and user_agent and consumed.user_agent != user_agent:
            anomaly["user_agent_changed"] = {
                "from": consumed.user_agent[:100],
                "to": user_agent[:100],
            }
        if anomaly:
            # Allowed (mobile networks change addresses), but recorded
            logger.warning(f"Session anomaly detected for user {user.id}: {anomaly}")
            await self.audit.log(
                action=AuthAuditLog.ACTION_SESSION_ANOMALY,
                user_id=user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=anomaly,
            )

        tokens = await self._start_session(user, ip_address, user_agent)
        await self.audit.log(
            action=AuthAuditLog.ACTION_TOKEN_REFRESH,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return user, tokens

    async def logout(
        self,
        raw_token: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """
        Remove the record matching ``raw_token`` only.

        Never raises for missing or bad tokens; returns whether a record was
        removed.
        """
        if not raw_token:
            return False
        try:
            claims = self.issuer.decode_refresh(raw_token)
        except InvalidOrExpiredToken:
            return False

        revoked = await self.registry.revoke(claims.subject_id, raw_token)
        await self.audit.log(
            action=AuthAuditLog.ACTION_LOGOUT,
            user_id=claims.subject_id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"session_revoked": revoked},
        )
        return revoked

    async def logout_all(
        self,
        user: User,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> int:
        count = await self.registry.revoke_all(user.id)
        await self.audit.log(
            action=AuthAuditLog.ACTION_LOGOUT_ALL,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            metadata={"sessions_revoked": count},
        )
        logger.info(f"User {user.id} logged out of {count} session(s)")
        return count

    async def authenticate_access(self, raw_token: Optional[str]) -> User:
        """Resolve the account behind an access token (``me``)."""
        if not raw_token:
            raise MissingToken()
        claims = self.issuer.decode_access(raw_token)
        user = await self.get_user(claims.subject_id)
        if user is None:
            raise InvalidOrExpiredToken()
        return user

    async def identify_by_refresh(self, raw_token: Optional[str]) -> Optional[User]:
        """
        Account behind a refresh token that is still in the registry.

        Lets logout-all work after the access token has expired. Doesn't
        consume the token.
        """
        if not raw_token:
            return None
        try:
            claims = self.issuer.decode_refresh(raw_token)
        except InvalidOrExpiredToken:
            return None
        sessions = await self.registry.list_active(claims.subject_id, self.issuer.now())
        token_hash = hash_token(raw_token)
        if not any(s.token_hash == token_hash for s in sessions):
            return None
        return await self.get_user(claims.subject_id)
