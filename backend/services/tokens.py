"""Signed token issuance and verification.

Three kinds of compact JWS tokens, each signed with its own secret:

- access: short-lived, carries subject id, username and roles
- refresh: long-lived, carries subject id and a per-issuance ``jti``
- stream: very short-lived capability binding a subject to one media item

Every verification failure is normalized to ``InvalidOrExpiredToken``;
library error text never leaves this module.
"""

import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from uuid import uuid4

from jose import JWTError, jwt

from services.errors import InvalidOrExpiredToken, StreamTokenMediaMismatch

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_REFRESH = "refresh"
TOKEN_TYPE_STREAM = "stream"

PUBLIC_SUBJECT = "public"
MIN_STREAM_TTL_SECONDS = 1
MAX_STREAM_TTL_SECONDS = 300


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_token(token: str) -> str:
    """
    SHA-256 hex digest of a raw token, used as the registry key.

    A fast unsalted hash is fine here: tokens are high-entropy and unique.
    """
    return hashlib.sha256(token.encode()).hexdigest()


@dataclass
class IssuedToken:
    token: str
    issued_at: datetime
    expires_at: datetime
    jti: Optional[str] = None

    @property
    def expires_in(self) -> int:
        """Lifetime in seconds as announced to clients."""
        return int((self.expires_at - self.issued_at).total_seconds())


@dataclass
class TokenPair:
    """Represents a pair of access and refresh tokens."""
    access: IssuedToken
    refresh: IssuedToken


@dataclass
class AccessTokenClaims:
    subject_id: int
    username: str
    roles: List[str]
    issued_at: datetime
    expires_at: datetime


@dataclass
class RefreshTokenClaims:
    subject_id: int
    jti: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class StreamTokenClaims:
    subject: str
    media_id: str
    issued_at: datetime
    expires_at: datetime

    @property
    def is_public(self) -> bool:
        return self.subject == PUBLIC_SUBJECT


def _from_ts(value) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _parse_subject_id(payload: dict) -> int:
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise InvalidOrExpiredToken()


class TokenIssuer:
    """
    Creates and verifies access, refresh and stream tokens.

    Secrets and the clock are injected so tests and secret rotation don't
    depend on process-wide state. Expiry is checked against the injected
    clock: a token is accepted while ``now <= exp`` and rejected after.
    """

    def __init__(
        self,
        access_secret: str,
        refresh_secret: str,
        stream_secret: str,
        *,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        stream_ttl_seconds: int = 60,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        clock: Optional[Clock] = None,
    ):
        self._secrets = {
            TOKEN_TYPE_ACCESS: access_secret,
            TOKEN_TYPE_REFRESH: refresh_secret,
            TOKEN_TYPE_STREAM: stream_secret,
        }
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.stream_ttl_seconds = self._check_stream_ttl(stream_ttl_seconds)
        self.issuer = issuer
        self.audience = audience
        self._clock = clock or utcnow

    @classmethod
    def from_settings(cls, settings, clock: Optional[Clock] = None) -> "TokenIssuer":
        return cls(
            settings.JWT_ACCESS_SECRET,
            settings.JWT_REFRESH_SECRET,
            settings.STREAM_SECRET,
            algorithm=settings.JWT_ALGORITHM,
            access_ttl=timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_ttl=timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
            stream_ttl_seconds=settings.STREAM_TOKEN_TTL_SECONDS,
            issuer=settings.JWT_ISSUER,
            audience=settings.JWT_AUDIENCE,
            clock=clock,
        )

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _check_stream_ttl(ttl_seconds: int) -> int:
        if not MIN_STREAM_TTL_SECONDS <= ttl_seconds <= MAX_STREAM_TTL_SECONDS:
            raise ValueError(
                f"Stream token TTL must be between {MIN_STREAM_TTL_SECONDS} and "
                f"{MAX_STREAM_TTL_SECONDS} seconds, got {ttl_seconds}"
            )
        return ttl_seconds

    # --- encoding ---

    def _encode(self, token_type: str, claims: dict, ttl: timedelta) -> IssuedToken:
        issued_at = int(self.now().timestamp())
        expires_at = issued_at + int(ttl.total_seconds())
        payload = dict(claims)
        payload.update({"iat": issued_at, "exp": expires_at, "type": token_type})
        if self.issuer:
            payload["iss"] = self.issuer
        if self.audience:
            payload["aud"] = self.audience
        token = jwt.encode(payload, self._secrets[token_type], algorithm=self.algorithm)
        return IssuedToken(
            token=token,
            issued_at=_from_ts(issued_at),
            expires_at=_from_ts(expires_at),
            jti=claims.get("jti"),
        )

    def issue_access(self, user) -> IssuedToken:
        return self._encode(
            TOKEN_TYPE_ACCESS,
            {
                "sub": str(user.id),
                "username": user.username,
                "roles": list(user.roles or []),
            },
            self.access_ttl,
        )

    def issue_refresh(self, user, jti: Optional[str] = None) -> IssuedToken:
        # The jti only makes each refresh token unique, even for tokens
        # minted for the same subject within the same second.
        return self._encode(
            TOKEN_TYPE_REFRESH,
            {"sub": str(user.id), "jti": jti or str(uuid4())},
            self.refresh_ttl,
        )

    def issue_pair(self, user) -> TokenPair:
        return TokenPair(access=self.issue_access(user), refresh=self.issue_refresh(user))

    def issue_stream_token(
        self,
        subject_id: Optional[int],
        media_id,
        ttl_seconds: Optional[int] = None,
    ) -> IssuedToken:
        ttl = self._check_stream_ttl(ttl_seconds) if ttl_seconds is not None else self.stream_ttl_seconds
        subject = str(subject_id) if subject_id is not None else PUBLIC_SUBJECT
        return self._encode(
            TOKEN_TYPE_STREAM,
            {"sub": subject, "sid": str(media_id)},
            timedelta(seconds=ttl),
        )

    # --- decoding ---

    def _decode(self, token: Optional[str], token_type: str) -> dict:
        if not token or not isinstance(token, str):
            raise InvalidOrExpiredToken()

        decode_kwargs = {
            "algorithms": [self.algorithm],
            # Expiry is checked below against the injected clock
            "options": {"verify_exp": False, "verify_aud": self.audience is not None},
        }
        if self.audience:
            decode_kwargs["audience"] = self.audience
        if self.issuer:
            decode_kwargs["issuer"] = self.issuer

        try:
            payload = jwt.decode(token.strip(), self._secrets[token_type], **decode_kwargs)
        except JWTError as e:
            logger.debug(f"Rejected {token_type} token: {e}")
            raise InvalidOrExpiredToken()

        if payload.get("type") != token_type:
            logger.debug(f"Rejected token: expected type {token_type}, got {payload.get('type')}")
            raise InvalidOrExpiredToken()

        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            raise InvalidOrExpiredToken()
        if self.now().timestamp() > exp:
            raise InvalidOrExpiredToken()

        if not isinstance(payload.get("iat"), (int, float)):
            raise InvalidOrExpiredToken()

        return payload

    def decode_access(self, token: Optional[str]) -> AccessTokenClaims:
        payload = self._decode(token, TOKEN_TYPE_ACCESS)
        roles = payload.get("roles")
        username = payload.get("username")
        if not isinstance(roles, list) or not isinstance(username, str):
            raise InvalidOrExpiredToken()
        return AccessTokenClaims(
            subject_id=_parse_subject_id(payload),
            username=username,
            roles=[str(r) for r in roles],
            issued_at=_from_ts(payload["iat"]),
            expires_at=_from_ts(payload["exp"]),
        )

    def decode_refresh(self, token: Optional[str]) -> RefreshTokenClaims:
        payload = self._decode(token, TOKEN_TYPE_REFRESH)
        jti = payload.get("jti")
        if not isinstance(jti, str) or not jti:
            raise InvalidOrExpiredToken()
        return RefreshTokenClaims(
            subject_id=_parse_subject_id(payload),
            jti=jti,
            issued_at=_from_ts(payload["iat"]),
            expires_at=_from_ts(payload["exp"]),
        )

    def verify_stream_token(self, token: Optional[str]) -> StreamTokenClaims:
        payload = self._decode(token, TOKEN_TYPE_STREAM)
        subject = payload.get("sub")
        media_id = payload.get("sid")
        if not isinstance(subject, str) or not subject or media_id is None:
            raise InvalidOrExpiredToken()
        return StreamTokenClaims(
            subject=subject,
            media_id=str(media_id),
            issued_at=_from_ts(payload["iat"]),
            expires_at=_from_ts(payload["exp"]),
        )

    def verify_stream_token_for(self, token: Optional[str], media_id) -> StreamTokenClaims:
        """Verify a stream token and require it to be bound to ``media_id``."""
        claims = self.verify_stream_token(token)
        if claims.media_id != str(media_id):
            logger.warning(
                f"Stream token for media {claims.media_id} presented for media {media_id} "
                f"(subject={claims.subject})"
            )
            raise StreamTokenMediaMismatch()
        return claims
