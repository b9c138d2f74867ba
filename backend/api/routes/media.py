"""Media routes: stream capability tokens and the authenticated media proxy."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.security import HTTPAuthorizationCredentials
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    access_token_candidates,
    authenticate_request,
    get_current_user,
    get_media_proxy,
    get_session_manager,
    get_token_issuer,
    security,
)
from db.database import get_db
from models.song import Song
from models.user import User
from schemas.media import StreamTokenResponse
from services.auth import SessionManager
from services.cookies import CookiePolicy, get_cookie_policy
from services.errors import MediaNotFound
from services.media_proxy import MediaProxy
from services.tokens import TokenIssuer

router = APIRouter(prefix="/media", tags=["media"])
logger = logging.getLogger(__name__)


@dataclass
class StreamSubject:
    """Who is allowed to stream, and by which credential."""

    subject: str
    via: str  # "stream_token" | "session"


async def _get_song(db: AsyncSession, media_id: int) -> Song:
    result = await db.execute(select(Song).where(Song.id == media_id))
    song = result.scalar_one_or_none()
    if song is None:
        raise MediaNotFound()
    return song


async def resolve_stream_subject(
    media_id: int,
    request: Request,
    t: Optional[str] = Query(default=None),
    token: Optional[str] = Query(default=None),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    issuer: TokenIssuer = Depends(get_token_issuer),
    sessions: SessionManager = Depends(get_session_manager),
    policy: CookiePolicy = Depends(get_cookie_policy),
) -> StreamSubject:
    """
    Authorize a stream request.

    A stream token, when present, decides alone: it must verify and be bound
    to ``media_id`` (401 / 403 otherwise), and the session is not consulted.
    Without one the caller needs a valid session.
    """
    stream_token = t or token
    if stream_token:
        claims = issuer.verify_stream_token_for(stream_token, media_id)
        return StreamSubject(subject=claims.subject, via="stream_token")

    user = await authenticate_request(
        sessions, access_token_candidates(request, credentials, policy)
    )
    return StreamSubject(subject=str(user.id), via="session")


@router.get("/stream-token/{media_id}", response_model=StreamTokenResponse)
async def create_stream_token(
    media_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    issuer: TokenIssuer = Depends(get_token_issuer),
):
    """Mint a short-lived token that lets a player fetch one media item."""
    song = await _get_song(db, media_id)
    issued = issuer.issue_stream_token(current_user.id, song.id)
    return StreamTokenResponse(token=issued.token, expires_in=issued.expires_in)


@router.get("/stream/{media_id}")
async def stream_media(
    media_id: int,
    request: Request,
    subject: StreamSubject = Depends(resolve_stream_subject),
    db: AsyncSession = Depends(get_db),
    proxy: MediaProxy = Depends(get_media_proxy),
):
    """
    Relay media bytes from storage.

    Honors ``Range``; the storage reference never reaches the client.
    """
    song = await _get_song(db, media_id)
    media = await proxy.open(
        song.storage_ref,
        request.headers.get("range"),
        media_id=song.id,
        content_type=song.content_type,
    )
    logger.debug(
        f"Streaming media {song.id} to subject {subject.subject} via {subject.via} "
        f"(status {media.status_code})"
    )
    return media.to_response()
