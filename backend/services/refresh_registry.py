"""Outstanding refresh tokens, keyed by token hash."""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from models.refresh_token import RefreshToken
from services.tokens import hash_token

logger = logging.getLogger(__name__)


@dataclass
class ConsumedRecord:
    """Snapshot of a registry row removed by ``consume``."""
    id: int
    user_id: int
    ip_address: Optional[str]
    user_agent: Optional[str]
    expires_at: datetime


class RefreshTokenRegistry:
    """
    Store and consume refresh-token records.

    ``consume`` is a single ``DELETE ... RETURNING``: of two concurrent
    requests presenting the same token, exactly one gets the row back and
    the other sees nothing. That miss is what reuse detection reacts to.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def store(
        self,
        user_id: int,
        raw_token: str,
        expires_at: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RefreshToken:
        record = RefreshToken(
            user_id=user_id,
            token_hash=hash_token(raw_token),
            ip_address=ip_address[:45] if ip_address else None,
            user_agent=user_agent[:500] if user_agent else None,
            expires_at=expires_at,
        )
        self.db.add(record)
        await self.db.flush()
        return record

    async def consume(
        self, user_id: int, raw_token: str, now: datetime
    ) -> Optional[ConsumedRecord]:
        """
        Atomically remove the matching unexpired record; None if absent.

        A record stays valid through its ``expires_at`` second, the same
        inclusive boundary the token signature check uses.
        """
        result = await self.db.execute(
            delete(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.token_hash == hash_token(raw_token),
                RefreshToken.expires_at >= now,
            )
            .returning(
                RefreshToken.id,
                RefreshToken.user_id,
                RefreshToken.ip_address,
                RefreshToken.user_agent,
                RefreshToken.expires_at,
            )
            .execution_options(synchronize_session=False)
        )
        row = result.first()
        if row is None:
            return None
        return ConsumedRecord(
            id=row.id,
            user_id=row.user_id,
            ip_address=row.ip_address,
            user_agent=row.user_agent,
            expires_at=row.expires_at,
        )

    async def revoke(self, user_id: int, raw_token: str) -> bool:
        """Remove one record (logout). Returns True if it existed."""
        result = await self.db.execute(
            delete(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.token_hash == hash_token(raw_token),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0

    async def revoke_all(self, user_id: int) -> int:
        """Remove every record of ``user_id``. Returns how many were removed."""
        result = await self.db.execute(
            delete(RefreshToken)
            .where(RefreshToken.user_id == user_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def list_active(self, user_id: int, now: datetime) -> list[RefreshToken]:
        result = await self.db.execute(
            select(RefreshToken)
            .where(
                RefreshToken.user_id == user_id,
                RefreshToken.expires_at >= now,
            )
            .order_by(RefreshToken.created_at.desc(), RefreshToken.id.desc())
        )
        return list(result.scalars().all())

    async def count_active(self, user_id: int, now: datetime) -> int:
        result = await self.db.execute(
            select(func.count(RefreshToken.id)).where(
                RefreshToken.user_id == user_id,
                RefreshToken.expires_at >= now,
            )
        )
        return result.scalar_one()

    async def cleanup_expired(self, now: datetime) -> int:
        result = await self.db.execute(
            delete(RefreshToken)
            .where(RefreshToken.expires_at < now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount
