"""Brute-force lockout for password logins."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models.user import User

logger = logging.getLogger(__name__)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LockoutGuard:
    """
    Per-account failure counter with a temporary lock.

    States are Active and Locked(until). Reaching ``max_attempts``
    consecutive failures locks the account for ``lock_duration`` and resets
    the counter; a successful login resets the counter and clears the lock.

    Counter changes are single UPDATE statements evaluated by the database,
    so concurrent failures can't lose increments. The lock itself is set
    by a conditional UPDATE (``WHERE failed_login_attempts >= max``), so
    racing attempts converge on one lock.
    """

    def __init__(
        self,
        db: AsyncSession,
        max_attempts: int = 5,
        lock_duration: timedelta = timedelta(minutes=15),
    ):
        self.db = db
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration

    @classmethod
    def from_settings(cls, db: AsyncSession, settings) -> "LockoutGuard":
        return cls(
            db,
            max_attempts=settings.MAX_FAILED_LOGIN_ATTEMPTS,
            lock_duration=timedelta(minutes=settings.LOCKOUT_MINUTES),
        )

    def is_locked(self, user: User, now: datetime) -> bool:
        lock_until = ensure_utc(user.lock_until)
        return lock_until is not None and now < lock_until

    async def register_failure(self, user: User, now: datetime) -> bool:
        """
        Record a failed credential check.

        Returns True when the account is locked afterwards, either by this
        attempt or by a concurrent one.
        """
        result = await self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(failed_login_attempts=User.failed_login_attempts + 1)
            .returning(User.failed_login_attempts)
            .execution_options(synchronize_session=False)
        )
        attempts = result.scalar_one()

        if attempts >= self.max_attempts:
            lock_until = now + self.lock_duration
            result = await self.db.execute(
                update(User)
                .where(
                    User.id == user.id,
                    User.failed_login_attempts >= self.max_attempts,
                )
                .values(failed_login_attempts=0, lock_until=lock_until)
                .returning(User.id)
                .execution_options(synchronize_session=False)
            )
            if result.scalar_one_or_none() is not None:
                logger.warning(
                    f"Account locked after {attempts} failed logins: "
                    f"user_id={user.id} username={user.username} until={lock_until.isoformat()}"
                )

        await self.db.refresh(user, ["failed_login_attempts", "lock_until"])
        return self.is_locked(user, now)

    async def register_success(self, user: User, now: datetime) -> None:
        await self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(failed_login_attempts=0, lock_until=None, last_login=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(user, ["failed_login_attempts", "lock_until", "last_login"])
