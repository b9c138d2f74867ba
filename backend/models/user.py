from db.database import Base
from sqlalchemy import JSON, CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func


DEFAULT_ROLES = ["user"]


def normalize_username(username: str) -> str:
    """Usernames are stored trimmed and lowercase."""
    return username.strip().lower()


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(48), nullable=False, unique=True, index=True)
    display_name = Column(String(100), nullable=True)
    # NULLs don't collide under a unique constraint, so email stays optional
    email = Column(String(254), nullable=True, unique=True)
    # SECURITY: argon2id encoded hash. The raw password is never stored.
    password_hash = Column(String(255), nullable=False)
    roles = Column(JSON, nullable=False, default=lambda: list(DEFAULT_ROLES))

    # Lockout state. The account is locked while now < lock_until.
    failed_login_attempts = Column(Integer, nullable=False, default=0, server_default="0")
    lock_until = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_login = Column(DateTime(timezone=True), nullable=True)

    refresh_tokens = relationship(
        "RefreshToken",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    auth_audit_logs = relationship(
        "AuthAuditLog", back_populates="user"
    )
    songs = relationship("Song", back_populates="uploader")

    __table_args__ = (
        CheckConstraint("failed_login_attempts >= 0", name="ck_users_failed_attempts_non_negative"),
    )

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}')>"
