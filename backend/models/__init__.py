from .auth_audit import AuthAuditLog
from .refresh_token import RefreshToken
from .song import Song
from .user import User

__all__ = [
    "AuthAuditLog",
    "RefreshToken",
    "Song",
    "User",
]
