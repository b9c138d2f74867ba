from .media import StreamTokenResponse
from .user import (
    AuthResponse,
    LogoutAllResponse,
    MeResponse,
    SessionListResponse,
    SessionResponse,
    UserLogin,
    UserRegister,
    UserResponse,
)

__all__ = [
    # Auth
    "AuthResponse",
    "LogoutAllResponse",
    "MeResponse",
    "SessionListResponse",
    "SessionResponse",
    "UserLogin",
    "UserRegister",
    "UserResponse",
    # Media
    "StreamTokenResponse",
]
