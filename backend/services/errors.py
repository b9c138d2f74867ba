"""Client-facing error vocabulary for the auth and media endpoints.

Every failure a client can observe is one of these fixed messages. Details
(which check failed, library error text, account state) go to the server log
and the audit table only.
"""

from typing import Optional

from fastapi import HTTPException, status


class AuthError(HTTPException):
    """Base class: a fixed status code and a fixed, deliberately vague message."""

    http_status: int = status.HTTP_401_UNAUTHORIZED
    message: str = "Unauthorized"

    def __init__(self, headers: Optional[dict] = None):
        super().__init__(
            status_code=self.http_status,
            detail=self.message,
            headers=headers,
        )


class InvalidInput(AuthError):
    """Registration payload rejected (validation failure or duplicate username)."""

    http_status = status.HTTP_400_BAD_REQUEST
    message = "Invalid input"


class MalformedCredentials(AuthError):
    """Login payload failed validation."""

    http_status = status.HTTP_400_BAD_REQUEST
    message = "Invalid credentials"


class InvalidCredentials(AuthError):
    # Same wording for unknown user and wrong password
    message = "Invalid credentials"


class MissingToken(AuthError):
    message = "Unauthorized"


class InvalidOrExpiredToken(AuthError):
    message = "Unauthorized"


class RefreshReuseDetected(AuthError):
    """A structurally valid refresh token that is no longer in the registry."""

    message = "Session invalidated"


class AccountLocked(AuthError):
    http_status = status.HTTP_403_FORBIDDEN
    message = "Account temporarily locked. Try later."


class StreamTokenMediaMismatch(AuthError):
    http_status = status.HTTP_403_FORBIDDEN
    message = "Invalid stream token"


class Forbidden(AuthError):
    """Reserved for catalogue and playlist routes served outside this service."""

    http_status = status.HTTP_403_FORBIDDEN
    message = "Not authorized"


class NotFound(AuthError):
    http_status = status.HTTP_404_NOT_FOUND
    message = "Not found"


class MediaNotFound(NotFound):
    message = "Media not found"


class RangeNotSatisfiable(AuthError):
    http_status = status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE
    message = "Requested range not satisfiable"

    def __init__(self, total_size: Optional[int] = None):
        headers = {"Content-Range": f"bytes */{total_size}"} if total_size is not None else None
        super().__init__(headers=headers)


class UpstreamFetchFailed(AuthError):
    """Storage unreachable or answered with a non-success status."""

    http_status = status.HTTP_502_BAD_GATEWAY
    message = "Failed to fetch media"
