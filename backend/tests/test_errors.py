"""
Tests for the client-facing error vocabulary.
"""

import pytest

from services.errors import (
    AccountLocked,
    Forbidden,
    InvalidCredentials,
    InvalidInput,
    InvalidOrExpiredToken,
    MalformedCredentials,
    MediaNotFound,
    MissingToken,
    NotFound,
    RangeNotSatisfiable,
    RefreshReuseDetected,
    StreamTokenMediaMismatch,
    UpstreamFetchFailed,
)


class TestErrorVocabulary:
    @pytest.mark.parametrize(
        "error,status_code,detail",
        [
            (InvalidInput, 400, "Invalid input"),
            (MalformedCredentials, 400, "Invalid credentials"),
            (InvalidCredentials, 401, "Invalid credentials"),
            (MissingToken, 401, "Unauthorized"),
            (InvalidOrExpiredToken, 401, "Unauthorized"),
            (RefreshReuseDetected, 401, "Session invalidated"),
            (AccountLocked, 403, "Account temporarily locked. Try later."),
            (StreamTokenMediaMismatch, 403, "Invalid stream token"),
            (Forbidden, 403, "Not authorized"),
            (NotFound, 404, "Not found"),
            (MediaNotFound, 404, "Media not found"),
            (UpstreamFetchFailed, 502, "Failed to fetch media"),
        ],
    )
    def test_fixed_status_and_message(self, error, status_code, detail):
        exc = error()
        assert exc.status_code == status_code
        assert exc.detail == detail

    def test_range_not_satisfiable_reports_size(self):
        exc = RangeNotSatisfiable(20)
        assert exc.status_code == 416
        assert exc.headers == {"Content-Range": "bytes */20"}

    def test_range_not_satisfiable_without_size(self):
        assert RangeNotSatisfiable().headers is None
