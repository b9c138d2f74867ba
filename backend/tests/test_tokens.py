"""
Tests for access, refresh and stream token issuance and verification.
"""

from types import SimpleNamespace

import pytest
from jose import jwt

from services.errors import InvalidOrExpiredToken, StreamTokenMediaMismatch
from services.tokens import (
    PUBLIC_SUBJECT,
    TokenIssuer,
    hash_token,
)


def make_user(user_id: int = 7, username: str = "alice", roles=None):
    return SimpleNamespace(id=user_id, username=username, roles=roles or ["user"])


class TestAccessTokens:
    """Access token round trips and rejection paths."""

    def test_access_token_carries_identity(self, issuer: TokenIssuer):
        issued = issuer.issue_access(make_user(roles=["user", "admin"]))

        claims = issuer.decode_access(issued.token)
        assert claims.subject_id == 7
        assert claims.username == "alice"
        assert claims.roles == ["user", "admin"]
        assert issued.expires_in == 15 * 60

    def test_access_token_valid_until_exact_expiry(self, issuer: TokenIssuer, clock):
        issued = issuer.issue_access(make_user())

        clock.advance(minutes=15)
        assert issuer.decode_access(issued.token).subject_id == 7

        clock.advance(seconds=1)
        with pytest.raises(InvalidOrExpiredToken):
            issuer.decode_access(issued.token)

    def test_tampered_token_rejected(self, issuer: TokenIssuer):
        token = issuer.issue_access(make_user()).token
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

        with pytest.raises(InvalidOrExpiredToken):
            issuer.decode_access(tampered)

    @pytest.mark.parametrize("token", [None, "", "not-a-jwt", "a.b.c"])
    def test_garbage_rejected(self, issuer: TokenIssuer, token):
        with pytest.raises(InvalidOrExpiredToken):
            issuer.decode_access(token)

    def test_refresh_token_is_not_an_access_token(self, issuer: TokenIssuer):
        refresh = issuer.issue_refresh(make_user()).token

        with pytest.raises(InvalidOrExpiredToken):
            issuer.decode_access(refresh)

    def test_token_signed_with_other_secret_rejected(self, issuer: TokenIssuer, clock):
        other = TokenIssuer(
            "another-access-secret",
            "another-refresh-secret",
            "another-stream-secret",
            issuer="music-stream",
            audience="music-stream-users",
            clock=clock,
        )
        with pytest.raises(InvalidOrExpiredToken):
            issuer.decode_access(other.issue_access(make_user()).token)

    def test_wrong_type_claim_rejected(self, issuer: TokenIssuer, clock):
        now = int(clock().timestamp())
        forged = jwt.encode(
            {
                "sub": "7",
                "username": "alice",
                "roles": [],
                "iat": now,
                "exp": now + 60,
                "type": "refresh",
                "iss": "music-stream",
                "aud": "music-stream-users",
            },
            "test-access-secret",
            algorithm="HS256",
        )
        with pytest.raises(InvalidOrExpiredToken):
            issuer.decode_access(forged)

    def test_wrong_audience_rejected(self, issuer: TokenIssuer, clock):
        now = int(clock().timestamp())
        forged = jwt.encode(
            {
                "sub": "7",
                "username": "alice",
                "roles": [],
                "iat": now,
                "exp": now + 60,
                "type": "access",
                "iss": "music-stream",
                "aud": "someone-else",
            },
            "test-access-secret",
            algorithm="HS256",
        )
        with pytest.raises(InvalidOrExpiredToken):
            issuer.decode_access(forged)


class TestRefreshTokens:
    """Refresh tokens are unique per issuance."""

    def test_refresh_tokens_unique_within_same_second(self, issuer: TokenIssuer):
        user = make_user()
        first = issuer.issue_refresh(user)
        second = issuer.issue_refresh(user)

        assert first.token != second.token
        assert first.jti != second.jti
        assert hash_token(first.token) != hash_token(second.token)

    def test_refresh_claims(self, issuer: TokenIssuer):
        issued = issuer.issue_refresh(make_user(), jti="fixed-jti")

        claims = issuer.decode_refresh(issued.token)
        assert claims.subject_id == 7
        assert claims.jti == "fixed-jti"
        assert issued.expires_in == 7 * 24 * 3600

    def test_refresh_expiry(self, issuer: TokenIssuer, clock):
        issued = issuer.issue_refresh(make_user())

        clock.advance(days=7, seconds=1)
        with pytest.raises(InvalidOrExpiredToken):
            issuer.decode_refresh(issued.token)

    def test_hash_token_is_sha256_hex(self):
        digest = hash_token("abc")
        assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestStreamTokens:
    """Stream capability tokens."""

    def test_stream_token_round_trip(self, issuer: TokenIssuer):
        issued = issuer.issue_stream_token(7, 42)

        claims = issuer.verify_stream_token(issued.token)
        assert claims.subject == "7"
        assert claims.media_id == "42"
        assert not claims.is_public
        assert issued.expires_in == 60

    def test_public_subject(self, issuer: TokenIssuer):
        claims = issuer.verify_stream_token(issuer.issue_stream_token(None, 42).token)
        assert claims.subject == PUBLIC_SUBJECT
        assert claims.is_public

    def test_valid_at_exact_expiry_rejected_after(self, issuer: TokenIssuer, clock):
        token = issuer.issue_stream_token(7, 42, ttl_seconds=60).token

        clock.advance(seconds=60)
        assert issuer.verify_stream_token_for(token, 42).media_id == "42"

        clock.advance(seconds=1)
        with pytest.raises(InvalidOrExpiredToken):
            issuer.verify_stream_token_for(token, 42)

    def test_media_mismatch(self, issuer: TokenIssuer):
        token = issuer.issue_stream_token(7, 42).token

        with pytest.raises(StreamTokenMediaMismatch) as exc_info:
            issuer.verify_stream_token_for(token, 43)
        assert exc_info.value.status_code == 403

    def test_media_id_compared_as_string(self, issuer: TokenIssuer):
        token = issuer.issue_stream_token(7, 42).token
        assert issuer.verify_stream_token_for(token, "42").media_id == "42"

    @pytest.mark.parametrize("ttl", [0, -5, 301])
    def test_ttl_out_of_range(self, issuer: TokenIssuer, ttl):
        with pytest.raises(ValueError):
            issuer.issue_stream_token(7, 42, ttl_seconds=ttl)

    def test_ttl_bounds_accepted(self, issuer: TokenIssuer):
        assert issuer.issue_stream_token(7, 42, ttl_seconds=1).expires_in == 1
        assert issuer.issue_stream_token(7, 42, ttl_seconds=300).expires_in == 300

    def test_session_token_is_not_a_stream_token(self, issuer: TokenIssuer):
        access = issuer.issue_access(make_user()).token

        with pytest.raises(InvalidOrExpiredToken):
            issuer.verify_stream_token(access)

    def test_from_settings_rejects_bad_default_ttl(self, clock):
        settings = SimpleNamespace(
            JWT_ACCESS_SECRET="a",
            JWT_REFRESH_SECRET="b",
            STREAM_SECRET="c",
            JWT_ALGORITHM="HS256",
            ACCESS_TOKEN_EXPIRE_MINUTES=15,
            REFRESH_TOKEN_EXPIRE_DAYS=7,
            STREAM_TOKEN_TTL_SECONDS=600,
            JWT_ISSUER=None,
            JWT_AUDIENCE=None,
        )
        with pytest.raises(ValueError):
            TokenIssuer.from_settings(settings, clock=clock)
