"""
Tests for the session lifecycle service (register, login, refresh, logout).
"""

from unittest.mock import patch

import pytest
from sqlalchemy import select

from conftest import TEST_PASSWORD
from models.auth_audit import AuthAuditLog
from services.auth import SessionManager
from services.errors import (
    AccountLocked,
    InvalidCredentials,
    InvalidInput,
    InvalidOrExpiredToken,
    MissingToken,
    RefreshReuseDetected,
)
from services.refresh_registry import RefreshTokenRegistry


@pytest.fixture
def sessions(db_session, issuer, passwords) -> SessionManager:
    return SessionManager(db_session, issuer, passwords)


async def audit_actions(db_session) -> list[str]:
    result = await db_session.execute(select(AuthAuditLog.action).order_by(AuthAuditLog.id))
    return list(result.scalars().all())


class TestRegister:
    @pytest.mark.asyncio
    async def test_register_creates_account_and_session(self, sessions, db_session, clock):
        user, tokens = await sessions.register("NewUser", "pass1234", "1.2.3.4", "ua")

        assert user.username == "newuser"
        assert user.roles == ["user"]
        assert user.password_hash.startswith("$argon2id$")
        assert await RefreshTokenRegistry(db_session).count_active(user.id, clock()) == 1
        assert sessions.issuer.decode_access(tokens.access.token).subject_id == user.id
        assert AuthAuditLog.ACTION_REGISTER in await audit_actions(db_session)

    @pytest.mark.asyncio
    async def test_duplicate_username_is_generic_invalid_input(self, sessions, sample_user):
        with pytest.raises(InvalidInput) as exc_info:
            await sessions.register("ALICE", "pass1234")
        assert exc_info.value.detail == "Invalid input"

    @pytest.mark.asyncio
    async def test_taken_username_still_pays_hash_cost(self, sessions, sample_user):
        with patch.object(sessions.passwords, "hash", wraps=sessions.passwords.hash) as hashed:
            with pytest.raises(InvalidInput):
                await sessions.register("alice", "pass1234")
        hashed.assert_called_once_with("pass1234")


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_success(self, sessions, sample_user, db_session, clock):
        user, tokens = await sessions.login("alice", TEST_PASSWORD, "1.2.3.4", "ua")

        assert user.id == sample_user.id
        assert user.failed_login_attempts == 0
        assert await RefreshTokenRegistry(db_session).count_active(user.id, clock()) == 1

    @pytest.mark.asyncio
    async def test_unknown_user_and_wrong_password_look_the_same(self, sessions, sample_user):
        with pytest.raises(InvalidCredentials) as unknown:
            await sessions.login("nobody", TEST_PASSWORD)
        with pytest.raises(InvalidCredentials) as wrong:
            await sessions.login("alice", "wrong-password")

        assert unknown.value.status_code == wrong.value.status_code == 401
        assert unknown.value.detail == wrong.value.detail == "Invalid credentials"

    @pytest.mark.asyncio
    async def test_fifth_failure_locks(self, sessions, sample_user, db_session):
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                await sessions.login("alice", "wrong-password")

        with pytest.raises(AccountLocked):
            await sessions.login("alice", "wrong-password")

        # Correct password is not even checked while locked
        with pytest.raises(AccountLocked):
            await sessions.login("alice", TEST_PASSWORD)

        actions = await audit_actions(db_session)
        assert actions.count(AuthAuditLog.ACTION_ACCOUNT_LOCKED) == 1

    @pytest.mark.asyncio
    async def test_lock_lifts_after_duration(self, sessions, sample_user, clock):
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                await sessions.login("alice", "wrong-password")
        with pytest.raises(AccountLocked):
            await sessions.login("alice", "wrong-password")

        clock.advance(minutes=15)
        user, _ = await sessions.login("alice", TEST_PASSWORD)
        assert user.lock_until is None

    @pytest.mark.asyncio
    async def test_success_resets_failures(self, sessions, sample_user):
        for _ in range(3):
            with pytest.raises(InvalidCredentials):
                await sessions.login("alice", "wrong-password")

        user, _ = await sessions.login("alice", TEST_PASSWORD)
        assert user.failed_login_attempts == 0

        # Counter restarted: four more failures still don't lock
        for _ in range(4):
            with pytest.raises(InvalidCredentials):
                await sessions.login("alice", "wrong-password")


class TestRefresh:
    @pytest.mark.asyncio
    async def test_rotation_consumes_old_token(self, sessions, sample_user, db_session, clock):
        _, first = await sessions.login("alice", TEST_PASSWORD)

        _, second = await sessions.refresh(first.refresh.token)

        assert second.refresh.token != first.refresh.token
        active = await RefreshTokenRegistry(db_session).list_active(sample_user.id, clock())
        assert len(active) == 1

    @pytest.mark.asyncio
    async def test_reuse_revokes_every_session(self, sessions, sample_user, db_session, clock):
        _, device_a = await sessions.login("alice", TEST_PASSWORD)
        _, device_b = await sessions.login("alice", TEST_PASSWORD)
        _, rotated = await sessions.refresh(device_a.refresh.token)

        with pytest.raises(RefreshReuseDetected) as exc_info:
            await sessions.refresh(device_a.refresh.token)
        assert exc_info.value.detail == "Session invalidated"

        registry = RefreshTokenRegistry(db_session)
        assert await registry.count_active(sample_user.id, clock()) == 0
        # Both the rotated token and the other device are dead now
        with pytest.raises(RefreshReuseDetected):
            await sessions.refresh(rotated.refresh.token)
        with pytest.raises(RefreshReuseDetected):
            await sessions.refresh(device_b.refresh.token)

        assert AuthAuditLog.ACTION_REFRESH_REUSE in await audit_actions(db_session)

    @pytest.mark.asyncio
    async def test_missing_and_invalid_tokens(self, sessions, sample_user):
        with pytest.raises(MissingToken):
            await sessions.refresh(None)
        with pytest.raises(InvalidOrExpiredToken):
            await sessions.refresh("garbage")

    @pytest.mark.asyncio
    async def test_access_token_cannot_refresh(self, sessions, sample_user):
        _, tokens = await sessions.login("alice", TEST_PASSWORD)
        with pytest.raises(InvalidOrExpiredToken):
            await sessions.refresh(tokens.access.token)

    @pytest.mark.asyncio
    async def test_expired_refresh_rejected(self, sessions, sample_user, clock):
        _, tokens = await sessions.login("alice", TEST_PASSWORD)
        clock.advance(days=7, seconds=1)
        with pytest.raises(InvalidOrExpiredToken):
            await sessions.refresh(tokens.refresh.token)

    @pytest.mark.asyncio
    async def test_refresh_at_expiry_second_rotates(self, sessions, sample_user, db_session, clock):
        _, tokens = await sessions.login("alice", TEST_PASSWORD)
        _, other_device = await sessions.login("alice", TEST_PASSWORD)
        clock.current = tokens.refresh.expires_at

        _, rotated = await sessions.refresh(tokens.refresh.token)

        assert rotated.refresh.token != tokens.refresh.token
        assert AuthAuditLog.ACTION_REFRESH_REUSE not in await audit_actions(db_session)
        # The other session is untouched
        _, still_valid = await sessions.refresh(other_device.refresh.token)
        assert still_valid.refresh.token

    @pytest.mark.asyncio
    async def test_address_change_is_recorded_not_rejected(self, sessions, sample_user, db_session):
        _, tokens = await sessions.login("alice", TEST_PASSWORD, "1.1.1.1", "phone")

        await sessions.refresh(tokens.refresh.token, "2.2.2.2", "phone")

        assert AuthAuditLog.ACTION_SESSION_ANOMALY in await audit_actions(db_session)


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_removes_only_that_session(self, sessions, sample_user, db_session, clock):
        _, device_a = await sessions.login("alice", TEST_PASSWORD)
        _, device_b = await sessions.login("alice", TEST_PASSWORD)

        assert await sessions.logout(device_a.refresh.token) is True

        registry = RefreshTokenRegistry(db_session)
        assert await registry.count_active(sample_user.id, clock()) == 1
        _, rotated = await sessions.refresh(device_b.refresh.token)
        assert rotated.refresh.token

    @pytest.mark.asyncio
    async def test_logout_never_raises(self, sessions):
        assert await sessions.logout(None) is False
        assert await sessions.logout("garbage") is False

    @pytest.mark.asyncio
    async def test_logout_all(self, sessions, sample_user, db_session, clock):
        for _ in range(3):
            await sessions.login("alice", TEST_PASSWORD)

        assert await sessions.logout_all(sample_user) == 3
        assert await RefreshTokenRegistry(db_session).count_active(sample_user.id, clock()) == 0


class TestAuthenticateAccess:
    @pytest.mark.asyncio
    async def test_me_resolves_account(self, sessions, sample_user):
        _, tokens = await sessions.login("alice", TEST_PASSWORD)
        user = await sessions.authenticate_access(tokens.access.token)
        assert user.username == "alice"

    @pytest.mark.asyncio
    async def test_missing_vs_invalid(self, sessions):
        with pytest.raises(MissingToken):
            await sessions.authenticate_access(None)
        with pytest.raises(InvalidOrExpiredToken):
            await sessions.authenticate_access("garbage")

    @pytest.mark.asyncio
    async def test_identify_by_refresh_requires_live_record(self, sessions, sample_user):
        _, tokens = await sessions.login("alice", TEST_PASSWORD)

        user = await sessions.identify_by_refresh(tokens.refresh.token)
        assert user is not None and user.id == sample_user.id

        await sessions.logout(tokens.refresh.token)
        assert await sessions.identify_by_refresh(tokens.refresh.token) is None
