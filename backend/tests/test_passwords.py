"""
Tests for argon2id password hashing.
"""

from unittest.mock import patch

from services.passwords import PasswordService


class TestPasswordService:
    """Hashing and fail-closed verification."""

    def test_hash_is_argon2id_and_salted(self, passwords: PasswordService):
        first = passwords.hash("s3cret-pass")
        second = passwords.hash("s3cret-pass")

        assert first.startswith("$argon2id$")
        assert first != second

    def test_verify_match(self, passwords: PasswordService):
        stored = passwords.hash("s3cret-pass")
        assert passwords.verify(stored, "s3cret-pass") is True

    def test_verify_mismatch(self, passwords: PasswordService):
        stored = passwords.hash("s3cret-pass")
        assert passwords.verify(stored, "wrong-pass") is False

    def test_verify_corrupt_hash_fails_closed(self, passwords: PasswordService):
        assert passwords.verify("$argon2id$garbage", "s3cret-pass") is False
        assert passwords.verify("", "s3cret-pass") is False

    def test_verify_unexpected_error_fails_closed(self, passwords: PasswordService):
        stored = passwords.hash("s3cret-pass")
        with patch.object(passwords._hasher, "verify", side_effect=RuntimeError("boom")):
            assert passwords.verify(stored, "s3cret-pass") is False

    def test_verify_dummy_never_matches(self, passwords: PasswordService):
        assert passwords.verify_dummy("dummy-password-for-timing") is False
        assert passwords.verify_dummy("") is False

    def test_needs_rehash_when_parameters_change(self, passwords: PasswordService):
        stored = passwords.hash("s3cret-pass")
        stronger = PasswordService(memory_cost=16, time_cost=2, parallelism=1)

        assert passwords.needs_rehash(stored) is False
        assert stronger.needs_rehash(stored) is True
