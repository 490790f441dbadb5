"""Tests for argon2id credential hashing."""

from argon2 import PasswordHasher

from zust.service.passwords import CredentialHasher


def _fast_hasher() -> CredentialHasher:
    return CredentialHasher(PasswordHasher(time_cost=1, memory_cost=8, parallelism=1))


class TestCredentialHasher:
    def test_hash_then_verify(self):
        hasher = _fast_hasher()
        digest = hasher.hash("CorrectHorse1!")
        assert digest.startswith("$argon2id$")
        assert hasher.verify(digest, "CorrectHorse1!") is True

    def test_wrong_password_is_false(self):
        hasher = _fast_hasher()
        digest = hasher.hash("CorrectHorse1!")
        assert hasher.verify(digest, "correcthorse1!") is False

    def test_same_password_hashes_differently(self):
        """A fresh salt per hash means equal passwords never share a digest."""
        hasher = _fast_hasher()
        assert hasher.hash("same-password") != hasher.hash("same-password")

    def test_missing_digest_is_false(self):
        hasher = _fast_hasher()
        assert hasher.verify(None, "anything") is False
        assert hasher.verify("", "anything") is False

    def test_unreadable_digest_is_false_not_an_error(self):
        hasher = _fast_hasher()
        assert hasher.verify("not-an-argon2-digest", "anything") is False
        assert hasher.verify("$2b$12$abcdefghijklmnopqrstuu", "anything") is False

    def test_default_hasher_is_argon2id(self):
        digest = CredentialHasher().hash("CorrectHorse1!")
        assert digest.startswith("$argon2id$")

    def test_verify_dummy_never_raises(self):
        _fast_hasher().verify_dummy("whatever")
