from __future__ import annotations

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from zust.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """argon2id password hashing.

    ``verify`` never raises: a wrong password and an unreadable digest both
    come back as ``False`` so login flows only branch on a boolean.
    """

    def __init__(self, hasher: PasswordHasher | None = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Burned on unknown usernames so lookups and mismatches cost the same
        self._dummy_digest = self._hasher.hash("zust-timing-equaliser")

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, digest: str | None, plaintext: str) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_digest_unreadable", error_type=type(exc).__name__)
            return False

    def verify_dummy(self, plaintext: str) -> None:
        self.verify(self._dummy_digest, plaintext)

