from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol

from zust.config import Settings
from zust.logging import get_logger
from zust.service.errors import (
    ForbiddenError,
    StaleVersionError,
    StorageUnavailable,
    WrongTokenKindError,
)
from zust.service.tokens import TokenClaims, TokenCodec, TokenKind
from zust.storage.errors import StorageUnavailableError
from zust.storage.models import Account

logger = get_logger(__name__)

REFRESH_ENDPOINT = "/auth/token/refresh"


class VersionStore(Protocol):
    def get_token_version(self, account_id: str) -> Optional[int]: ...

    def increment_token_version(
        self, account_id: str, *, expected: Optional[int] = None
    ) -> Optional[int]: ...


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    version: int
    token_type: str = "bearer"


def required_kind(path: str) -> TokenKind:
    """Refresh tokens are only good on the refresh endpoint; access tokens everywhere else."""
    if path.rstrip("/") == REFRESH_ENDPOINT:
        return TokenKind.REFRESH
    return TokenKind.ACCESS


class SessionAuthority:
    """Issues, verifies and invalidates bearer tokens against the version store.

    There is no server-side session: a token is valid while its signature
    checks out, it has not expired, and its embedded version equals the
    account's current ``token_version``.
    """

    def __init__(self, settings: Settings, store: VersionStore, codec: TokenCodec) -> None:
        self.store = store
        self.codec = codec
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)

    def _current_version(self, account_id: str) -> Optional[int]:
        try:
            return self.store.get_token_version(account_id)
        except StorageUnavailableError as exc:
            logger.error("token_version_lookup_failed", account_id=account_id, error=str(exc))
            raise StorageUnavailable() from exc

    def _increment(self, account_id: str, expected: Optional[int] = None) -> Optional[int]:
        try:
            return self.store.increment_token_version(account_id, expected=expected)
        except StorageUnavailableError as exc:
            logger.error("token_version_increment_failed", account_id=account_id, error=str(exc))
            raise StorageUnavailable() from exc

    def _mint(self, subject: str, version: int, role: str) -> TokenPair:
        return TokenPair(
            access_token=self.codec.issue(
                subject, TokenKind.ACCESS, version, self.access_ttl, role=role
            ),
            refresh_token=self.codec.issue(
                subject, TokenKind.REFRESH, version, self.refresh_ttl, role=role
            ),
            version=version,
        )

    def issue(self, account: Account) -> TokenPair:
        if not account.is_active:
            raise ForbiddenError("Account is not active", detail={"status": account.status.value})
        pair = self._mint(account.id, account.token_version, account.role)
        logger.info("tokens_issued", account_id=account.id, version=account.token_version)
        return pair

    def verify(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        claims = self.codec.parse(token)
        current = self._current_version(claims.subject)
        if current is None or current != claims.version:
            raise StaleVersionError("Token version is no longer valid")
        if claims.kind != expected_kind:
            raise WrongTokenKindError(
                "Invalid access token: unsuitable token type for this request"
            )
        return claims

    def verify_for_path(self, token: str, path: str) -> TokenClaims:
        return self.verify(token, required_kind(path))

    def invalidate(self, account_id: str) -> int:
        """Burn every outstanding token for the account; returns the new version."""
        version = self._increment(account_id)
        if version is None:
            raise StaleVersionError("Account no longer exists")
        logger.info("tokens_invalidated", account_id=account_id, version=version)
        return version

    def refresh(self, claims: TokenClaims) -> TokenPair:
        """Burn the presented refresh token's version and mint a fresh pair.

        The increment is conditional on the version the refresh token carries,
        so a refresh token can be spent at most once even under concurrent use.
        """
        if claims.kind != TokenKind.REFRESH:
            raise WrongTokenKindError(
                "Invalid access token: unsuitable token type for this request"
            )
        version = self._increment(claims.subject, expected=claims.version)
        if version is None:
            logger.warning("refresh_token_reused", account_id=claims.subject, version=claims.version)
            raise StaleVersionError("Token version is no longer valid")
        logger.info("tokens_refreshed", account_id=claims.subject, version=version)
        return self._mint(claims.subject, version, claims.role)
