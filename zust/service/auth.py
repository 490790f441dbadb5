from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

from zust.logging import get_logger
from zust.service.errors import (
    BadRequestError,
    ForbiddenError,
    NotFoundError,
    ServerError,
    StorageUnavailable,
)
from zust.service.email import EmailService
from zust.service.media import LocalMediaStorage
from zust.service.passwords import CredentialHasher
from zust.service.sessions import SessionAuthority, TokenPair
from zust.service.tokens import TokenClaims
from zust.service.verification import VerificationTokens
from zust.storage.errors import ConstraintViolation, StorageUnavailableError
from zust.storage.models import Account, AccountStatus

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"

_CONFLICT_MESSAGES = {
    "email": "Email is already taken",
    "username": "Username is already taken",
}


def conflict_error(exc: ConstraintViolation) -> BadRequestError:
    """Turn a uniqueness violation into a 400 naming the offending field."""
    field = exc.field
    if not field and exc.constraint:
        field = next((name for name in _CONFLICT_MESSAGES if name in exc.constraint), None)
    message = _CONFLICT_MESSAGES.get(field or "", "Value is already taken")
    return BadRequestError(message, detail={"field": field})


class AccountStore(Protocol):
    def create_account_with_password(
        self, email: str, username: str, password_hash: str, **kwargs
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def activate_account(self, account_id: str) -> Optional[Account]: ...

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]: ...

    def get_token_version(self, account_id: str) -> Optional[int]: ...

    def increment_token_version(
        self, account_id: str, *, expected: Optional[int] = None
    ) -> Optional[int]: ...


@dataclass
class LoginResult:
    account: Account
    tokens: TokenPair


class AuthService:
    """Password accounts: registration, email verification, login and session lifecycle."""

    def __init__(
        self,
        store: AccountStore,
        sessions: SessionAuthority,
        hasher: CredentialHasher,
        verification: VerificationTokens,
        email: EmailService,
        media: LocalMediaStorage,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.hasher = hasher
        self.verification = verification
        self.email = email
        self.media = media

    def _load(self, fn, *args) -> Optional[Account]:
        try:
            return fn(*args)
        except StorageUnavailableError as exc:
            raise StorageUnavailable() from exc

    async def register(self, email: str, username: str, password: str) -> Account:
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            account = self.store.create_account_with_password(email, username, password_hash)
        except ConstraintViolation as exc:
            logger.info("register_conflict", field=exc.field, constraint=exc.constraint)
            raise conflict_error(exc) from exc
        except StorageUnavailableError as exc:
            raise StorageUnavailable() from exc
        logger.info("account_registered", account_id=account.id)

        try:
            self.media.create_user_repo(account.id)
        except OSError as exc:
            logger.error("user_repo_create_failed", account_id=account.id, error=str(exc))
            raise ServerError("Internal server error") from exc

        await self._send_verification(account)
        return account

    async def _send_verification(self, account: Account) -> None:
        token = self.verification.generate(account.id)
        sent = await asyncio.to_thread(
            self.email.send_email_verification, account.email, account.username, token
        )
        if not sent:
            raise ServerError(
                "Account created successfully, but failed to send verification email"
            )

    async def login(self, credential: str, password: str) -> LoginResult:
        """Authenticate by username (or email) and password.

        Unknown accounts and wrong passwords produce the same message, and an
        unknown account still pays for one hash so timing does not tell them apart.
        """
        if "@" in credential:
            account = self._load(self.store.get_account_by_email, credential.lower())
        else:
            account = self._load(self.store.get_account_by_username, credential)

        if not account:
            await asyncio.to_thread(self.hasher.verify_dummy, password)
            logger.info("login_failed", reason="unknown_account")
            raise BadRequestError(INVALID_CREDENTIALS)
        if not account.has_password:
            raise BadRequestError(
                "Account does not have a password, please login with OAuth provider"
            )
        if not await asyncio.to_thread(self.hasher.verify, account.password_hash, password):
            logger.info("login_failed", reason="bad_password", account_id=account.id)
            raise BadRequestError(INVALID_CREDENTIALS)

        tokens = self.sessions.issue(account)
        logger.info("login_succeeded", account_id=account.id)
        return LoginResult(account=account, tokens=tokens)

    def verify_email(self, token: str) -> Account:
        account_id = self.verification.validate(token)
        account = self._load(self.store.activate_account, account_id)
        if not account:
            raise BadRequestError("Account does not exist")
        if account.status != AccountStatus.ACTIVE:
            raise BadRequestError(f"Account is {account.status.value}")
        logger.info("account_verified", account_id=account.id)
        return account

    async def resend_verification(self, email: str) -> None:
        if not email:
            raise BadRequestError("Missing email")
        account = self._load(self.store.get_account_by_email, email.strip().lower())
        if not account:
            raise BadRequestError("Account with this email does not exist")
        if account.status != AccountStatus.INACTIVE:
            raise BadRequestError(f"Account is {account.status.value}")
        token = self.verification.generate(account.id)
        sent = await asyncio.to_thread(
            self.email.send_email_verification, account.email, account.username, token
        )
        if not sent:
            raise ServerError("Failed to send verification email")

    def logout(self, claims: TokenClaims) -> int:
        return self.sessions.invalidate(claims.subject)

    def refresh(self, claims: TokenClaims) -> TokenPair:
        return self.sessions.refresh(claims)

    def lock(self, account_id: str) -> Account:
        """Self-service lock: the account is disabled and every token is burned."""
        return self._set_status(account_id, AccountStatus.LOCKED)

    def ban(self, account_id: str) -> Account:
        return self._set_status(account_id, AccountStatus.BANNED)

    def _set_status(self, account_id: str, status: AccountStatus) -> Account:
        account = self._load(self.store.get_account, account_id)
        if not account:
            raise NotFoundError("Account not found")
        if status == AccountStatus.LOCKED and not account.is_active:
            raise ForbiddenError("Account is not active")
        updated = self._load(self.store.set_account_status, account_id, status)
        self.sessions.invalidate(account_id)
        logger.info("account_status_changed", account_id=account_id, status=status.value)
        return updated
