from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from zust.logging import get_logger
from zust.service.auth import conflict_error
from zust.service.errors import BadRequestError, ForbiddenError, NotFoundError, StorageUnavailable
from zust.service.media import AsyncReadable, LocalMediaStorage, MediaKind
from zust.service.tokens import TokenClaims
from zust.storage.errors import ConstraintViolation, StorageUnavailableError
from zust.storage.models import Account, Subscription

logger = get_logger(__name__)

ID_MISMATCH = "Account ID not match with the ID from access token"


def require_self(claims: TokenClaims, account_id: str) -> None:
    if claims.subject != account_id:
        raise BadRequestError(ID_MISMATCH)


@dataclass
class Profile:
    account: Account
    avatar: str
    cover: str
    total_subscribers: int


class AccountService:
    """Profiles and subscriptions."""

    def __init__(self, store, media: LocalMediaStorage) -> None:
        self.store = store
        self.media = media

    def _active_account(self, account_id: str) -> Account:
        try:
            account = self.store.get_account(account_id)
        except StorageUnavailableError as exc:
            raise StorageUnavailable() from exc
        if not account:
            raise NotFoundError("Account not found")
        if not account.is_active:
            raise ForbiddenError("Account is not active")
        return account

    def _profile(self, account: Account) -> Profile:
        return Profile(
            account=account,
            avatar=self.media.media_link(account.id, MediaKind.AVATAR),
            cover=self.media.media_link(account.id, MediaKind.COVER),
            total_subscribers=self.store.count_subscribers(account.id),
        )

    def get_profile(self, account_id: str) -> Profile:
        return self._profile(self._active_account(account_id))

    async def edit_profile(
        self,
        claims: TokenClaims,
        account_id: str,
        *,
        username: Optional[str] = None,
        description: Optional[str] = None,
        avatar: Optional[AsyncReadable] = None,
        cover: Optional[AsyncReadable] = None,
    ) -> Profile:
        require_self(claims, account_id)
        self._active_account(account_id)

        for kind, upload in ((MediaKind.AVATAR, avatar), (MediaKind.COVER, cover)):
            if upload is not None:
                await self.media.save_upload(
                    upload,
                    self.media.path_for(account_id, kind),
                    self.media.max_image_bytes,
                )

        try:
            account = self.store.update_profile(
                account_id, username=username or None, description=description or None
            )
        except ConstraintViolation as exc:
            raise conflict_error(exc) from exc
        logger.info("profile_updated", account_id=account_id)
        return self._profile(account)

    def subscribe(self, claims: TokenClaims, subscriber_id: str, subscribe_to_id: str) -> Subscription:
        require_self(claims, subscriber_id)
        if subscriber_id == subscribe_to_id:
            raise BadRequestError("Cannot subscribe to yourself")
        self._active_account(subscriber_id)
        self._active_account(subscribe_to_id)
        sub = self.store.subscribe(subscriber_id, subscribe_to_id)
        logger.info("subscribed", subscriber_id=subscriber_id, subscribe_to_id=subscribe_to_id)
        return sub

    def unsubscribe(self, claims: TokenClaims, subscriber_id: str, subscribe_to_id: str) -> bool:
        require_self(claims, subscriber_id)
        self._active_account(subscriber_id)
        return self.store.unsubscribe(subscriber_id, subscribe_to_id)
