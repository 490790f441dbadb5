from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional, Tuple

from zust.logging import get_logger
from zust.storage.errors import ConstraintViolation
from zust.storage.models import (
    Account,
    AccountStatus,
    Subscription,
    Video,
    VideoDetail,
    VideoStatus,
)

# Constraint names mirror the Postgres schema so callers can match on either store
EMAIL_CONSTRAINT = "accounts_email_key"
USERNAME_CONSTRAINT = "accounts_username_key"
OAUTH_IDENTITY_CONSTRAINT = "accounts_oauth_identity_key"
VIDEO_TITLE_CONSTRAINT = "videos_title_key"


class MemoryStore:
    """In-process backing store used for tests and single-node development.

    Every read and write goes through one RLock, which is what makes
    ``increment_token_version`` atomic across request threads.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.subscriptions: Dict[Tuple[str, str], Subscription] = {}
        self.videos: Dict[str, Video] = {}
        self.likes: Dict[Tuple[str, str], datetime] = {}
        self.views: Dict[Tuple[str, str], datetime] = {}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()

    def verify_connection(self) -> None:
        return None

    # -- accounts ---------------------------------------------------------

    def _check_account_unique(
        self,
        email: str,
        username: str,
        *,
        exclude_id: Optional[str] = None,
    ) -> None:
        for existing in self.accounts.values():
            if existing.id == exclude_id:
                continue
            if existing.email == email:
                raise ConstraintViolation(
                    "email already exists",
                    {"field": "email", "constraint": EMAIL_CONSTRAINT},
                )
            if existing.username == username:
                raise ConstraintViolation(
                    "username already exists",
                    {"field": "username", "constraint": USERNAME_CONSTRAINT},
                )

    def _snapshot(self, account: Optional[Account]) -> Optional[Account]:
        # Hand out copies so callers cannot mutate stored rows without the lock
        return replace(account) if account else None

    def create_account_with_password(
        self,
        email: str,
        username: str,
        password_hash: str,
        *,
        role: str = "user",
        status: AccountStatus = AccountStatus.INACTIVE,
    ) -> Account:
        with self._data_lock:
            self._check_account_unique(email, username)
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                password_hash=password_hash,
                status=status,
                role=role,
            )
            self.accounts[account.id] = account
            return self._snapshot(account)

    def create_account_with_oauth(
        self,
        email: str,
        username: str,
        provider: str,
        provider_id: str,
    ) -> Account:
        with self._data_lock:
            for existing in self.accounts.values():
                if (
                    existing.oauth_provider == provider
                    and existing.oauth_provider_id == provider_id
                ):
                    raise ConstraintViolation(
                        "oauth identity already linked",
                        {"field": "oauth_provider_id", "constraint": OAUTH_IDENTITY_CONSTRAINT},
                    )
            self._check_account_unique(email, username)
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                status=AccountStatus.ACTIVE,
                oauth_provider=provider,
                oauth_provider_id=provider_id,
            )
            self.accounts[account.id] = account
            return self._snapshot(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self._snapshot(self.accounts.get(account_id))

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.username == username:
                    return self._snapshot(account)
        return None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == email:
                    return self._snapshot(account)
        return None

    def get_account_by_provider(
        self, provider: str, provider_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            for account in self.accounts.values():
                if (
                    account.oauth_provider == provider
                    and account.oauth_provider_id == provider_id
                ):
                    return self._snapshot(account)
        return None

    def set_account_status(
        self, account_id: str, status: AccountStatus
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = AccountStatus(status)
            return self._snapshot(account)

    def set_account_role(self, account_id: str, role: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.role = role
            return self._snapshot(account)

    def activate_account(self, account_id: str) -> Optional[Account]:
        """Move an inactive account to active; other states are left untouched."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if account.status == AccountStatus.INACTIVE:
                account.status = AccountStatus.ACTIVE
            return self._snapshot(account)

    def update_profile(
        self,
        account_id: str,
        *,
        username: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if username is not None and username != account.username:
                self._check_account_unique(
                    account.email, username, exclude_id=account.id
                )
                account.username = username
            if description is not None:
                account.description = description
            return self._snapshot(account)

    # -- token versions ---------------------------------------------------

    def get_token_version(self, account_id: str) -> Optional[int]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return account.token_version if account else None

    def increment_token_version(
        self, account_id: str, *, expected: Optional[int] = None
    ) -> Optional[int]:
        """Bump the version and return the new value.

        When ``expected`` is given the bump only happens if the stored value
        still equals it; ``None`` is returned for a missing account or a lost race.
        """
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if expected is not None and account.token_version != expected:
                return None
            account.token_version += 1
            return account.token_version

    # -- subscriptions ----------------------------------------------------

    def subscribe(self, subscriber_id: str, subscribe_to_id: str) -> Subscription:
        with self._data_lock:
            for account_id in (subscriber_id, subscribe_to_id):
                if account_id not in self.accounts:
                    raise ConstraintViolation(
                        "account not found",
                        {"field": "subscribe_to_id", "constraint": "subscriptions_account_fkey"},
                    )
            key = (subscriber_id, subscribe_to_id)
            existing = self.subscriptions.get(key)
            if existing:
                return existing
            sub = Subscription(subscriber_id=subscriber_id, subscribe_to_id=subscribe_to_id)
            self.subscriptions[key] = sub
            return sub

    def unsubscribe(self, subscriber_id: str, subscribe_to_id: str) -> bool:
        with self._data_lock:
            return self.subscriptions.pop((subscriber_id, subscribe_to_id), None) is not None

    def count_subscribers(self, account_id: str) -> int:
        with self._data_lock:
            return sum(
                1 for (_, target) in self.subscriptions if target == account_id
            )

    # -- videos -----------------------------------------------------------

    def create_video(
        self, title: str, publisher_id: str, description: Optional[str] = None
    ) -> Video:
        with self._data_lock:
            if publisher_id not in self.accounts:
                raise ConstraintViolation(
                    "publisher not found",
                    {"field": "publisher_id", "constraint": "videos_publisher_fkey"},
                )
            for existing in self.videos.values():
                if existing.title == title and existing.status != VideoStatus.DELETED:
                    raise ConstraintViolation(
                        "title already exists",
                        {"field": "title", "constraint": VIDEO_TITLE_CONSTRAINT},
                    )
            video = Video(
                id=str(uuid.uuid4()),
                title=title,
                publisher_id=publisher_id,
                description=description,
            )
            self.videos[video.id] = video
            return replace(video)

    def publish_video(self, video_id: str, duration: int) -> Optional[Video]:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video:
                return None
            video.duration = duration
            video.status = VideoStatus.PUBLISHED
            video.updated_at = datetime.utcnow()
            return replace(video)

    def delete_video(self, video_id: str) -> bool:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video:
                return False
            video.status = VideoStatus.DELETED
            video.updated_at = datetime.utcnow()
            return True

    def get_video_detail(self, video_id: str) -> Optional[VideoDetail]:
        with self._data_lock:
            video = self.videos.get(video_id)
            if not video:
                return None
            publisher = self.accounts.get(video.publisher_id)
            return VideoDetail(
                video=replace(video),
                publisher_username=publisher.username if publisher else "",
                total_subscribers=self.count_subscribers(video.publisher_id),
                total_views=sum(1 for (vid, _) in self.views if vid == video_id),
                total_likes=sum(1 for (vid, _) in self.likes if vid == video_id),
            )

    def like_video(self, video_id: str, account_id: str) -> bool:
        """Record a like; returns False when the like already existed."""
        with self._data_lock:
            self._require_video(video_id)
            key = (video_id, account_id)
            if key in self.likes:
                return False
            self.likes[key] = datetime.utcnow()
            return True

    def unlike_video(self, video_id: str, account_id: str) -> bool:
        with self._data_lock:
            return self.likes.pop((video_id, account_id), None) is not None

    def record_view(self, video_id: str, account_id: str) -> bool:
        with self._data_lock:
            self._require_video(video_id)
            key = (video_id, account_id)
            if key in self.views:
                return False
            self.views[key] = datetime.utcnow()
            return True

    def _require_video(self, video_id: str) -> None:
        if video_id not in self.videos:
            raise ConstraintViolation(
                "video not found",
                {"field": "video_id", "constraint": "video_fkey"},
            )
