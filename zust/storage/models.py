from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class AccountStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    BANNED = "banned"
    LOCKED = "locked"


class VideoStatus(str, Enum):
    PENDING = "pending"
    PUBLISHED = "published"
    DELETED = "deleted"


# Column limits shared by both stores and the request schemas
EMAIL_MAX_LENGTH = 40
USERNAME_MAX_LENGTH = 20
DESCRIPTION_MAX_LENGTH = 100
VIDEO_TITLE_MAX_LENGTH = 50
VIDEO_DESCRIPTION_MAX_LENGTH = 500


@dataclass
class Account:
    id: str
    email: str
    username: str
    password_hash: Optional[str] = None
    description: Optional[str] = None
    status: AccountStatus = AccountStatus.INACTIVE
    role: str = "user"
    oauth_provider: Optional[str] = None
    oauth_provider_id: Optional[str] = None
    token_version: int = 1
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class ExternalIdentity:
    """Profile fetched from an OAuth provider for the duration of one callback."""

    provider: str
    provider_id: str
    display_name: str
    avatar_url: Optional[str] = None
    email: Optional[str] = None


@dataclass
class Subscription:
    subscriber_id: str
    subscribe_to_id: str
    subscribed_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Video:
    id: str
    title: str
    publisher_id: str
    description: Optional[str] = None
    duration: int = 0
    status: VideoStatus = VideoStatus.PENDING
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class VideoDetail:
    video: Video
    publisher_username: str
    total_subscribers: int = 0
    total_views: int = 0
    total_likes: int = 0
