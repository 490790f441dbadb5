from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from zust.storage.models import (
    DESCRIPTION_MAX_LENGTH,
    EMAIL_MAX_LENGTH,
    USERNAME_MAX_LENGTH,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > EMAIL_MAX_LENGTH:
        raise ValueError(f"email must be at most {EMAIL_MAX_LENGTH} characters")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_username(value: Optional[str]) -> Optional[str]:
    """Alphanumeric with underscores and hyphens, 1 to 20 characters."""
    if value is None:
        return None
    value = value.strip()
    if len(value) < 1:
        raise ValueError("username must be at least 1 character")
    if len(value) > USERNAME_MAX_LENGTH:
        raise ValueError(f"username must be at most {USERNAME_MAX_LENGTH} characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only alphanumeric characters, underscores, and hyphens"
        )
    return value


def _validate_password_length(value: str) -> str:
    if not value:
        raise ValueError("password is required")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    username: str
    password: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("username")
    @classmethod
    def _validate_register_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class LoginRequest(BaseModel):
    # Username, or email when it contains "@"
    username: str = Field(..., min_length=1, max_length=EMAIL_MAX_LENGTH)
    password: str = Field(..., min_length=1, max_length=128)


class AccountCreatedResponse(BaseModel):
    id: str
    email: str
    username: str
    status: str
    message: str


class LoginResponse(BaseModel):
    id: str
    username: str
    email: str
    avatar: str
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"


class OAuthStartResponse(BaseModel):
    authorization_url: str
    provider: str


class OAuthLoginResponse(LoginResponse):
    created: bool = False


class ProfileResponse(BaseModel):
    id: str
    username: str
    email: str
    description: Optional[str] = None
    avatar: str
    cover: str
    total_subscribers: int = 0
    created_at: datetime


class ProfileUpdate(BaseModel):
    """Text fields of the multipart profile edit, validated like JSON bodies."""

    username: Optional[str] = None
    description: Optional[str] = Field(default=None, max_length=DESCRIPTION_MAX_LENGTH)

    @field_validator("username")
    @classmethod
    def _validate_profile_username(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        return _validate_username(value)


class AccountStatusResponse(BaseModel):
    id: str
    status: str
    message: str


class SubscribeRequest(BaseModel):
    subscriber_id: str = Field(..., min_length=1, max_length=64)
    subscribe_to_id: str = Field(..., min_length=1, max_length=64)


class SubscriptionResponse(BaseModel):
    subscriber_id: str
    subscribe_to_id: str
    subscribed: bool


class VideoResponse(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    duration: int
    publisher_id: str
    status: str
    created_at: datetime


class VideoDetailResponse(BaseModel):
    id: str
    title: str
    media: str
    thumbnail: str
    duration: int
    description: Optional[str] = None
    created_at: datetime
    publisher_id: str
    username: str
    avatar: str
    total_subscribers: int = 0
    total_like: int = 0
    total_view: int = 0


class VideoActionResponse(BaseModel):
    video_id: str
    changed: bool


class MessageResponse(BaseModel):
    message: str
