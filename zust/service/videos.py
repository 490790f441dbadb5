from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from zust.logging import get_logger
from zust.service.errors import BadRequestError, ForbiddenError, NotFoundError
from zust.service.media import AsyncReadable, LocalMediaStorage, MediaKind
from zust.service.tokens import TokenClaims
from zust.storage.errors import ConstraintViolation
from zust.storage.models import (
    VIDEO_DESCRIPTION_MAX_LENGTH,
    VIDEO_TITLE_MAX_LENGTH,
    Video,
    VideoDetail,
    VideoStatus,
)

logger = get_logger(__name__)


@dataclass
class VideoView:
    detail: VideoDetail
    media: str
    thumbnail: str
    avatar: str


class VideoService:
    """Upload, publish and read videos with their engagement counts."""

    def __init__(self, store, media: LocalMediaStorage) -> None:
        self.store = store
        self.media = media

    def _require_active(self, account_id: str) -> None:
        account = self.store.get_account(account_id)
        if not account or not account.is_active:
            raise ForbiddenError("Account is not active")

    async def upload(
        self,
        claims: TokenClaims,
        *,
        title: str,
        description: Optional[str],
        publisher_id: str,
        resource: AsyncReadable,
        thumbnail: AsyncReadable,
    ) -> Video:
        """Store the video as pending, write its files, then publish with its duration."""
        self._require_active(claims.subject)
        title = (title or "").strip()
        if not title:
            raise BadRequestError("Title cannot be empty")
        if len(title) > VIDEO_TITLE_MAX_LENGTH:
            raise BadRequestError("Title is too long", detail={"max_length": VIDEO_TITLE_MAX_LENGTH})
        description = (description or "").strip() or None
        if description and len(description) > VIDEO_DESCRIPTION_MAX_LENGTH:
            raise BadRequestError(
                "Description is too long", detail={"max_length": VIDEO_DESCRIPTION_MAX_LENGTH}
            )
        if publisher_id != claims.subject:
            raise BadRequestError("Publisher ID must be the ID of the requester")

        try:
            video = self.store.create_video(title, publisher_id, description)
        except ConstraintViolation as exc:
            if exc.field == "title":
                raise BadRequestError("Title is already taken", detail={"field": "title"}) from exc
            raise

        video_path = self.media.path_for(publisher_id, MediaKind.VIDEO, f"{video.id}.mp4")
        thumbnail_path = self.media.path_for(publisher_id, MediaKind.THUMBNAIL, f"{video.id}.png")
        try:
            await self.media.save_upload(resource, video_path, self.media.max_video_bytes)
            await self.media.save_upload(thumbnail, thumbnail_path, self.media.max_image_bytes)
        except BaseException as exc:
            # Includes cancellation from a client disconnect
            logger.warning(
                "video_upload_failed",
                video_id=video.id,
                publisher_id=publisher_id,
                error_type=type(exc).__name__,
            )
            video_path.unlink(missing_ok=True)
            thumbnail_path.unlink(missing_ok=True)
            self.store.delete_video(video.id)
            raise

        duration = await self.media.probe_duration(video_path)
        published = self.store.publish_video(video.id, duration)
        logger.info("video_published", video_id=video.id, publisher_id=publisher_id, duration=duration)
        return published

    def get(self, video_id: str) -> VideoView:
        detail = self.store.get_video_detail(video_id)
        if not detail or detail.video.status != VideoStatus.PUBLISHED:
            raise NotFoundError("Cannot found any video with this ID")
        video = detail.video
        return VideoView(
            detail=detail,
            media=self.media.media_link(video.publisher_id, MediaKind.VIDEO, f"{video.id}.mp4"),
            thumbnail=self.media.media_link(
                video.publisher_id, MediaKind.THUMBNAIL, f"{video.id}.png"
            ),
            avatar=self.media.media_link(video.publisher_id, MediaKind.AVATAR),
        )

    def _published(self, video_id: str) -> None:
        detail = self.store.get_video_detail(video_id)
        if not detail or detail.video.status != VideoStatus.PUBLISHED:
            raise NotFoundError("Cannot found any video with this ID")

    def like(self, claims: TokenClaims, video_id: str) -> bool:
        self._require_active(claims.subject)
        self._published(video_id)
        return self.store.like_video(video_id, claims.subject)

    def unlike(self, claims: TokenClaims, video_id: str) -> bool:
        self._require_active(claims.subject)
        return self.store.unlike_video(video_id, claims.subject)

    def record_view(self, claims: TokenClaims, video_id: str) -> bool:
        self._published(video_id)
        return self.store.record_view(video_id, claims.subject)
