from __future__ import annotations

import asyncio
import base64
import binascii
import shutil
import subprocess
from enum import Enum
from pathlib import Path
from typing import Optional, Protocol

import httpx

from zust.config import Settings
from zust.logging import get_logger
from zust.service.errors import BadRequestError, NotFoundError

logger = get_logger(__name__)

_UPLOAD_CHUNK_BYTES = 1 << 20


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


class MediaKind(str, Enum):
    AVATAR = "avatar"
    COVER = "cover"
    VIDEO = "resource"
    THUMBNAIL = "thumbnail"


# Avatar and cover live at the repository root under fixed names
_FIXED_NAMES = {MediaKind.AVATAR: "avatar.png", MediaKind.COVER: "cover.png"}


class AsyncReadable(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


class LocalMediaStorage:
    """Per-account media repositories on the local filesystem.

    Layout::

        {resource_path}/{account_id}/avatar.png
        {resource_path}/{account_id}/cover.png
        {resource_path}/{account_id}/resource/{video_id}.mp4
        {resource_path}/{account_id}/thumbnail/{video_id}.png
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: float = 0.5,
    ) -> None:
        self.root = Path(settings.resource_path)
        self.asset_dir = Path(settings.asset_path)
        self.base_url = settings.app_base_url.rstrip("/")
        self.max_image_bytes = settings.max_image_bytes
        self.max_video_bytes = settings.max_video_bytes
        self._transport = transport
        self._retry_delay = retry_delay
        self.root.mkdir(parents=True, exist_ok=True)

    def user_dir(self, account_id: str) -> Path:
        return safe_join(self.root, account_id)

    def path_for(
        self, account_id: str, kind: MediaKind, filename: Optional[str] = None
    ) -> Path:
        base = self.user_dir(account_id)
        if kind in _FIXED_NAMES:
            return base / _FIXED_NAMES[kind]
        if not filename:
            raise BadRequestError("filename required", detail={"kind": kind.value})
        return safe_join(base / kind.value, filename)

    def create_user_repo(self, account_id: str) -> Path:
        """Create the account's directories and copy in the default avatar and cover."""
        base = self.user_dir(account_id)
        for kind in (MediaKind.VIDEO, MediaKind.THUMBNAIL):
            (base / kind.value).mkdir(parents=True, exist_ok=True)
        for name in _FIXED_NAMES.values():
            shutil.copyfile(self.asset_dir / name, base / name)
        logger.info("user_repo_created", account_id=account_id)
        return base

    async def download_avatar(
        self, account_id: str, url: str, *, attempts: int = 3
    ) -> bool:
        """Replace the default avatar with ``url``; failures are logged, not raised."""
        dest = self.path_for(account_id, MediaKind.AVATAR)
        last_error: Optional[str] = None
        for attempt in range(1, attempts + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=15.0, follow_redirects=True, transport=self._transport
                ) as client:
                    response = await client.get(url)
                    response.raise_for_status()
                    content = response.content
                if len(content) > self.max_image_bytes:
                    logger.warning(
                        "avatar_too_large", account_id=account_id, size=len(content)
                    )
                    return False
                await asyncio.to_thread(dest.write_bytes, content)
                logger.info("avatar_downloaded", account_id=account_id, attempt=attempt)
                return True
            except (httpx.HTTPError, OSError) as exc:
                last_error = str(exc)
                logger.warning(
                    "avatar_download_retry",
                    account_id=account_id,
                    attempt=attempt,
                    error=last_error,
                )
                if attempt < attempts:
                    await asyncio.sleep(self._retry_delay * attempt)
        logger.error("avatar_download_failed", account_id=account_id, error=last_error)
        return False

    async def save_upload(self, source: AsyncReadable, dest: Path, limit: int) -> int:
        """Stream ``source`` into ``dest``, refusing anything over ``limit`` bytes.

        The data lands in a sibling ``.part`` file first, so a rejected upload
        leaves any existing file at ``dest`` untouched.
        """
        dest.parent.mkdir(parents=True, exist_ok=True)
        partial = dest.with_name(dest.name + ".part")
        written = 0
        promoted = False
        try:
            with partial.open("wb") as handle:
                while True:
                    chunk = await source.read(_UPLOAD_CHUNK_BYTES)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > limit:
                        raise BadRequestError(
                            "File too large",
                            detail={"max_bytes": limit},
                        )
                    handle.write(chunk)
            if written == 0:
                raise BadRequestError("Uploaded file is empty")
            partial.replace(dest)
            promoted = True
        finally:
            if not promoted:
                partial.unlink(missing_ok=True)
        return written

    def media_link(
        self, account_id: str, kind: MediaKind, filename: Optional[str] = None
    ) -> str:
        name = _FIXED_NAMES.get(kind, filename or "")
        opaque = base64.urlsafe_b64encode(
            f"{account_id}:{kind.value}:{name}".encode("utf-8")
        ).decode("ascii")
        return f"{self.base_url}/media/{opaque}"

    def resolve_media(self, media_id: str) -> Path:
        """Map an opaque media ID from ``media_link`` back to a file on disk."""
        try:
            decoded = base64.urlsafe_b64decode(media_id.encode("ascii")).decode("utf-8")
            account_id, kind_value, name = decoded.split(":")
            kind = MediaKind(kind_value)
        except (binascii.Error, UnicodeError, ValueError):
            raise NotFoundError("Media not found")
        path = self.path_for(account_id, kind, name)
        if not path.is_file():
            raise NotFoundError("Media not found")
        return path

    async def probe_duration(self, path: Path) -> int:
        """Video length in whole seconds via ffprobe; 0 when it cannot be read."""
        cmd = [
            "ffprobe",
            "-v",
            "error",
            "-show_entries",
            "format=duration",
            "-of",
            "default=noprint_wrappers=1:nokey=1",
            str(path),
        ]
        try:
            result = await asyncio.to_thread(
                subprocess.run, cmd, capture_output=True, text=True, timeout=60
            )
        except FileNotFoundError:
            logger.warning("ffprobe_missing", path=str(path))
            return 0
        except subprocess.TimeoutExpired:
            logger.warning("ffprobe_timeout", path=str(path))
            return 0
        if result.returncode != 0:
            logger.warning(
                "ffprobe_failed", path=str(path), output=result.stderr.strip()[:500]
            )
            return 0
        try:
            return int(float(result.stdout.strip()))
        except ValueError:
            logger.warning("ffprobe_unparseable", path=str(path), output=result.stdout[:100])
            return 0
