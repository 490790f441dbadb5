"""Tests for local media storage."""

import base64
import subprocess

import httpx
import pytest

from conftest import PNG_BYTES
from zust.service.errors import BadRequestError, NotFoundError
from zust.service.media import LocalMediaStorage, MediaKind, PathTraversalError, safe_join


class BytesUpload:
    """Minimal async-readable upload."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    async def read(self, size: int = -1) -> bytes:
        if size < 0:
            size = len(self._data) - self._pos
        chunk = self._data[self._pos:self._pos + size]
        self._pos += len(chunk)
        return chunk


@pytest.fixture
def media(settings, oauth_upstream):
    return LocalMediaStorage(settings, transport=oauth_upstream.transport, retry_delay=0)


class TestSafeJoin:
    def test_rejects_escape(self, tmp_path):
        with pytest.raises(PathTraversalError):
            safe_join(tmp_path, "../outside")

    def test_rejects_absolute(self, tmp_path):
        with pytest.raises(PathTraversalError):
            safe_join(tmp_path, "/etc/passwd")

    def test_allows_nested(self, tmp_path):
        assert safe_join(tmp_path, "a/b.png") == (tmp_path / "a" / "b.png").resolve()


class TestUserRepository:
    def test_create_user_repo_copies_defaults(self, media):
        base = media.create_user_repo("acct-1")
        assert (base / "avatar.png").is_file()
        assert (base / "cover.png").is_file()
        assert (base / "resource").is_dir()
        assert (base / "thumbnail").is_dir()

    def test_account_id_cannot_escape_root(self, media):
        with pytest.raises(PathTraversalError):
            media.create_user_repo("../../etc")


class TestAvatarDownload:
    async def test_download_replaces_default(self, media):
        media.create_user_repo("acct-1")
        assert await media.download_avatar("acct-1", "https://avatars.example.com/u/1") is True
        assert media.path_for("acct-1", MediaKind.AVATAR).read_bytes() == PNG_BYTES

    async def test_failures_retry_then_give_up(self, media, oauth_upstream):
        media.create_user_repo("acct-1")
        default = media.path_for("acct-1", MediaKind.AVATAR).read_bytes()
        oauth_upstream.avatar_status = 500

        assert await media.download_avatar("acct-1", "https://avatars.example.com/u/1", attempts=3) is False
        avatar_requests = [r for r in oauth_upstream.requests if r.url.host == "avatars.example.com"]
        assert len(avatar_requests) == 3
        assert media.path_for("acct-1", MediaKind.AVATAR).read_bytes() == default

    async def test_oversized_avatar_is_refused(self, settings, tmp_path):
        small = settings.model_copy(update={"max_image_mb": 0})
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"x" * 10))
        media = LocalMediaStorage(small, transport=transport, retry_delay=0)
        media.create_user_repo("acct-1")
        assert await media.download_avatar("acct-1", "https://avatars.example.com/u/1") is False


class TestUploads:
    async def test_save_upload_writes_file(self, media, tmp_path):
        dest = tmp_path / "out" / "file.bin"
        assert await media.save_upload(BytesUpload(b"abc" * 1000), dest, limit=10_000) == 3000
        assert dest.read_bytes() == b"abc" * 1000

    async def test_too_large_is_removed(self, media, tmp_path):
        dest = tmp_path / "file.bin"
        with pytest.raises(BadRequestError, match="File too large"):
            await media.save_upload(BytesUpload(b"x" * 101), dest, limit=100)
        assert not dest.exists()

    async def test_rejected_upload_keeps_existing_file(self, media, tmp_path):
        dest = tmp_path / "avatar.png"
        dest.write_bytes(PNG_BYTES)
        with pytest.raises(BadRequestError):
            await media.save_upload(BytesUpload(b"x" * 101), dest, limit=100)
        assert dest.read_bytes() == PNG_BYTES
        assert not (tmp_path / "avatar.png.part").exists()

    async def test_empty_upload(self, media, tmp_path):
        with pytest.raises(BadRequestError, match="empty"):
            await media.save_upload(BytesUpload(b""), tmp_path / "file.bin", limit=100)

    async def test_interrupted_upload_leaves_no_partial_file(self, media, tmp_path):
        class Interrupted(BytesUpload):
            async def read(self, size: int = -1) -> bytes:
                if self._pos:
                    raise OSError("connection reset")
                return await super().read(size)

        with pytest.raises(OSError):
            await media.save_upload(Interrupted(b"x" * 200_000), tmp_path / "up" / "file.bin", limit=10**6)
        assert list((tmp_path / "up").iterdir()) == []


class TestMediaLinks:
    def test_link_round_trips_to_path(self, media):
        media.create_user_repo("acct-1")
        link = media.media_link("acct-1", MediaKind.COVER)
        assert link.startswith("http://testserver/media/")
        media_id = link.rsplit("/", 1)[1]
        assert media.resolve_media(media_id) == media.path_for("acct-1", MediaKind.COVER)

    def test_link_does_not_expose_filesystem_layout(self, media):
        link = media.media_link("acct-1", MediaKind.AVATAR)
        assert "acct-1" not in link
        assert "avatar.png" not in link

    @pytest.mark.parametrize("media_id", ["garbage", "", base64.urlsafe_b64encode(b"a:nope:x").decode()])
    def test_unknown_media(self, media, media_id):
        with pytest.raises(NotFoundError):
            media.resolve_media(media_id)

    def test_missing_file(self, media):
        media_id = media.media_link("acct-2", MediaKind.AVATAR).rsplit("/", 1)[1]
        with pytest.raises(NotFoundError):
            media.resolve_media(media_id)


class TestProbeDuration:
    async def test_missing_ffprobe_is_zero(self, media, tmp_path, monkeypatch):
        def missing(*args, **kwargs):
            raise FileNotFoundError("ffprobe")

        monkeypatch.setattr(subprocess, "run", missing)
        assert await media.probe_duration(tmp_path / "video.mp4") == 0

    async def test_parses_seconds(self, media, tmp_path, monkeypatch):
        monkeypatch.setattr(
            subprocess,
            "run",
            lambda *a, **k: subprocess.CompletedProcess(a, 0, stdout="12.7\n", stderr=""),
        )
        assert await media.probe_duration(tmp_path / "video.mp4") == 12

    async def test_failure_exit_is_zero(self, media, tmp_path, monkeypatch):
        monkeypatch.setattr(
            subprocess,
            "run",
            lambda *a, **k: subprocess.CompletedProcess(a, 1, stdout="", stderr="moov atom not found"),
        )
        assert await media.probe_duration(tmp_path / "video.mp4") == 0
