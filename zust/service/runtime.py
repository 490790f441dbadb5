from __future__ import annotations

from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx

from zust.config import Settings
from zust.logging import get_logger
from zust.service.accounts import AccountService
from zust.service.auth import AuthService
from zust.service.email import EmailService
from zust.service.media import LocalMediaStorage
from zust.service.oauth import FederationBroker, ProviderRegistry
from zust.service.passwords import CredentialHasher
from zust.service.sessions import SessionAuthority
from zust.service.tokens import TokenCodec
from zust.service.verification import VerificationTokens
from zust.service.videos import VideoService
from zust.storage.memory import MemoryStore
from zust.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Composition root: builds every service from one ``Settings`` instance.

    ``store``, ``email`` and ``http_transport`` can be injected, which is how
    tests swap in an in-memory store and a mocked OAuth/avatar HTTP layer.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store=None,
        email: Optional[EmailService] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        logger.info("runtime_init_started", use_memory_store=settings.use_memory_store)

        if store is None:
            try:
                store = (
                    MemoryStore()
                    if settings.use_memory_store
                    else PostgresStore(settings.database_url)
                )
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    store_type="memory" if settings.use_memory_store else "postgres",
                    database_url=_mask_url_password(settings.database_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
        self.store = store

        self.codec = TokenCodec.from_settings(settings)
        self.hasher = CredentialHasher()
        self.sessions = SessionAuthority(settings, self.store, self.codec)
        self.verification = VerificationTokens(
            settings.secret_key, ttl_seconds=settings.verification_ttl_hours * 3600
        )
        self.email = email or EmailService.from_settings(settings)
        self.media = LocalMediaStorage(settings, transport=http_transport)
        self.auth = AuthService(
            self.store,
            self.sessions,
            self.hasher,
            self.verification,
            self.email,
            self.media,
        )
        self.providers = ProviderRegistry.from_settings(settings, transport=http_transport)
        self.federation = FederationBroker(self.providers, self.store, self.sessions, self.media)
        self.accounts = AccountService(self.store, self.media)
        self.videos = VideoService(self.store, self.media)
        logger.info(
            "runtime_init_complete",
            store_type=type(self.store).__name__,
            oauth_providers=self.providers.names(),
        )

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()
