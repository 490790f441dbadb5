from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Protocol, runtime_checkable
from urllib.parse import urlencode

import httpx

from zust.config import OAUTH_ENDPOINTS, Settings
from zust.logging import get_logger
from zust.service.auth import conflict_error
from zust.service.errors import (
    BadRequestError,
    ExternalExchangeFailed,
    ExternalFetchFailed,
    StorageUnavailable,
)
from zust.service.media import LocalMediaStorage
from zust.service.sessions import SessionAuthority, TokenPair
from zust.storage.errors import ConstraintViolation, StorageUnavailableError
from zust.storage.models import (
    EMAIL_MAX_LENGTH,
    USERNAME_MAX_LENGTH,
    Account,
    ExternalIdentity,
)

logger = get_logger(__name__)

_USERNAME_INVALID_CHARS = re.compile(r"[^A-Za-z0-9_-]+")
_UPSTREAM_BODY_LOG_LIMIT = 500


@runtime_checkable
class OAuthProvider(Protocol):
    """The three operations the broker needs from an identity provider."""

    name: str

    async def exchange_code(self, code: str) -> str: ...

    async def fetch_identity(self, access_token: str) -> ExternalIdentity: ...


class HTTPOAuthProvider(ABC):
    """Authorization-code flow against a provider's token and userinfo endpoints."""

    name = ""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        redirect_uri: Optional[str] = None,
        endpoints: Optional[Dict[str, str]] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.endpoints = endpoints or OAUTH_ENDPOINTS[self.name]
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": self.endpoints["scope"],
            "state": state,
        }
        if self.redirect_uri:
            params["redirect_uri"] = self.redirect_uri
        return f"{self.endpoints['auth_url']}?{urlencode(params)}"

    def _token_request(self, code: str) -> Dict[str, str]:
        return {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
        }

    def _log_upstream(self, event: str, response: httpx.Response) -> None:
        logger.error(
            event,
            provider=self.name,
            upstream_status=response.status_code,
            upstream_body=response.text[:_UPSTREAM_BODY_LOG_LIMIT],
        )

    async def exchange_code(self, code: str) -> str:
        try:
            async with self._client() as client:
                response = await client.post(
                    self.endpoints["token_url"],
                    data=self._token_request(code),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.error("oauth_exchange_transport_error", provider=self.name, error=str(exc))
            raise ExternalExchangeFailed("Failed to exchange token") from exc

        if not response.is_success:
            self._log_upstream("oauth_exchange_rejected", response)
            raise ExternalExchangeFailed("Failed to exchange token")
        try:
            payload = response.json()
        except ValueError:
            self._log_upstream("oauth_exchange_unparseable", response)
            raise ExternalExchangeFailed("Failed to exchange token")
        # GitHub reports bad codes as a 200 with an ``error`` field
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            self._log_upstream("oauth_exchange_no_token", response)
            raise ExternalExchangeFailed("Failed to exchange token")
        return access_token

    async def _get_json(self, client: httpx.AsyncClient, url: str, access_token: str) -> Any:
        try:
            response = await client.get(url, headers=self._userinfo_headers(access_token))
        except httpx.HTTPError as exc:
            logger.error("oauth_fetch_transport_error", provider=self.name, error=str(exc))
            raise ExternalFetchFailed("Failed to fetch user data") from exc
        if not response.is_success:
            self._log_upstream("oauth_fetch_rejected", response)
            raise ExternalFetchFailed("Failed to fetch user data")
        try:
            return response.json()
        except ValueError:
            self._log_upstream("oauth_fetch_unparseable", response)
            raise ExternalFetchFailed("Failed to fetch user data")

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}

    async def fetch_identity(self, access_token: str) -> ExternalIdentity:
        async with self._client() as client:
            payload = await self._get_json(client, self.endpoints["userinfo_url"], access_token)
            if not isinstance(payload, dict) or payload.get("id") in (None, ""):
                logger.error("oauth_identity_missing_id", provider=self.name)
                raise ExternalFetchFailed("Failed to fetch user data")
            identity = self._parse_identity(payload)
            if not identity.email:
                identity.email = await self._fallback_email(client, access_token)
        return identity

    @abstractmethod
    def _parse_identity(self, payload: Dict[str, Any]) -> ExternalIdentity:
        """Map the provider's userinfo payload onto an ``ExternalIdentity``."""

    async def _fallback_email(
        self, client: httpx.AsyncClient, access_token: str
    ) -> Optional[str]:
        return None


class GitHubProvider(HTTPOAuthProvider):
    name = "github"

    def _userinfo_headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/vnd.github+json",
        }

    def _parse_identity(self, payload: Dict[str, Any]) -> ExternalIdentity:
        return ExternalIdentity(
            provider=self.name,
            provider_id=str(payload["id"]),
            display_name=payload.get("login") or payload.get("name") or "",
            avatar_url=payload.get("avatar_url"),
            email=payload.get("email"),
        )

    async def _fallback_email(
        self, client: httpx.AsyncClient, access_token: str
    ) -> Optional[str]:
        # Users with a private email only expose it through /user/emails
        emails = await self._get_json(client, self.endpoints["emails_url"], access_token)
        if not isinstance(emails, list):
            return None
        verified = [e for e in emails if isinstance(e, dict) and e.get("verified")]
        primary = next((e for e in verified if e.get("primary")), None)
        chosen = primary or (verified[0] if verified else None)
        return chosen.get("email") if chosen else None


class GoogleProvider(HTTPOAuthProvider):
    name = "google"

    def _token_request(self, code: str) -> Dict[str, str]:
        data = super()._token_request(code)
        data["grant_type"] = "authorization_code"
        if self.redirect_uri:
            data["redirect_uri"] = self.redirect_uri
        return data

    def _parse_identity(self, payload: Dict[str, Any]) -> ExternalIdentity:
        return ExternalIdentity(
            provider=self.name,
            provider_id=str(payload["id"]),
            display_name=payload.get("name") or "",
            avatar_url=payload.get("picture"),
            email=payload.get("email"),
        )


_PROVIDER_CLASSES = {"github": GitHubProvider, "google": GoogleProvider}


class ProviderRegistry:
    """Provider tag to provider instance, built once at startup."""

    def __init__(self, providers: Iterable[OAuthProvider] = ()) -> None:
        self._providers: Dict[str, OAuthProvider] = {}
        for provider in providers:
            self.register(provider)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ProviderRegistry":
        registry = cls()
        for tag, provider_cls in _PROVIDER_CLASSES.items():
            client_id, client_secret = settings.oauth_credentials(tag)
            if not client_id or not client_secret:
                logger.info("oauth_provider_disabled", provider=tag)
                continue
            registry.register(
                provider_cls(
                    client_id,
                    client_secret,
                    redirect_uri=settings.oauth_redirect_uri,
                    timeout=settings.oauth_timeout_seconds,
                    transport=transport,
                )
            )
        return registry

    def register(self, provider: OAuthProvider) -> None:
        if not isinstance(provider, OAuthProvider):
            raise TypeError(f"{provider!r} does not implement OAuthProvider")
        self._providers[provider.name] = provider

    def get(self, tag: Optional[str]) -> Optional[OAuthProvider]:
        if not tag:
            return None
        return self._providers.get(tag)

    def names(self) -> list[str]:
        return sorted(self._providers)


@dataclass
class FederatedLogin:
    account: Account
    tokens: TokenPair
    created: bool
    identity: ExternalIdentity


def derive_username(identity: ExternalIdentity) -> str:
    """Fit a provider display name into the local username rules."""
    cleaned = _USERNAME_INVALID_CHARS.sub("", identity.display_name or "")
    if not cleaned:
        cleaned = f"{identity.provider}_{identity.provider_id}"
    return cleaned[:USERNAME_MAX_LENGTH]


class FederationBroker:
    """Drives the OAuth callback and maps an external identity to exactly one account."""

    def __init__(
        self,
        registry: ProviderRegistry,
        store,
        sessions: SessionAuthority,
        media: LocalMediaStorage,
    ) -> None:
        self.registry = registry
        self.store = store
        self.sessions = sessions
        self.media = media

    def _provider(self, tag: Optional[str]) -> OAuthProvider:
        provider = self.registry.get(tag)
        if provider is None:
            raise BadRequestError("Unknown provider", detail={"provider": tag})
        return provider

    def authorization_url(self, tag: str) -> str:
        provider = self._provider(tag)
        build = getattr(provider, "authorization_url", None)
        if build is None:
            raise BadRequestError("Provider does not support redirects", detail={"provider": tag})
        # The provider tag rides along as ``state`` and comes back on the callback
        return build(tag)

    async def complete(self, tag: Optional[str], code: Optional[str]) -> FederatedLogin:
        provider = self._provider(tag)
        if not code:
            raise BadRequestError("Missing authorization code")

        access_token = await provider.exchange_code(code)
        identity = await provider.fetch_identity(access_token)
        account, created = self._reconcile(identity)
        tokens = self.sessions.issue(account)
        logger.info(
            "oauth_login",
            provider=identity.provider,
            account_id=account.id,
            created=created,
        )
        return FederatedLogin(account=account, tokens=tokens, created=created, identity=identity)

    def _lookup(self, identity: ExternalIdentity) -> Optional[Account]:
        try:
            return self.store.get_account_by_provider(identity.provider, identity.provider_id)
        except StorageUnavailableError as exc:
            raise StorageUnavailable() from exc

    def _reconcile(self, identity: ExternalIdentity) -> tuple[Account, bool]:
        existing = self._lookup(identity)
        if existing:
            return existing, False

        email = (identity.email or "").strip().lower()
        if not email:
            raise BadRequestError(
                "Provider account has no email address", detail={"provider": identity.provider}
            )
        if len(email) > EMAIL_MAX_LENGTH:
            raise BadRequestError("Email is too long", detail={"field": "email"})

        try:
            account = self.store.create_account_with_oauth(
                email,
                derive_username(identity),
                identity.provider,
                identity.provider_id,
            )
        except ConstraintViolation as exc:
            # A concurrent callback for the same identity may have won the insert;
            # its email/username collide before the identity key is checked
            winner = self._lookup(identity)
            if winner:
                logger.info(
                    "oauth_concurrent_create", account_id=winner.id, constraint=exc.constraint
                )
                return winner, False
            raise conflict_error(exc) from exc
        except StorageUnavailableError as exc:
            raise StorageUnavailable() from exc
        return account, True

    async def initialize_profile_assets(self, account_id: str, avatar_url: Optional[str]) -> None:
        """Create the media repository and import the provider avatar.

        Runs after the callback response; failures leave the account with
        default (or missing) artwork and are only logged.
        """
        try:
            self.media.create_user_repo(account_id)
            if avatar_url:
                await self.media.download_avatar(account_id, avatar_url)
        except Exception as exc:
            logger.error(
                "profile_assets_init_failed",
                account_id=account_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
