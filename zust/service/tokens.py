from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Callable, Union

from zust.config import Settings
from zust.logging import get_logger
from zust.service.errors import (
    InvalidClaimsError,
    InvalidTokenKindError,
    TokenExpiredError,
    TokenMalformedError,
    TokenSignatureError,
)

logger = get_logger(__name__)

# Only the HMAC family is accepted; anything else in a header is refused
# before the signature is even computed.
_HMAC_ALGORITHMS: dict[str, Callable[..., Any]] = {
    "HS256": hashlib.sha256,
    "HS384": hashlib.sha384,
    "HS512": hashlib.sha512,
}


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    kind: TokenKind
    version: int
    role: str
    issuer: str
    issued_at: int
    expires_at: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class TokenCodec:
    """Compact JWS (header.payload.signature) signed with one symmetric key."""

    def __init__(
        self,
        secret_key: str,
        *,
        issuer: str = "Zust",
        algorithm: str = "HS256",
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if algorithm not in _HMAC_ALGORITHMS:
            raise ValueError(f"unsupported signing algorithm {algorithm!r}")
        self._key = secret_key.encode("utf-8")
        self.issuer = issuer
        self.algorithm = algorithm
        self.leeway_seconds = leeway_seconds
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "TokenCodec":
        return cls(
            settings.secret_key,
            issuer=settings.jwt_issuer,
            leeway_seconds=settings.token_leeway_seconds,
            **kwargs,
        )

    def _sign(self, signing_input: str, algorithm: str) -> str:
        digest = hmac.new(
            self._key, signing_input.encode("utf-8"), _HMAC_ALGORITHMS[algorithm]
        ).digest()
        return _encode_segment(digest)

    def issue(
        self,
        subject: str,
        kind: Union[TokenKind, str],
        version: int,
        ttl: Union[timedelta, int, float],
        *,
        role: str = "user",
    ) -> str:
        try:
            token_kind = TokenKind(kind)
        except ValueError as exc:
            raise InvalidTokenKindError(
                f"invalid token kind {kind!r}, only access or refresh are accepted"
            ) from exc
        ttl_seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
        if ttl_seconds <= 0:
            raise ValueError("token ttl must be positive")

        now = int(self._clock())
        payload = {
            "sub": subject,
            "kind": token_kind.value,
            "ver": int(version),
            "role": role,
            "iss": self.issuer,
            "iat": now,
            "exp": now + int(ttl_seconds),
        }
        header = {"alg": self.algorithm, "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, self.algorithm)}"

    def parse(self, token: str) -> TokenClaims:
        """Verify ``token`` and return its claims.

        Raises:
            TokenMalformedError: not three base64url JSON segments
            TokenSignatureError: foreign algorithm or signature mismatch
            InvalidClaimsError: issuer, kind, version or timestamps unusable
            TokenExpiredError: past ``exp`` by more than the leeway
        """
        if not isinstance(token, str) or token.count(".") != 2:
            raise TokenMalformedError("Malformed token")
        header_b64, payload_b64, sig_b64 = token.split(".")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (binascii.Error, ValueError):
            raise TokenMalformedError("Malformed token header")
        if not isinstance(header, dict):
            raise TokenMalformedError("Malformed token header")

        alg = header.get("alg")
        if not isinstance(alg, str) or alg not in _HMAC_ALGORITHMS or alg != self.algorithm:
            logger.warning("token_unexpected_algorithm", alg=str(alg))
            raise TokenSignatureError(f"Unexpected signing method: {alg}")

        try:
            sig_bytes = sig_b64.encode("ascii")
        except UnicodeEncodeError:
            raise TokenMalformedError("Malformed token signature")
        expected_sig = self._sign(f"{header_b64}.{payload_b64}", alg)
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_bytes):
            raise TokenSignatureError("Token signature is invalid")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (binascii.Error, ValueError):
            raise TokenMalformedError("Malformed token payload")
        if not isinstance(payload, dict):
            raise TokenMalformedError("Malformed token payload")

        return self._validate_claims(payload)

    def _validate_claims(self, payload: dict[str, Any]) -> TokenClaims:
        if payload.get("iss") != self.issuer:
            raise InvalidClaimsError("Invalid issuer")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidClaimsError("Invalid subject")
        try:
            kind = TokenKind(payload.get("kind"))
        except ValueError:
            raise InvalidClaimsError("Invalid token type")
        version = payload.get("ver")
        if not _is_int(version) or version < 1:
            raise InvalidClaimsError("Invalid token version")
        role = payload.get("role", "user")
        if not isinstance(role, str):
            raise InvalidClaimsError("Invalid role")
        issued_at = payload.get("iat")
        expires_at = payload.get("exp")
        if not _is_int(issued_at) or not _is_int(expires_at):
            raise InvalidClaimsError("Invalid token timestamps")

        now = self._clock()
        if issued_at > now + self.leeway_seconds:
            raise InvalidClaimsError("Token used before issued")
        if expires_at < now - self.leeway_seconds:
            raise TokenExpiredError("Token has expired")

        return TokenClaims(
            subject=subject,
            kind=kind,
            version=version,
            role=role,
            issuer=self.issuer,
            issued_at=issued_at,
            expires_at=expires_at,
        )
