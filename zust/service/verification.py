"""Email verification links.

A verification token is ``base64url("<account_id>|<issued_ns>|<hmac>")``.
The HMAC binds the account ID and issue time to the server key so the link
cannot be forged for another account or extended past its TTL.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from typing import Callable

from zust.service.errors import BadRequestError

_NS_PER_SECOND = 1_000_000_000


class VerificationTokens:
    def __init__(
        self,
        secret_key: str,
        *,
        ttl_seconds: int = 24 * 3600,
        clock_ns: Callable[[], int] = time.time_ns,
    ) -> None:
        self._key = secret_key.encode("utf-8")
        self.ttl_seconds = ttl_seconds
        self._clock_ns = clock_ns

    def _signature(self, account_id: str, issued_ns: int) -> str:
        message = f"verify|{account_id}|{issued_ns}"
        return hmac.new(self._key, message.encode("utf-8"), hashlib.sha256).hexdigest()

    def generate(self, account_id: str) -> str:
        issued_ns = self._clock_ns()
        raw = f"{account_id}|{issued_ns}|{self._signature(account_id, issued_ns)}"
        return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")

    def validate(self, token: str) -> str:
        """Return the account ID the token was issued for."""
        if not token:
            raise BadRequestError("Missing token")
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii")).decode("utf-8")
            account_id, issued, signature = raw.split("|")
            issued_ns = int(issued)
        except (binascii.Error, UnicodeError, ValueError):
            raise BadRequestError("Invalid token")

        expected = self._signature(account_id, issued_ns)
        if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
            raise BadRequestError("Invalid token")

        age_ns = self._clock_ns() - issued_ns
        if age_ns > self.ttl_seconds * _NS_PER_SECOND:
            raise BadRequestError("Token has expired")
        return account_id
