"""APNs provider token signing.

A provider token is an ES256 JWT with header {alg, kid} and claims
{iss: team id, iat: unix seconds}. The gateway rejects tokens older than an
hour with `ExpiredProviderToken`, so tokens are cached and re-signed with a
fresh `iat` once they reach `refresh_after` seconds of age.
"""

import base64
import logging
import threading
import time
from pathlib import Path
from typing import Callable

from jose import jwt

from walletpass.config import Settings
from walletpass.metrics import provider_tokens_signed_total

logger = logging.getLogger(__name__)

PROVIDER_TOKEN_MAX_AGE = 3600


class ProviderTokenError(RuntimeError):
    """Push signing key is missing or unusable."""


def normalize_private_key(raw: str | None) -> str:
    """Accept a PEM key with literal `\\n` escapes or base64-wrapped PEM."""
    value = (raw or "").strip()
    if not value:
        return ""
    normalized = value.replace("\\n", "\n").strip()
    if "BEGIN PRIVATE KEY" in normalized or "BEGIN EC PRIVATE KEY" in normalized:
        return normalized
    try:
        decoded = base64.b64decode(normalized).decode("utf-8").strip()
    except (ValueError, UnicodeDecodeError):
        return ""
    if "PRIVATE KEY" in decoded:
        return decoded
    return ""


def load_private_key(settings: Settings) -> str:
    key = normalize_private_key(settings.apns_private_key.get_secret_value())
    if not key and settings.apns_key_path:
        key = normalize_private_key(Path(settings.apns_key_path).read_text(encoding="utf-8"))
    if not key:
        raise ProviderTokenError("APNs signing key is not configured")
    return key


class ProviderTokenSigner:
    """Caches one signed provider token and re-signs it before it expires."""

    def __init__(
        self,
        team_id: str,
        key_id: str,
        private_key: str,
        refresh_after: int = 3000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not (team_id and key_id and private_key):
            raise ProviderTokenError("APNs team id, key id and private key are required")
        self._team_id = team_id
        self._key_id = key_id
        self._private_key = private_key
        self._refresh_after = min(refresh_after, PROVIDER_TOKEN_MAX_AGE - 1)
        self._clock = clock
        self._lock = threading.Lock()
        self._token: str | None = None
        self._issued_at: int = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderTokenSigner":
        return cls(
            team_id=settings.apns_team_id,
            key_id=settings.apns_key_id,
            private_key=load_private_key(settings),
            refresh_after=settings.apns_token_refresh_seconds,
        )

    @property
    def issued_at(self) -> int:
        return self._issued_at

    def token(self) -> str:
        now = self._clock()
        with self._lock:
            if self._token and now - self._issued_at < self._refresh_after:
                return self._token
            self._issued_at = int(now)
            self._token = jwt.encode(
                {"iss": self._team_id, "iat": self._issued_at},
                self._private_key,
                algorithm="ES256",
                headers={"kid": self._key_id},
            )
            provider_tokens_signed_total.inc()
            logger.debug("Signed APNs provider token kid=%s iat=%d", self._key_id, self._issued_at)
            return self._token

    def invalidate(self) -> None:
        """Drop the cached token; the next call signs a new one."""
        with self._lock:
            self._token = None
            self._issued_at = 0
