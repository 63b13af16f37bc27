"""
Login-with-Amazon access tokens for the inbound API.

The seller's refresh token is exchanged for an access token that lives about an
hour. Tokens are cached per (client id, refresh token) and reused until they are
within LWA_TOKEN_LEEWAY_SECONDS of expiring. Credentials are read from settings
on every call, so rotating them takes effect without a restart.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

import requests

from app.core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


class FbaInboundAuthError(Exception):
    pass


@dataclass(frozen=True)
class LwaCredentials:
    token_url: str
    client_id: str
    client_secret: str
    refresh_token: str

    @classmethod
    def from_settings(cls) -> LwaCredentials | None:
        creds = cls(
            token_url=(settings.LWA_TOKEN_URL or "").strip(),
            client_id=(settings.LWA_CLIENT_ID or "").strip(),
            client_secret=(settings.LWA_CLIENT_SECRET or "").strip(),
            refresh_token=(settings.LWA_REFRESH_TOKEN or "").strip(),
        )
        if not all((creds.token_url, creds.client_id, creds.client_secret, creds.refresh_token)):
            return None
        return creds

    @property
    def cache_key(self) -> tuple[str, str]:
        return self.client_id, self.refresh_token


def _exchange_refresh_token(creds: LwaCredentials) -> tuple[str, int]:
    try:
        response = requests.post(
            creds.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": creds.refresh_token,
                "client_id": creds.client_id,
                "client_secret": creds.client_secret,
            },
            timeout=float(settings.LWA_TIMEOUT_SECONDS or 6.0),
        )
    except requests.RequestException as exc:
        raise FbaInboundAuthError(f"LWA token request failed: {exc}") from exc

    if response.status_code >= 400:
        raise FbaInboundAuthError(f"LWA token request failed with HTTP {response.status_code}")

    try:
        body = response.json()
    except ValueError as exc:
        raise FbaInboundAuthError("LWA token endpoint returned invalid JSON.") from exc

    token = str(body.get("access_token") or "").strip()
    if not token:
        raise FbaInboundAuthError("LWA token response missing access_token.")
    try:
        expires_in = int(body.get("expires_in", DEFAULT_EXPIRES_IN))
    except (TypeError, ValueError):
        expires_in = DEFAULT_EXPIRES_IN
    return token, expires_in


class LwaTokenCache:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], tuple[str, float]] = {}

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def get(self, creds: LwaCredentials) -> str:
        leeway = max(0, int(settings.LWA_TOKEN_LEEWAY_SECONDS or 0))
        with self._lock:
            cached = self._entries.get(creds.cache_key)
            if cached and time.time() + leeway < cached[1]:
                return cached[0]
            token, expires_in = _exchange_refresh_token(creds)
            self._entries[creds.cache_key] = (token, time.time() + max(1, expires_in))
            logger.info("lwa_token_refreshed client_id=%s expires_in=%s", creds.client_id, expires_in)
            return token


_TOKEN_CACHE = LwaTokenCache()


def resolve_fba_access_token() -> str | None:
    creds = LwaCredentials.from_settings()
    if creds is None:
        logger.warning("fba_inbound_lwa_not_configured")
        return None
    return _TOKEN_CACHE.get(creds)
