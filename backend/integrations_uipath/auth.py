"""
OAuth2 client-credentials tokens with an in-process cache.

One cache entry exists per credential key (for the queue client: per
environment). Concurrent callers for the same key share a single in-flight
token exchange; the key's lock is held for the duration of the exchange and
waiters pick up the freshly cached token once it is released.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from .exceptions import UIPATH_GATEWAY, AuthenticationFailure, DestinationTransientError

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN_SECONDS = 3600


@dataclass(frozen=True)
class ClientCredentials:
    key: str
    token_url: str
    client_id: str
    client_secret: str
    scope: str = ""
    timeout_seconds: float = 30.0
    gateway_name: str = UIPATH_GATEWAY


@dataclass(frozen=True)
class CachedToken:
    token: str
    expires_at: float
    token_type: str = "Bearer"

    def is_fresh(self, *, now: float, margin_seconds: float) -> bool:
        return self.expires_at > now + margin_seconds


@dataclass
class TokenCacheStats:
    hits: int = 0
    misses: int = 0
    exchanges: int = 0
    invalidations: int = 0
    errors: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def bump(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def as_dict(self) -> dict[str, int]:
        with self._lock:
            return {
                "hits": self.hits,
                "misses": self.misses,
                "exchanges": self.exchanges,
                "invalidations": self.invalidations,
                "errors": self.errors,
            }


class TokenCache:
    def __init__(self, *, refresh_margin_seconds: float = 300, clock: Callable[[], float] = time.time):
        self.refresh_margin_seconds = refresh_margin_seconds
        self._clock = clock
        self._entries: dict[str, CachedToken] = {}
        self._entries_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self.stats = TokenCacheStats()

    def _lock_for(self, key: str) -> threading.Lock:
        with self._entries_lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[key] = lock
            return lock

    def _fresh_entry(self, key: str) -> CachedToken | None:
        with self._entries_lock:
            entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(now=self._clock(), margin_seconds=self.refresh_margin_seconds):
            return entry
        return None

    def get_token(self, credentials: ClientCredentials) -> str:
        """Return a bearer token, exchanging credentials when the cached one is missing or near expiry."""
        entry = self._fresh_entry(credentials.key)
        if entry is not None:
            self.stats.bump("hits")
            return entry.token

        with self._lock_for(credentials.key):
            # Another caller may have refreshed while we waited on the lock.
            entry = self._fresh_entry(credentials.key)
            if entry is not None:
                self.stats.bump("hits")
                return entry.token

            self.stats.bump("misses")
            entry = self._exchange(credentials)
            with self._entries_lock:
                self._entries[credentials.key] = entry
            return entry.token

    def invalidate(self, credentials: ClientCredentials) -> None:
        with self._entries_lock:
            removed = self._entries.pop(credentials.key, None)
        if removed is not None:
            self.stats.bump("invalidations")
            logger.info("Invalidated cached %s token (%s)", credentials.gateway_name, credentials.key)

    def clear(self) -> None:
        """Drop every cached token. Primarily intended for tests."""
        with self._entries_lock:
            self._entries.clear()

    def _exchange(self, credentials: ClientCredentials) -> CachedToken:
        form = {
            "grant_type": "client_credentials",
            "client_id": credentials.client_id,
            "client_secret": credentials.client_secret,
        }
        if credentials.scope:
            form["scope"] = credentials.scope

        gateway = credentials.gateway_name
        started = time.monotonic()
        try:
            with httpx.Client(timeout=credentials.timeout_seconds) as client:
                response = client.post(
                    credentials.token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            self.stats.bump("errors")
            raise DestinationTransientError(f"{gateway} token request timed out", gateway_name=gateway) from exc
        except httpx.RequestError as exc:
            self.stats.bump("errors")
            raise DestinationTransientError(
                f"{gateway} token request failed: {exc}", gateway_name=gateway
            ) from exc

        status = response.status_code
        if status in (400, 401, 403):
            self.stats.bump("errors")
            logger.error("%s rejected client credentials (%s): HTTP %d", gateway, credentials.key, status)
            raise AuthenticationFailure(
                f"{gateway} rejected client credentials (HTTP {status})",
                status_code=status,
                gateway_name=gateway,
            )
        if status == 429 or status >= 500:
            self.stats.bump("errors")
            raise DestinationTransientError(
                f"{gateway} token endpoint unavailable (HTTP {status})",
                status_code=status,
                gateway_name=gateway,
            )
        if not 200 <= status < 300:
            self.stats.bump("errors")
            raise AuthenticationFailure(
                f"{gateway} token request failed (HTTP {status})",
                status_code=status,
                gateway_name=gateway,
            )

        try:
            body = response.json()
        except ValueError:
            body = None
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            self.stats.bump("errors")
            raise AuthenticationFailure(f"{gateway} token response did not contain an access token", gateway_name=gateway)

        expires_in = body.get("expires_in")
        if not isinstance(expires_in, (int, float)) or expires_in <= 0:
            expires_in = DEFAULT_EXPIRES_IN_SECONDS
        self.stats.bump("exchanges")
        logger.info(
            "Obtained %s token for %s in %.0fms (expires in %ss)",
            gateway,
            credentials.key,
            (time.monotonic() - started) * 1000,
            expires_in,
        )
        return CachedToken(
            token=str(token),
            expires_at=self._clock() + float(expires_in),
            token_type=str(body.get("token_type") or "Bearer"),
        )


_cache_lock = threading.Lock()
_token_cache: TokenCache | None = None


def get_token_cache() -> TokenCache:
    """Process-wide token cache shared by every outbound client."""
    global _token_cache
    with _cache_lock:
        if _token_cache is None:
            from django.conf import settings

            from .config import normalize_uipath_settings

            normalized = normalize_uipath_settings(getattr(settings, "UIPATH", None))
            _token_cache = TokenCache(refresh_margin_seconds=normalized["token_refresh_margin_seconds"])  # type: ignore[arg-type]
        return _token_cache
