"""
Bearer Token Cache - process-local cache of a gateway access token.

Concurrent callers needing a token while it is stale share one refresh;
a token is never handed out past its expiry minus the safety margin.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from structlog import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenGrant:
    """Raw result of a credential exchange."""

    access_token: str
    expires_in: float | None


@dataclass(frozen=True)
class CachedToken:
    value: str
    expires_at: float


def compute_expiry(expires_in: float | None, now: float, margin: float) -> float:
    """
    Absolute expiry (epoch seconds) for a grant, minus the safety margin.

    The gateway's `expires_in` is ambiguous: values greater than `now` are
    treated as an absolute epoch timestamp, anything else as a duration.
    A missing value expires immediately.
    """
    if expires_in is None or expires_in <= 0:
        return now
    if expires_in > now:
        return expires_in - margin
    return now + expires_in - margin


class BearerTokenCache:
    """
    Single-slot token cache with serialized refresh.

    Usage:
        cache = BearerTokenCache(fetch_grant, refresh_margin_seconds=60)
        token = await cache.get_or_refresh()
    """

    def __init__(
        self,
        fetcher: Callable[[], Awaitable[TokenGrant]],
        refresh_margin_seconds: float = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetcher = fetcher
        self._margin = refresh_margin_seconds
        self._clock = clock
        self._cached: CachedToken | None = None
        self._lock = asyncio.Lock()

    def _valid(self, now: float) -> str | None:
        if self._cached is not None and now < self._cached.expires_at:
            return self._cached.value
        return None

    async def get_or_refresh(self, now: float | None = None) -> str:
        """
        Return a valid token, fetching a new one when absent or expired.

        Fetch failures propagate and leave the cache empty.
        """
        current = self._clock() if now is None else now
        token = self._valid(current)
        if token is not None:
            return token

        async with self._lock:
            # Another caller may have refreshed while we waited
            current = self._clock() if now is None else now
            token = self._valid(current)
            if token is not None:
                return token

            try:
                grant = await self._fetcher()
            except Exception:
                self._cached = None
                raise

            fetched_at = self._clock() if now is None else now
            expires_at = compute_expiry(grant.expires_in, fetched_at, self._margin)
            self._cached = CachedToken(value=grant.access_token, expires_at=expires_at)
            logger.info("gateway_token_refreshed", expires_at=expires_at)
            return grant.access_token

    def invalidate(self) -> None:
        """Drop the cached token (e.g. after the gateway answered 401)."""
        self._cached = None
