"""
Session cache for Chatgate.

Holds a short-lived authentication credential so every request does not pay
for an auth round-trip. A missing credential is not an error: it means the
request proceeds as anonymous.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, UTC
from typing import Callable, Optional, Protocol

from chatgate.schemas import Credential


logger = logging.getLogger("chatgate.session")


def utc_now() -> datetime:
    return datetime.now(UTC)


class AuthProvider(Protocol):
    """Issues and refreshes credentials."""

    async def refresh(self) -> Optional[Credential]:
        ...


class StaticAuthProvider:
    """Auth provider that hands out a fixed token (or nothing)."""

    def __init__(self, token: Optional[str] = None, lifetime_seconds: float = 3600.0):
        self.token = token
        self.lifetime_seconds = lifetime_seconds
        self.refresh_count = 0

    async def refresh(self) -> Optional[Credential]:
        self.refresh_count += 1
        if not self.token:
            return None
        return Credential(
            token=self.token,
            expires_at=utc_now() + timedelta(seconds=self.lifetime_seconds),
        )


class SessionCache:
    """
    TTL cache around an auth provider.

    The cached credential is replaced wholesale on refresh and cleared
    entirely when a refresh fails; a stale value is never retained.
    """

    def __init__(
        self,
        provider: AuthProvider,
        ttl_seconds: float = 300.0,
        timeout_seconds: Optional[float] = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the cache.

        Args:
            provider: Source of fresh credentials.
            ttl_seconds: Maximum time a credential is served from cache.
            timeout_seconds: Bound on a single refresh call (None for no bound).
            clock: Returns the current UTC time.
        """
        self.provider = provider
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self._clock = clock
        self._cached: Optional[Credential] = None
        self._refresh_lock = asyncio.Lock()

    @property
    def cached(self) -> Optional[Credential]:
        return self._cached

    async def get_credential(self) -> Optional[Credential]:
        """
        Return a valid credential, refreshing if needed.

        Returns:
            Credential, or None to proceed anonymously.
        """
        cached = self._cached
        if cached is not None and cached.is_valid(self._clock()):
            return cached

        async with self._refresh_lock:
            # Another waiter may have refreshed while we were queued.
            cached = self._cached
            now = self._clock()
            if cached is not None and cached.is_valid(now):
                return cached
            return await self._refresh(now)

    def invalidate(self) -> None:
        """Drop the cached credential."""
        if self._cached is not None:
            logger.info("Session cache cleared")
        self._cached = None

    async def _refresh(self, now: datetime) -> Optional[Credential]:
        try:
            if self.timeout_seconds is None:
                fresh = await self.provider.refresh()
            else:
                fresh = await asyncio.wait_for(self.provider.refresh(), self.timeout_seconds)
        except Exception as exc:
            logger.warning("Session refresh failed, continuing without auth: %s", exc)
            self._cached = None
            return None

        if fresh is None:
            logger.debug("No session available; proceeding as anonymous")
            self._cached = None
            return None

        ttl_expiry = now + timedelta(seconds=self.ttl_seconds)
        self._cached = Credential(token=fresh.token, expires_at=min(fresh.expires_at, ttl_expiry))
        return self._cached
