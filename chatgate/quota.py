"""
Quota gate for Chatgate.

Decides whether a request may proceed. Authenticated callers are checked
against a remote per-user counter; anonymous callers against the local
usage ledger plus a burst rule that blocks rapid-fire automated sends.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Protocol

from chatgate.config import GatewayConfig
from chatgate.errors import ErrorKind
from chatgate.ledger import UsageLedgerStore


logger = logging.getLogger("chatgate.quota")

ANONYMOUS_TIER = "anonymous"


@dataclass(frozen=True)
class Identity:
    """Who is calling."""
    client_id: str  # One per browser session; keys the lock and the ledger
    fingerprint: str
    user_id: Optional[str] = None

    @property
    def is_authenticated(self) -> bool:
        """Whether a user id is claimed. Trusted only alongside a credential."""
        return self.user_id is not None

    @property
    def lock_key(self) -> str:
        return self.user_id or self.client_id


@dataclass(frozen=True)
class QuotaStatus:
    """Remote counter state for an authenticated user."""
    count: int
    limit: int
    tier: str = "free"


@dataclass(frozen=True)
class QuotaDecision:
    """Result of an authorization check."""
    allowed: bool
    kind: Optional[ErrorKind] = None
    message: str = ""
    limit: Optional[int] = None
    current: Optional[int] = None
    tier: Optional[str] = None
    reset_at: Optional[datetime] = None

    @property
    def details(self) -> dict:
        return {
            "limit": self.limit,
            "current": self.current,
            "tier": self.tier,
            "reset_at": self.reset_at,
        }


def allow(**kwargs) -> QuotaDecision:
    return QuotaDecision(allowed=True, **kwargs)


def deny(kind: ErrorKind, message: str, **kwargs) -> QuotaDecision:
    return QuotaDecision(allowed=False, kind=kind, message=message, **kwargs)


class RemoteQuotaCounter(Protocol):
    """Per-user message counter owned by the backend."""

    async def fetch(self, user_id: str) -> QuotaStatus:
        ...

    async def increment(self, user_id: str) -> None:
        ...


class InMemoryQuotaCounter:
    """
    In-memory remote counter for tests and local runs.

    Billing collaborators adjust limits through ``set_limit``.
    """

    def __init__(self, default_limit: int = 50, default_tier: str = "free"):
        self.default_limit = default_limit
        self.default_tier = default_tier
        self._lock = threading.Lock()
        self._status: dict[str, QuotaStatus] = {}

    async def fetch(self, user_id: str) -> QuotaStatus:
        with self._lock:
            return self._status.get(
                user_id,
                QuotaStatus(count=0, limit=self.default_limit, tier=self.default_tier),
            )

    async def increment(self, user_id: str) -> None:
        with self._lock:
            current = self._status.get(
                user_id,
                QuotaStatus(count=0, limit=self.default_limit, tier=self.default_tier),
            )
            self._status[user_id] = QuotaStatus(
                count=current.count + 1, limit=current.limit, tier=current.tier
            )

    def set_limit(self, user_id: str, limit: int, tier: Optional[str] = None) -> QuotaStatus:
        with self._lock:
            current = self._status.get(
                user_id,
                QuotaStatus(count=0, limit=self.default_limit, tier=self.default_tier),
            )
            updated = QuotaStatus(count=current.count, limit=limit, tier=tier or current.tier)
            self._status[user_id] = updated
            return updated


class QuotaGate:
    """
    Authorizes requests against message quotas.

    Example:
        ```python
        gate = QuotaGate(ledger=UsageLedgerStore(), counter=InMemoryQuotaCounter())

        decision = await gate.authorize(identity, identity.is_authenticated)
        if decision.allowed:
            await gate.record(identity, identity.is_authenticated)
        ```
    """

    def __init__(
        self,
        ledger: Optional[UsageLedgerStore] = None,
        counter: Optional[RemoteQuotaCounter] = None,
        config: Optional[GatewayConfig] = None,
    ):
        self.config = config or GatewayConfig()
        self.ledger = ledger or UsageLedgerStore(config=self.config)
        self.counter = counter or InMemoryQuotaCounter()

    async def authorize(self, identity: Identity, is_authenticated: bool) -> QuotaDecision:
        """
        Check whether a request may proceed.

        Args:
            identity: Caller identity.
            is_authenticated: Whether the caller holds a user session.

        Returns:
            QuotaDecision; ``allowed`` is False with a kind of QuotaExceeded
            or RateLimited when denied.
        """
        if is_authenticated and identity.user_id:
            return await self._authorize_user(identity.user_id)
        return await self._authorize_anonymous(identity)

    async def record(self, identity: Identity, is_authenticated: bool) -> None:
        """Count one accepted request. Call exactly once per accepted request."""
        if is_authenticated and identity.user_id:
            await self.counter.increment(identity.user_id)
            return

        updated = await asyncio.to_thread(self.ledger.increment, identity.client_id, identity.fingerprint)
        if updated is None:
            # Lost a race with another tab; the next authorize() will deny.
            logger.warning("Anonymous ledger for %s already at limit on record", identity.client_id)

    async def start_session(self, identity: Identity) -> None:
        """Restart the anonymous burst window for a browser."""
        await asyncio.to_thread(self.ledger.start_session, identity.client_id, identity.fingerprint)

    async def usage(self, identity: Identity, is_authenticated: bool) -> dict:
        """Current usage for display: count, limit, remaining, tier, reset time."""
        if is_authenticated and identity.user_id:
            status = await self.counter.fetch(identity.user_id)
            return {
                "count": status.count,
                "limit": status.limit,
                "remaining": max(0, status.limit - status.count),
                "tier": status.tier,
                "reset_at": None,
            }

        ledger = await asyncio.to_thread(self.ledger.load, identity.client_id, identity.fingerprint)
        limit = self.ledger.daily_limit
        return {
            "count": ledger.count,
            "limit": limit,
            "remaining": max(0, limit - ledger.count),
            "tier": ANONYMOUS_TIER,
            "reset_at": ledger.reset_at.isoformat(),
        }

    async def _authorize_user(self, user_id: str) -> QuotaDecision:
        status = await self.counter.fetch(user_id)
        if status.count >= status.limit:
            logger.info("User %s over quota (%d/%d, %s)", user_id, status.count, status.limit, status.tier)
            return deny(
                ErrorKind.QUOTA_EXCEEDED,
                f"Message limit reached: {status.count} of {status.limit} for the {status.tier} plan.",
                limit=status.limit,
                current=status.count,
                tier=status.tier,
            )
        return allow(limit=status.limit, current=status.count, tier=status.tier)

    async def _authorize_anonymous(self, identity: Identity) -> QuotaDecision:
        ledger = await asyncio.to_thread(self.ledger.load, identity.client_id, identity.fingerprint)
        limit = self.ledger.daily_limit

        if ledger.count >= limit:
            return deny(
                ErrorKind.QUOTA_EXCEEDED,
                f"Daily limit of {limit} messages reached. Sign in or come back after the reset.",
                limit=limit,
                current=ledger.count,
                tier=ANONYMOUS_TIER,
                reset_at=ledger.reset_at,
            )

        elapsed = (self.ledger.now() - ledger.session_start).total_seconds()
        if (
            ledger.count + 1 > self.config.burst_max_messages
            and elapsed < self.config.burst_window_seconds
        ):
            logger.info(
                "Burst rule tripped for %s: %d messages in %.2fs",
                identity.client_id,
                ledger.count + 1,
                elapsed,
            )
            return deny(
                ErrorKind.RATE_LIMITED,
                "You are sending messages too quickly. Please wait a moment.",
                limit=limit,
                current=ledger.count,
                tier=ANONYMOUS_TIER,
                reset_at=ledger.reset_at,
            )

        return allow(limit=limit, current=ledger.count, tier=ANONYMOUS_TIER, reset_at=ledger.reset_at)
