"""
Single-flight locks for Chatgate.

At most one request per client may be in flight. A second request waits
briefly and is then rejected; it is never queued. A holder that has shown no
activity for ``lock_stale_seconds`` is considered wedged and is force-released
so a client can never be locked out permanently. A running request keeps its
lease alive with a heartbeat, so only an abandoned holder goes stale.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional

from chatgate.config import GatewayConfig
from chatgate.errors import RequestInProgressError


logger = logging.getLogger("chatgate.locks")


class SingleFlightLock:
    """
    Mutual-exclusion flag for one client.

    Each acquisition gets an ownership token. Only the current owner can
    release or refresh the lock, so a holder that was force-released cannot
    release the lock out from under its successor.
    """

    def __init__(
        self,
        key: str,
        wait_seconds: float = 1.0,
        poll_seconds: float = 0.05,
        stale_seconds: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.wait_seconds = wait_seconds
        self.poll_seconds = poll_seconds
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._owner: Optional[str] = None
        self._last_active = 0.0
        self.force_releases = 0
        self.waiters = 0

    @property
    def held(self) -> bool:
        return self._owner is not None

    def try_acquire(self) -> Optional[str]:
        """Take the lock if free or stale. Returns the ownership token or None."""
        now = self._clock()
        if self._owner is not None:
            idle = now - self._last_active
            if idle < self.stale_seconds:
                return None
            logger.warning("Force-releasing stale lock for %s (idle %.1fs)", self.key, idle)
            self.force_releases += 1

        token = uuid.uuid4().hex
        self._owner = token
        self._last_active = now
        return token

    async def acquire(self) -> str:
        """
        Acquire the lock, waiting at most ``wait_seconds``.

        Returns:
            Ownership token.

        Raises:
            RequestInProgressError: If another request still holds the lock.
        """
        deadline = self._clock() + self.wait_seconds
        self.waiters += 1
        try:
            while True:
                token = self.try_acquire()
                if token is not None:
                    return token
                if self._clock() >= deadline:
                    logger.info("Rejecting concurrent request for %s", self.key)
                    raise RequestInProgressError(
                        "A request is already in progress. Please wait for it to finish."
                    )
                await asyncio.sleep(self.poll_seconds)
        finally:
            self.waiters -= 1

    def owns(self, token: str) -> bool:
        return self._owner == token

    def touch(self, token: str) -> None:
        """Record activity so an active holder is not treated as stale."""
        if self._owner == token:
            self._last_active = self._clock()

    def release(self, token: str) -> bool:
        if self._owner != token:
            logger.debug("Ignoring release of %s by a previous owner", self.key)
            return False
        self._owner = None
        return True


class LockLease:
    """A held lock plus the token that proves ownership."""

    def __init__(
        self,
        lock: SingleFlightLock,
        token: str,
        on_release: Optional[Callable[[SingleFlightLock], None]] = None,
    ):
        self.lock = lock
        self.token = token
        self._on_release = on_release

    @property
    def active(self) -> bool:
        return self.lock.owns(self.token)

    def touch(self) -> None:
        self.lock.touch(self.token)

    async def keep_alive(self, interval: float) -> None:
        """Touch the lock every ``interval`` seconds until cancelled or lost."""
        while self.active:
            await asyncio.sleep(interval)
            self.touch()

    def release(self) -> bool:
        released = self.lock.release(self.token)
        if self._on_release is not None:
            self._on_release(self.lock)
        return released


class LockRegistry:
    """
    Creates one SingleFlightLock per client key on first use.

    A lock is dropped again once it is neither held nor waited on.
    """

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or GatewayConfig()
        self._clock = clock
        self._locks: Dict[str, SingleFlightLock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, key: str) -> SingleFlightLock:
        lock = self._locks.get(key)
        if lock is None:
            lock = SingleFlightLock(
                key,
                wait_seconds=self.config.lock_wait_seconds,
                poll_seconds=self.config.lock_poll_seconds,
                stale_seconds=self.config.lock_stale_seconds,
                clock=self._clock,
            )
            self._locks[key] = lock
        return lock

    def is_held(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.held

    async def acquire(self, key: str) -> LockLease:
        lock = self.get(key)
        try:
            token = await lock.acquire()
        except RequestInProgressError:
            self._discard_if_idle(lock)
            raise
        return LockLease(lock, token, on_release=self._discard_if_idle)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[LockLease]:
        """Hold the lock for ``key`` for the duration of the block."""
        lease = await self.acquire(key)
        try:
            yield lease
        finally:
            lease.release()

    def _discard_if_idle(self, lock: SingleFlightLock) -> None:
        # Waiters keep a reference to the lock object, so it must outlive them.
        if not lock.held and lock.waiters == 0 and self._locks.get(lock.key) is lock:
            del self._locks[lock.key]
