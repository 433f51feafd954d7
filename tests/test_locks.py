"""Tests for single-flight locks."""

import asyncio

import pytest

from chatgate.config import GatewayConfig
from chatgate.errors import ErrorKind, RequestInProgressError
from chatgate.locks import LockRegistry, SingleFlightLock


class FakeClock:
    def __init__(self):
        self.current = 1000.0

    def __call__(self):
        return self.current


class TestSingleFlightLock:
    """Test ownership, staleness and bounded waiting."""

    def test_second_acquire_fails_while_held(self):
        lock = SingleFlightLock("client-1", clock=FakeClock())
        token = lock.try_acquire()

        assert token is not None
        assert lock.held
        assert lock.try_acquire() is None

    def test_release_frees_lock(self):
        lock = SingleFlightLock("client-1", clock=FakeClock())
        token = lock.try_acquire()

        assert lock.release(token) is True
        assert not lock.held
        assert lock.try_acquire() is not None

    def test_wrong_token_cannot_release(self):
        lock = SingleFlightLock("client-1", clock=FakeClock())
        lock.try_acquire()

        assert lock.release("not-the-owner") is False
        assert lock.held

    def test_stale_holder_is_force_released(self):
        """A holder idle past the stale threshold is replaced, and cannot release its successor."""
        clock = FakeClock()
        lock = SingleFlightLock("client-1", stale_seconds=60, clock=clock)
        old = lock.try_acquire()

        clock.current += 61
        new = lock.try_acquire()

        assert new is not None and new != old
        assert lock.force_releases == 1
        assert lock.release(old) is False
        assert lock.held
        assert lock.release(new) is True

    def test_touch_keeps_active_holder(self):
        clock = FakeClock()
        lock = SingleFlightLock("client-1", stale_seconds=60, clock=clock)
        token = lock.try_acquire()

        clock.current += 50
        lock.touch(token)
        clock.current += 50

        assert lock.try_acquire() is None

    def test_acquire_rejects_after_wait(self):
        lock = SingleFlightLock("client-1", wait_seconds=0.0, clock=FakeClock())
        lock.try_acquire()

        with pytest.raises(RequestInProgressError) as exc_info:
            asyncio.run(lock.acquire())
        assert exc_info.value.kind == ErrorKind.REQUEST_IN_PROGRESS

    def test_acquire_waits_for_release(self):
        """A short wait succeeds if the holder finishes in time."""
        lock = SingleFlightLock("client-1", wait_seconds=1.0, poll_seconds=0.01)
        token = lock.try_acquire()

        async def _run():
            async def release_soon():
                await asyncio.sleep(0.03)
                lock.release(token)

            releaser = asyncio.ensure_future(release_soon())
            acquired = await lock.acquire()
            await releaser
            return acquired

        assert asyncio.run(_run()) != token


class TestLockRegistry:
    """Test per-key lock creation."""

    def test_creates_one_lock_per_key(self):
        registry = LockRegistry(GatewayConfig())
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")

    def test_lock_uses_config(self):
        registry = LockRegistry(GatewayConfig(lock_wait_seconds=0.5, lock_stale_seconds=30))
        lock = registry.get("a")
        assert lock.wait_seconds == 0.5
        assert lock.stale_seconds == 30

    def test_hold_releases_on_error(self):
        registry = LockRegistry(GatewayConfig())

        async def _run():
            async with registry.hold("a"):
                assert registry.is_held("a")
                raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            asyncio.run(_run())
        assert not registry.is_held("a")

    def test_unknown_key_is_not_held(self):
        assert not LockRegistry().is_held("never-used")

    def test_released_lock_is_dropped(self):
        """Keys do not accumulate once their requests finish."""
        registry = LockRegistry(GatewayConfig())

        async def _run():
            for key in ("a", "b", "c"):
                async with registry.hold(key):
                    assert len(registry) == 1

        asyncio.run(_run())
        assert len(registry) == 0

    def test_lock_with_waiter_is_kept(self):
        registry = LockRegistry(GatewayConfig(lock_wait_seconds=1.0, lock_poll_seconds=0.01))

        async def _run():
            first = await registry.acquire("a")
            waiter = asyncio.ensure_future(registry.acquire("a"))
            await asyncio.sleep(0.03)
            first.release()
            assert len(registry) == 1

            second = await waiter
            assert second.lock is first.lock
            second.release()

        asyncio.run(_run())
        assert len(registry) == 0

    def test_rejected_waiter_keeps_holder_entry(self):
        registry = LockRegistry(GatewayConfig(lock_wait_seconds=0.02, lock_poll_seconds=0.005))

        async def _run():
            lease = await registry.acquire("a")
            with pytest.raises(RequestInProgressError):
                await registry.acquire("a")
            assert registry.is_held("a")
            lease.release()

        asyncio.run(_run())
        assert len(registry) == 0
