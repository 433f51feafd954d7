"""Tests for the session cache."""

import asyncio
from datetime import datetime, timedelta, timezone

from chatgate.schemas import Credential
from chatgate.session_cache import SessionCache, StaticAuthProvider


class FakeClock:
    def __init__(self):
        self.current = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, seconds):
        self.current += timedelta(seconds=seconds)


class ScriptedProvider:
    """Provider returning a fixed credential, or failing/stalling on demand."""

    def __init__(self, credential=None, error=None, delay=0.0):
        self.credential = credential
        self.error = error
        self.delay = delay
        self.refresh_count = 0

    async def refresh(self):
        self.refresh_count += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.credential


class TestSessionCache:
    """Test credential caching and refresh."""

    def test_serves_cached_credential_within_ttl(self):
        provider = StaticAuthProvider("tok")
        cache = SessionCache(provider, ttl_seconds=300, clock=FakeClock())

        first = asyncio.run(cache.get_credential())
        second = asyncio.run(cache.get_credential())

        assert first.token == "tok"
        assert second is first
        assert provider.refresh_count == 1

    def test_refreshes_after_ttl(self):
        clock = FakeClock()
        provider = StaticAuthProvider("tok")
        cache = SessionCache(provider, ttl_seconds=300, clock=clock)

        asyncio.run(cache.get_credential())
        clock.advance(301)
        asyncio.run(cache.get_credential())

        assert provider.refresh_count == 2

    def test_expiry_is_capped_by_ttl_and_provider(self):
        clock = FakeClock()
        short = Credential(token="short", expires_at=clock.current + timedelta(seconds=30))
        cache = SessionCache(ScriptedProvider(short), ttl_seconds=300, clock=clock)

        credential = asyncio.run(cache.get_credential())

        assert credential.expires_at == clock.current + timedelta(seconds=30)

        long_lived = Credential(token="long", expires_at=clock.current + timedelta(days=1))
        cache = SessionCache(ScriptedProvider(long_lived), ttl_seconds=300, clock=clock)
        assert asyncio.run(cache.get_credential()).expires_at == clock.current + timedelta(seconds=300)

    def test_no_session_means_anonymous(self):
        provider = StaticAuthProvider(None)
        cache = SessionCache(provider, clock=FakeClock())

        assert asyncio.run(cache.get_credential()) is None
        assert cache.cached is None

    def test_failed_refresh_clears_cache(self):
        """A refresh failure never leaves a stale credential behind."""
        clock = FakeClock()
        provider = ScriptedProvider(Credential(token="tok", expires_at=clock.current + timedelta(hours=1)))
        cache = SessionCache(provider, ttl_seconds=300, clock=clock)
        asyncio.run(cache.get_credential())

        clock.advance(301)
        provider.error = RuntimeError("auth backend down")

        assert asyncio.run(cache.get_credential()) is None
        assert cache.cached is None

    def test_slow_refresh_times_out(self):
        provider = ScriptedProvider(Credential(token="tok", expires_at=datetime.max.replace(tzinfo=timezone.utc)), delay=1.0)
        cache = SessionCache(provider, timeout_seconds=0.01, clock=FakeClock())

        assert asyncio.run(cache.get_credential()) is None

    def test_invalidate_forces_refresh(self):
        provider = StaticAuthProvider("tok")
        cache = SessionCache(provider, clock=FakeClock())
        asyncio.run(cache.get_credential())

        cache.invalidate()
        asyncio.run(cache.get_credential())

        assert provider.refresh_count == 2

    def test_concurrent_callers_share_one_refresh(self):
        clock = FakeClock()
        provider = ScriptedProvider(Credential(token="tok", expires_at=clock.current + timedelta(hours=1)), delay=0.01)
        cache = SessionCache(provider, clock=clock)

        async def _run():
            return await asyncio.gather(*(cache.get_credential() for _ in range(5)))

        results = asyncio.run(_run())

        assert all(r.token == "tok" for r in results)
        assert provider.refresh_count == 1
