"""Tests for qqbot/token_cache.py."""

from __future__ import annotations

import asyncio

import pytest

from qqbot.api import TokenGrant
from qqbot.errors import AuthenticationError
from qqbot.token_cache import AccessToken, AccessTokenCache


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class GatedIssuer:
    """Token issuer that blocks until released, counting calls."""

    def __init__(self, *, expires_in: float = 7200.0) -> None:
        self.calls: list[tuple[str, str]] = []
        self.release = asyncio.Event()
        self.expires_in = expires_in
        self.error: Exception | None = None

    async def __call__(self, app_id: str, secret: str) -> TokenGrant:
        self.calls.append((app_id, secret))
        await self.release.wait()
        if self.error is not None:
            raise self.error
        return TokenGrant(access_token=f"tok-{len(self.calls)}", expires_in=self.expires_in)


class TestAccessToken:
    def test_validity_respects_margin(self) -> None:
        token = AccessToken(value="t", expires_at=100.0)
        assert token.is_valid(39.0, safety_margin=60.0)
        assert not token.is_valid(40.0, safety_margin=60.0)
        assert not token.is_valid(100.0)

    def test_repr_hides_value(self) -> None:
        assert "secret-token" not in repr(AccessToken(value="secret-token", expires_at=1.0))


class TestCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_issuance(self) -> None:
        issuer = GatedIssuer()
        cache = AccessTokenCache(issuer)

        waiters = [asyncio.create_task(cache.get_token("app", "sec")) for _ in range(10)]
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        issuer.release.set()
        tokens = await asyncio.gather(*waiters)

        assert len(issuer.calls) == 1
        assert {t.value for t in tokens} == {"tok-1"}

    @pytest.mark.asyncio
    async def test_distinct_credentials_issue_separately(self) -> None:
        issuer = GatedIssuer()
        issuer.release.set()
        cache = AccessTokenCache(issuer)

        a, b = await asyncio.gather(cache.get_token("app", "s1"), cache.get_token("app", "s2"))

        assert len(issuer.calls) == 2
        assert a.value != b.value

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter_then_retries(self) -> None:
        issuer = GatedIssuer()
        issuer.error = AuthenticationError("bad secret")
        cache = AccessTokenCache(issuer)

        waiters = [asyncio.create_task(cache.get_token("app", "sec")) for _ in range(3)]
        await asyncio.sleep(0)
        issuer.release.set()
        results = await asyncio.gather(*waiters, return_exceptions=True)

        assert len(issuer.calls) == 1
        assert all(isinstance(r, AuthenticationError) for r in results)
        assert cache.peek("app", "sec") is None

        issuer.error = None
        token = await cache.get_token("app", "sec")
        assert token.value == "tok-2"
        assert len(issuer.calls) == 2

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_cancel_refresh(self) -> None:
        issuer = GatedIssuer()
        cache = AccessTokenCache(issuer)

        first = asyncio.create_task(cache.get_token("app", "sec"))
        second = asyncio.create_task(cache.get_token("app", "sec"))
        await asyncio.sleep(0)
        first.cancel()
        await asyncio.sleep(0)
        issuer.release.set()

        token = await second
        assert token.value == "tok-1"
        assert first.cancelled()
        assert len(issuer.calls) == 1


class TestExpiry:
    @pytest.mark.asyncio
    async def test_cached_until_safety_margin(self) -> None:
        clock = FakeClock()
        issuer = GatedIssuer(expires_in=7200.0)
        issuer.release.set()
        cache = AccessTokenCache(issuer, safety_margin=60.0, clock=clock)

        first = await cache.get_token("app", "sec")
        clock.now += 7200.0 - 61.0
        assert (await cache.get_token("app", "sec")) is first
        assert len(issuer.calls) == 1

        clock.now += 1.0
        refreshed = await cache.get_token("app", "sec")
        assert refreshed.value == "tok-2"
        assert len(issuer.calls) == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self) -> None:
        issuer = GatedIssuer()
        issuer.release.set()
        cache = AccessTokenCache(issuer)

        await cache.get_token("app", "sec")
        cache.invalidate("app", "sec")
        assert cache.peek("app", "sec") is None
        assert (await cache.get_token("app", "sec")).value == "tok-2"

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        issuer = GatedIssuer()
        issuer.release.set()
        cache = AccessTokenCache(issuer)
        await cache.get_token("app", "sec")
        cache.clear()
        assert cache.peek("app", "sec") is None

    def test_negative_margin_clamped(self) -> None:
        cache = AccessTokenCache(GatedIssuer(), safety_margin=-5)
        assert cache._safety_margin == 0.0
