from __future__ import annotations

import asyncio

import pytest

from swapwatch.core.errors import RoutingConfigNotFoundError
from swapwatch.core.models import RoutingConfig
from swapwatch.core.routing_cache import RoutingCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class CountingProvider:
    def __init__(self, fail_times: int = 0) -> None:
        self.calls: list[str] = []
        self.fail_times = fail_times

    async def get_routing_config(self, scope_id: str) -> RoutingConfig:
        self.calls.append(scope_id)
        if self.fail_times:
            self.fail_times -= 1
            raise RoutingConfigNotFoundError(scope_id)
        return RoutingConfig(scope_id=scope_id, feed_destination=f"@{scope_id}_feed")


def test_second_call_within_ttl_hits_cache() -> None:
    clock = FakeClock()
    provider = CountingProvider()
    cache = RoutingCache(provider, ttl=300, clock=clock)

    first = asyncio.run(cache.get_routing_config("scopeA"))
    clock.now += 299
    second = asyncio.run(cache.get_routing_config("scopeA"))

    assert first == second
    assert provider.calls == ["scopeA"]


def test_call_after_expiry_refetches() -> None:
    clock = FakeClock()
    provider = CountingProvider()
    cache = RoutingCache(provider, ttl=300, clock=clock)

    asyncio.run(cache.get_routing_config("scopeA"))
    clock.now += 300
    asyncio.run(cache.get_routing_config("scopeA"))

    assert provider.calls == ["scopeA", "scopeA"]


def test_scopes_are_cached_independently() -> None:
    provider = CountingProvider()
    cache = RoutingCache(provider, ttl=300, clock=FakeClock())

    async def scenario() -> None:
        await cache.get_routing_config("scopeA")
        await cache.get_routing_config("scopeB")
        await cache.get_routing_config("scopeA")

    asyncio.run(scenario())

    assert provider.calls == ["scopeA", "scopeB"]


def test_failures_are_not_cached() -> None:
    provider = CountingProvider(fail_times=1)
    cache = RoutingCache(provider, ttl=300, clock=FakeClock())

    with pytest.raises(RoutingConfigNotFoundError):
        asyncio.run(cache.get_routing_config("scopeA"))

    config = asyncio.run(cache.get_routing_config("scopeA"))

    assert config.feed_destination == "@scopeA_feed"
    assert provider.calls == ["scopeA", "scopeA"]
