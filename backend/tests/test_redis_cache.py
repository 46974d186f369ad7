"""Tests for the Redis remote tier and its availability state machine."""

import json

import pytest
from unittest.mock import AsyncMock, patch

from app.services.cache import CacheService, MemoryStore
from app.services.redis_cache import Availability, RedisTier, RemoteTierUnavailable


def make_tier(fake_redis, clock, retries=1):
    return RedisTier(
        "redis://localhost:6379/0",
        connect_retries=retries,
        client_factory=lambda: fake_redis,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_connect_marks_available(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    assert tier.state is Availability.UNKNOWN
    assert await tier.connect() is True
    assert tier.available
    assert tier.last_checked == clock.now


@pytest.mark.asyncio
async def test_connect_failure_marks_failed(fake_redis, clock):
    fake_redis.down = True
    tier = make_tier(fake_redis, clock)
    assert await tier.connect() is False
    assert tier.state is Availability.FAILED


@pytest.mark.asyncio
async def test_connect_retries_with_capped_backoff(fake_redis, clock):
    fake_redis.down = True
    tier = make_tier(fake_redis, clock, retries=3)
    with patch("app.services.redis_cache.asyncio.sleep", new_callable=AsyncMock) as sleep:
        assert await tier.connect() is False
    assert fake_redis.calls.count("PING") == 3
    assert sleep.await_count == 2
    delays = [call.args[0] for call in sleep.await_args_list]
    assert all(0 < d <= 2.0 for d in delays)
    assert delays[0] <= delays[1]


@pytest.mark.asyncio
async def test_set_stores_envelope_with_native_ttl(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    await tier.set("stock:prices:AAPL:1D", [1.5, 2.5], ttl=60)

    stored = json.loads(fake_redis.data["stock:prices:AAPL:1D"])
    assert stored == {"value": [1.5, 2.5], "expiry": clock.now + 60}
    assert fake_redis.ttls["stock:prices:AAPL:1D"] == 60
    assert await tier.get("stock:prices:AAPL:1D") == [1.5, 2.5]


@pytest.mark.asyncio
async def test_no_expiry_when_ttl_not_positive(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    await tier.set("k", "v", ttl=0)
    assert json.loads(fake_redis.data["k"])["expiry"] is None
    assert fake_redis.ttls["k"] is None
    clock.advance(10**9)
    assert await tier.get("k") == "v"


@pytest.mark.asyncio
async def test_fractional_ttl_rounds_native_expiry_up(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    await tier.set("k", "v", ttl=1.2)
    assert fake_redis.ttls["k"] == 2


@pytest.mark.asyncio
async def test_envelope_expiry_checked_on_read(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    await tier.set("k", "v", ttl=10)
    clock.advance(11)
    assert await tier.get("k") is None
    assert "k" not in fake_redis.data


@pytest.mark.asyncio
async def test_undecodable_entry_is_a_miss(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    fake_redis.data["raw"] = "not json"
    fake_redis.data["bare"] = json.dumps([1, 2])
    assert await tier.get("raw") is None
    assert await tier.get("bare") is None
    assert tier.available


@pytest.mark.asyncio
@pytest.mark.parametrize("expiry", ["tomorrow", True, [1], {"at": 1}])
async def test_non_numeric_expiry_is_a_miss(fake_redis, clock, expiry):
    tier = make_tier(fake_redis, clock)
    fake_redis.data["k"] = json.dumps({"value": 1, "expiry": expiry})
    assert await tier.get("k") is None
    assert tier.available


@pytest.mark.asyncio
async def test_non_numeric_expiry_never_reaches_caller(fake_redis, clock):
    tier = RedisTier("redis://localhost:6379/0", connect_retries=1, client_factory=lambda: fake_redis, clock=clock)
    cache = CacheService(MemoryStore(clock=clock), remote=tier)
    fake_redis.data["k"] = json.dumps({"value": 1, "expiry": "tomorrow"})
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_first_use_connects_lazily(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    assert await tier.get("missing") is None
    assert tier.available
    assert fake_redis.calls[:2] == ["PING", "GET"]


@pytest.mark.asyncio
async def test_operation_error_trips_breaker(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    await tier.connect()
    fake_redis.down = True

    with pytest.raises(RemoteTierUnavailable):
        await tier.set("k", "v", ttl=10)
    assert tier.state is Availability.FAILED

    # Once failed, commands are not even attempted.
    fake_redis.down = False
    fake_redis.calls.clear()
    for op in (tier.get("k"), tier.delete("k"), tier.clear(), tier.keys(), tier.stats()):
        with pytest.raises(RemoteTierUnavailable):
            await op
    assert fake_redis.calls == []


@pytest.mark.asyncio
async def test_probe_reconnects_failed_tier(fake_redis, clock):
    fake_redis.down = True
    tier = make_tier(fake_redis, clock)
    await tier.connect()
    assert tier.state is Availability.FAILED

    assert await tier.probe() is False
    assert tier.state is Availability.FAILED

    fake_redis.down = False
    clock.advance(30)
    assert await tier.probe() is True
    assert tier.available
    assert tier.last_checked == clock.now
    await tier.set("k", "v", ttl=10)
    assert await tier.get("k") == "v"


@pytest.mark.asyncio
async def test_probe_detects_outage(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    await tier.connect()
    fake_redis.down = True
    assert await tier.probe() is False
    assert tier.state is Availability.FAILED


@pytest.mark.asyncio
async def test_keys_and_stats(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    await tier.set("a", 1, ttl=10)
    await tier.set("b", 2, ttl=10)
    assert sorted(await tier.keys()) == ["a", "b"]
    assert await tier.stats() == (2, "1.02M")


@pytest.mark.asyncio
async def test_clear_flushes_db(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    await tier.set("a", 1, ttl=10)
    await tier.clear()
    assert fake_redis.data == {}


@pytest.mark.asyncio
async def test_close(fake_redis, clock):
    tier = make_tier(fake_redis, clock)
    await tier.connect()
    await tier.close()
    assert fake_redis.closed
    await tier.close()
