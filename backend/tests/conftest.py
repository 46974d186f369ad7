"""Shared fixtures: a controllable clock and an in-memory async Redis stand-in."""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """Just enough of redis.asyncio.Redis (decode_responses=True) for the cache.

    Native TTLs are recorded but not enforced; set ``down`` to make every
    command fail the way a dropped connection does.
    """

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int | None] = {}
        self.calls: list[str] = []
        self.down = False
        self.closed = False

    def _command(self, name: str) -> None:
        self.calls.append(name)
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def ping(self):
        self._command("PING")
        return True

    async def get(self, key):
        self._command("GET")
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._command("SET")
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        self._command("DEL")
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def flushdb(self):
        self._command("FLUSHDB")
        self.data.clear()
        self.ttls.clear()
        return True

    async def dbsize(self):
        self._command("DBSIZE")
        return len(self.data)

    async def info(self, section=None):
        self._command("INFO")
        return {"used_memory_human": "1.02M"}

    async def scan_iter(self, match=None, count=None):
        self._command("SCAN")
        for key in list(self.data):
            yield key

    async def aclose(self):
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def new_redis():
    """Factory for extra FakeRedis instances, e.g. a freshly restarted server."""
    return FakeRedis
