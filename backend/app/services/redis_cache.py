"""Redis-backed remote cache tier.

The tier is optional acceleration: when Redis is unreachable or a command
fails, the tier marks itself failed and raises ``RemoteTierUnavailable`` so the
caller can fall back to the in-memory store. It stays failed until a health
probe gets a successful PING.
"""

import asyncio
import json
import logging
import math
import time
from enum import Enum
from typing import Any, Callable

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff, NoBackoff

logger = logging.getLogger(__name__)


class RemoteTierUnavailable(Exception):
    """The remote tier is down, or an operation on it just failed."""


def is_valid_expiry(expiry: Any) -> bool:
    """Envelope expiry is epoch seconds or None; bool is not a number here."""
    return expiry is None or (isinstance(expiry, (int, float)) and not isinstance(expiry, bool))


class Availability(str, Enum):
    UNKNOWN = "unknown"
    AVAILABLE = "available"
    FAILED = "failed"


def _connect_redis(url: str, timeout: float) -> Redis:
    # Zero command retries: a failing command flips the tier to FAILED at once.
    return Redis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=timeout,
        socket_timeout=timeout,
        retry=Retry(NoBackoff(), 0),
    )


class RedisTier:
    """Remote cache tier storing JSON envelopes ``{"value", "expiry"}``."""

    def __init__(
        self,
        url: str,
        connect_timeout: float = 5.0,
        connect_retries: int = 3,
        client_factory: Callable[[], Redis] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.url = url
        self._connect_retries = max(1, connect_retries)
        self._client_factory = client_factory or (lambda: _connect_redis(url, connect_timeout))
        self._clock = clock
        self._backoff = ExponentialBackoff(cap=2.0, base=0.05)
        self._client: Redis | None = None
        self.state = Availability.UNKNOWN
        self.last_checked: float | None = None

    @property
    def available(self) -> bool:
        return self.state is Availability.AVAILABLE

    def _mark(self, state: Availability) -> None:
        self.state = state
        self.last_checked = self._clock()

    async def _ping(self) -> None:
        if self._client is None:
            self._client = self._client_factory()
        await self._client.ping()

    async def connect(self) -> bool:
        """Connect and PING with capped exponential backoff between attempts."""
        for attempt in range(1, self._connect_retries + 1):
            try:
                await self._ping()
            except Exception as e:
                logger.warning(
                    f"Redis connect attempt {attempt}/{self._connect_retries} failed: {e}"
                )
                if attempt < self._connect_retries:
                    await asyncio.sleep(self._backoff.compute(attempt))
                continue
            self._mark(Availability.AVAILABLE)
            logger.info("Connected to Redis, remote cache tier enabled")
            return True

        self._mark(Availability.FAILED)
        logger.error("Redis unreachable, falling back to in-memory cache")
        return False

    async def probe(self) -> bool:
        """Health check. The only transition from FAILED back to AVAILABLE."""
        if self.state is Availability.UNKNOWN:
            return await self.connect()
        try:
            await self._ping()
        except Exception as e:
            if self.state is Availability.AVAILABLE:
                logger.error(f"Redis health probe failed: {e}; falling back to in-memory cache")
            self._mark(Availability.FAILED)
            return False
        if self.state is Availability.FAILED:
            logger.info("Redis reachable again, resuming remote cache tier")
        self._mark(Availability.AVAILABLE)
        return True

    async def _ensure_client(self) -> Redis:
        if self.state is Availability.UNKNOWN:
            await self.connect()
        if self.state is not Availability.AVAILABLE or self._client is None:
            raise RemoteTierUnavailable(f"Redis tier is {self.state.value}")
        return self._client

    def _fail(self, operation: str, exc: Exception) -> RemoteTierUnavailable:
        logger.error(f"Redis {operation} failed: {exc}; falling back to in-memory cache")
        self._mark(Availability.FAILED)
        return RemoteTierUnavailable(f"{operation}: {exc}")

    async def get_envelope(self, key: str) -> dict[str, Any] | None:
        """Return the stored ``{"value", "expiry"}`` envelope, or None on miss."""
        client = await self._ensure_client()
        try:
            raw = await client.get(key)
        except Exception as e:
            raise self._fail(f"GET {key}", e) from e
        if raw is None:
            return None

        try:
            envelope = json.loads(raw)
            if not isinstance(envelope, dict) or "value" not in envelope:
                raise ValueError("not a cache envelope")
            if not is_valid_expiry(envelope.get("expiry")):
                raise ValueError(f"bad expiry {envelope.get('expiry')!r}")
        except ValueError as e:
            logger.warning(f"Ignoring undecodable Redis entry {key}: {e}")
            return None

        # Native TTL is whole seconds; the envelope carries the exact expiry.
        expiry = envelope.get("expiry")
        if expiry is not None and expiry <= self._clock():
            logger.debug(f"Redis cache expired: {key}")
            await self.delete(key)
            return None
        return envelope

    async def get(self, key: str) -> Any | None:
        envelope = await self.get_envelope(key)
        return None if envelope is None else envelope["value"]

    async def set(self, key: str, value: Any, ttl: float) -> None:
        client = await self._ensure_client()
        expiry = self._clock() + ttl if ttl > 0 else None
        payload = json.dumps({"value": value, "expiry": expiry})
        try:
            await client.set(key, payload, ex=math.ceil(ttl) if ttl > 0 else None)
        except Exception as e:
            raise self._fail(f"SET {key}", e) from e

    async def delete(self, key: str) -> None:
        client = await self._ensure_client()
        try:
            await client.delete(key)
        except Exception as e:
            raise self._fail(f"DEL {key}", e) from e

    async def clear(self) -> None:
        client = await self._ensure_client()
        try:
            await client.flushdb()
        except Exception as e:
            raise self._fail("FLUSHDB", e) from e

    async def keys(self) -> list[str]:
        """Enumerate the keyspace with SCAN. Concurrent writes may or may not show up."""
        client = await self._ensure_client()
        try:
            return [key async for key in client.scan_iter(count=500)]
        except Exception as e:
            raise self._fail("SCAN", e) from e

    async def stats(self) -> tuple[int, str]:
        """Return (key count, human-readable used memory)."""
        client = await self._ensure_client()
        try:
            key_count = await client.dbsize()
            info = await client.info("memory")
        except Exception as e:
            raise self._fail("INFO", e) from e
        return int(key_count), str(info.get("used_memory_human", "unknown"))

    async def close(self) -> None:
        if self._client is None:
            return
        try:
            await self._client.aclose()
        except Exception as e:
            logger.warning(f"Error closing Redis connection: {e}")
        self._client = None
