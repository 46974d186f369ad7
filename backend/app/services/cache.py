"""Stock data cache: in-memory TTL store with an optional Redis tier in front."""

import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from app.config import (
    CACHE_MAX_BYTES,
    CACHE_TTL,
    REDIS_CONNECT_RETRIES,
    REDIS_CONNECT_TIMEOUT,
    REDIS_URL,
)
from app.services.redis_cache import Availability, RedisTier, RemoteTierUnavailable

logger = logging.getLogger(__name__)


def estimate_size(value: Any) -> int:
    """Approximate size of a value: bytes in its JSON encoding.

    Raises TypeError or ValueError for values that cannot be serialized.
    """
    return len(json.dumps(value).encode("utf-8"))


@dataclass(frozen=True)
class CacheEntry:
    value: Any
    expires_at: float  # epoch seconds, math.inf for no expiry
    size_bytes: int


@dataclass
class CacheStats:
    backend: str  # "remote" | "local"
    key_count: int | None
    approx_memory: str | int | None
    remote_available: bool


class MemoryStore:
    """In-memory TTL cache bounded by an approximate byte ceiling.

    Expired entries are dropped lazily when read. When admitting a value would
    push the total over ``max_bytes``, the entries closest to expiry are evicted
    first (reads do not refresh anything, this is not LRU). A value larger than
    the ceiling on its own is still stored after everything else is evicted.

    No locking: all callers share one event loop.
    """

    def __init__(
        self,
        default_ttl: float = 86400,
        max_bytes: int = 30 * 1024 * 1024,
        clock: Callable[[], float] = time.time,
    ):
        self._store: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._total_bytes = 0
        self._clock = clock
        self.max_bytes = max_bytes

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, key: str) -> bool:
        return key in self._store

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def get(self, key: str) -> Any | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._remove(key)
            logger.debug(f"Cache expired: {key}")
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: float | None = None, size: int | None = None) -> None:
        """Store ``value``. ``size`` skips re-measuring when the caller already has it."""
        ttl = ttl if ttl is not None else self._default_ttl
        if size is None:
            try:
                size = estimate_size(value)
            except (TypeError, ValueError) as e:
                logger.error(f"Not caching {key}: value is not JSON-serializable ({e})")
                return

        expires_at = self._clock() + ttl if ttl > 0 else math.inf
        self._remove(key)
        self._evict_for(size)
        self._store[key] = CacheEntry(value=value, expires_at=expires_at, size_bytes=size)
        self._total_bytes += size

    def delete(self, key: str) -> None:
        self._remove(key)

    def clear(self) -> None:
        self._store.clear()
        self._total_bytes = 0

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns how many were removed."""
        now = self._clock()
        expired = [key for key, entry in self._store.items() if entry.expires_at <= now]
        for key in expired:
            self._remove(key)
        return len(expired)

    def items(self) -> list[tuple[str, CacheEntry]]:
        """Live (unexpired) entries."""
        now = self._clock()
        return [(key, entry) for key, entry in self._store.items() if entry.expires_at > now]

    def _remove(self, key: str) -> None:
        entry = self._store.pop(key, None)
        if entry is not None:
            self._total_bytes -= entry.size_bytes

    def _evict_for(self, size: int) -> None:
        if self._total_bytes + size <= self.max_bytes:
            return
        by_expiry = sorted(self._store.items(), key=lambda item: item[1].expires_at)
        for key, entry in by_expiry:
            if self._total_bytes + size <= self.max_bytes:
                break
            self._remove(key)
            logger.debug(f"Cache evicted: {key} ({entry.size_bytes} bytes)")


class CacheService:
    """Cache used by the market-data code paths.

    Each operation goes to the Redis tier first when one is configured and not
    known to be down, and falls back to the in-memory store otherwise. Nothing
    here raises to the caller: the worst outcome of any failure is a miss.
    """

    def __init__(
        self,
        local: MemoryStore,
        remote: RedisTier | None = None,
        default_ttl: float = 86400,
    ):
        self.local = local
        self.remote = remote
        self.default_ttl = default_ttl

    async def init(self) -> None:
        if self.remote is None:
            logger.info("REDIS_URL not set, using in-memory cache only")
            return
        await self.remote.connect()

    async def shutdown(self) -> None:
        if self.remote is not None:
            await self.remote.close()

    def _use_remote(self) -> bool:
        return self.remote is not None and self.remote.state is not Availability.FAILED

    async def get(self, key: str) -> Any | None:
        if self._use_remote():
            try:
                value = await self.remote.get(key)
            except RemoteTierUnavailable:
                pass
            else:
                logger.debug(f"Cache {'hit' if value is not None else 'miss'} (redis): {key}")
                return value

        value = self.local.get(key)
        logger.debug(f"Cache {'hit' if value is not None else 'miss'} (memory): {key}")
        return value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        ttl = ttl if ttl is not None else self.default_ttl
        try:
            size = estimate_size(value)
        except (TypeError, ValueError) as e:
            logger.error(f"Not caching {key}: value is not JSON-serializable ({e})")
            return

        if self._use_remote():
            try:
                await self.remote.set(key, value, ttl)
                return
            except RemoteTierUnavailable:
                pass
        self.local.set(key, value, ttl, size=size)

    async def delete(self, key: str) -> None:
        if self._use_remote():
            try:
                await self.remote.delete(key)
            except RemoteTierUnavailable:
                pass
        # Fallback writes from an outage may still be resident locally.
        self.local.delete(key)

    async def clear(self) -> None:
        if self._use_remote():
            try:
                await self.remote.clear()
            except RemoteTierUnavailable:
                pass
        self.local.clear()
        logger.info("Cache cleared")

    async def get_or_set(
        self,
        key: str,
        loader: Callable[[], Awaitable[Any]],
        ttl: float | None = None,
    ) -> Any:
        """Return the cached value, or await ``loader`` and cache its non-None result."""
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set(key, value, ttl)
        return value

    async def get_stats(self) -> CacheStats:
        if self._use_remote():
            try:
                key_count, memory = await self.remote.stats()
            except RemoteTierUnavailable:
                pass
            else:
                return CacheStats(
                    backend="remote",
                    key_count=key_count,
                    approx_memory=memory,
                    remote_available=True,
                )

        self.local.purge_expired()
        return CacheStats(
            backend="local",
            key_count=len(self.local),
            approx_memory=self.local.total_bytes,
            remote_available=False,
        )

    async def probe_remote(self) -> bool:
        if self.remote is None:
            return False
        return await self.remote.probe()


def build_cache_service() -> CacheService:
    """Build the process-wide cache from configuration."""
    remote = None
    if REDIS_URL:
        remote = RedisTier(
            REDIS_URL,
            connect_timeout=REDIS_CONNECT_TIMEOUT,
            connect_retries=REDIS_CONNECT_RETRIES,
        )
    local = MemoryStore(default_ttl=CACHE_TTL, max_bytes=CACHE_MAX_BYTES)
    return CacheService(local, remote=remote, default_ttl=CACHE_TTL)
