"""Cache snapshot and warm restart.

A snapshot is one flat JSON object mapping cache keys to what was cached.
Under the ``fresh`` restore policy the values are stored as-is and get a new
default TTL on restore. Under ``remaining`` each value is stored as its
``{"value", "expiry"}`` envelope and is restored with whatever TTL it had
left, or skipped if that has run out.
"""

import json
import logging
import math
import time
from enum import Enum
from typing import Any, Callable

from app.config import SNAPSHOT_RESTORE_TTL
from app.services.cache import CacheService
from app.services.redis_cache import RemoteTierUnavailable, is_valid_expiry
from app.services.snapshot_storage import SnapshotStorage

logger = logging.getLogger(__name__)


def _looks_like_envelope(item: Any) -> bool:
    return (
        isinstance(item, dict)
        and set(item) == {"value", "expiry"}
        and is_valid_expiry(item["expiry"])
    )


class RestoreTTLPolicy(str, Enum):
    FRESH = "fresh"
    REMAINING = "remaining"


class SnapshotManager:
    """Creates, saves and restores snapshots of the cache keyspace."""

    def __init__(
        self,
        cache: CacheService,
        storage: SnapshotStorage,
        restore_policy: RestoreTTLPolicy | str = RestoreTTLPolicy.FRESH,
        clock: Callable[[], float] = time.time,
    ):
        self.cache = cache
        self.storage = storage
        self.restore_policy = RestoreTTLPolicy(restore_policy)
        self._clock = clock

    async def create_snapshot(self) -> dict[str, Any] | None:
        """Read every key of the cache keyspace, best-effort.

        Uses Redis when a remote tier is configured, otherwise the in-memory
        store. Returns None when Redis is configured but is down or fails
        mid-scan, so that a partial view never replaces the latest snapshot.
        """
        envelopes = {}
        if self.cache.remote is None:
            for key, entry in self.cache.local.items():
                expiry = None if math.isinf(entry.expires_at) else entry.expires_at
                envelopes[key] = {"value": entry.value, "expiry": expiry}
        else:
            try:
                keys = await self.cache.remote.keys()
            except RemoteTierUnavailable as e:
                logger.warning(f"Skipping cache snapshot, Redis unavailable: {e}")
                return None
            # Keys that vanished, expired or do not decode come back as None and
            # are skipped. A transport error trips the breaker and aborts.
            for key in keys:
                try:
                    envelope = await self.cache.remote.get_envelope(key)
                except RemoteTierUnavailable as e:
                    logger.warning(f"Aborting cache snapshot at key {key}: {e}")
                    return None
                if envelope is not None:
                    envelopes[key] = envelope

        if self.restore_policy is RestoreTTLPolicy.REMAINING:
            return envelopes
        return {key: envelope["value"] for key, envelope in envelopes.items()}

    async def save_snapshot(self) -> str | None:
        """Write a snapshot and make it the latest. Returns its location, None on failure."""
        try:
            snapshot = await self.create_snapshot()
            if snapshot is None:
                return None
            location = await self.storage.write(json.dumps(snapshot))
        except Exception as e:
            logger.error(f"Failed to save cache snapshot: {e}")
            return None
        logger.info(f"Saved cache snapshot with {len(snapshot)} keys to {location}")
        return location

    async def load_snapshot(self) -> int:
        """Replay the latest snapshot into the cache. Returns the number of keys restored."""
        try:
            document = await self.storage.read_latest()
        except Exception as e:
            logger.error(f"Failed to read cache snapshot: {e}")
            return 0
        if document is None:
            logger.info("No cache snapshot to restore")
            return 0

        try:
            snapshot = json.loads(document)
        except ValueError as e:
            logger.error(f"Cache snapshot is not valid JSON: {e}")
            return 0
        if not isinstance(snapshot, dict):
            logger.error("Cache snapshot is not a JSON object, ignoring it")
            return 0

        if self.restore_policy is RestoreTTLPolicy.FRESH and snapshot and all(
            _looks_like_envelope(item) for item in snapshot.values()
        ):
            logger.warning(
                "Every snapshot value looks like a {value, expiry} envelope; it was probably "
                "written with SNAPSHOT_RESTORE_TTL=remaining but is restored as fresh"
            )

        restored = 0
        now = self._clock()
        for key, item in snapshot.items():
            if self.restore_policy is RestoreTTLPolicy.FRESH:
                await self.cache.set(key, item)
                restored += 1
                continue

            if not _looks_like_envelope(item):
                logger.warning(f"Skipping malformed snapshot entry {key}")
                continue
            expiry = item.get("expiry")
            if expiry is None:
                await self.cache.set(key, item["value"], ttl=0)
            elif expiry > now:
                await self.cache.set(key, item["value"], ttl=expiry - now)
            else:
                continue
            restored += 1

        logger.info(f"Restored {restored} cache keys from snapshot")
        return restored


def build_snapshot_manager(cache: CacheService, storage: SnapshotStorage) -> SnapshotManager:
    return SnapshotManager(cache, storage, restore_policy=SNAPSHOT_RESTORE_TTL)
