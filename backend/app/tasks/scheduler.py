"""Background jobs: periodic cache snapshots and Redis health probes."""

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger

from app.services.cache import CacheService
from app.services.snapshot import SnapshotManager
from app.config import REDIS_HEALTH_CHECK_INTERVAL, SNAPSHOT_SCHEDULE

logger = logging.getLogger(__name__)


async def save_cache_snapshot(snapshots: SnapshotManager):
    """Scheduled snapshot of the cache keyspace."""
    try:
        location = await snapshots.save_snapshot()
        if location is None:
            logger.warning("Scheduled cache snapshot was not written")
    except Exception as e:
        logger.error(f"Scheduled cache snapshot failed: {e}")


async def probe_remote_cache(cache: CacheService):
    """Ping Redis so a failed remote tier can come back."""
    try:
        await cache.probe_remote()
    except Exception as e:
        logger.error(f"Redis health probe failed: {e}")


def start_scheduler(
    cache: CacheService,
    snapshots: SnapshotManager,
    snapshot_schedule: str = SNAPSHOT_SCHEDULE,
    health_check_interval: int = REDIS_HEALTH_CHECK_INTERVAL,
) -> AsyncIOScheduler:
    """Create and start the background scheduler."""
    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        save_cache_snapshot,
        trigger=CronTrigger.from_crontab(snapshot_schedule),
        args=[snapshots],
        id="save_cache_snapshot",
        replace_existing=True,
    )
    if cache.remote is not None:
        scheduler.add_job(
            probe_remote_cache,
            trigger=IntervalTrigger(seconds=health_check_interval),
            args=[cache],
            id="probe_remote_cache",
            replace_existing=True,
        )
    scheduler.start()
    logger.info(f"Scheduler started, cache snapshots on '{snapshot_schedule}'")
    return scheduler


def stop_scheduler(scheduler: AsyncIOScheduler):
    """Stop the background scheduler."""
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler stopped")
