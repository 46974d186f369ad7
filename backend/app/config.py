"""Application configuration."""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

# Local cache settings
CACHE_TTL = int(os.getenv("CACHE_TTL", "86400"))  # seconds
CACHE_MAX_BYTES = int(os.getenv("CACHE_MAX_BYTES", str(30 * 1024 * 1024)))

# Remote tier (Redis). Unset means local-only.
REDIS_URL = os.getenv("REDIS_URL") or None
REDIS_CONNECT_TIMEOUT = float(os.getenv("REDIS_CONNECT_TIMEOUT", "5"))
REDIS_CONNECT_RETRIES = int(os.getenv("REDIS_CONNECT_RETRIES", "3"))
REDIS_HEALTH_CHECK_INTERVAL = int(os.getenv("REDIS_HEALTH_CHECK_INTERVAL", "30"))

# Snapshots
SNAPSHOT_SCHEDULE = os.getenv("SNAPSHOT_SCHEDULE", "0 3 * * *")  # crontab, daily 03:00
SNAPSHOT_DIR = Path(os.getenv("SNAPSHOT_DIR") or BASE_DIR / "data" / "snapshots")
SNAPSHOT_BUCKET = os.getenv("SNAPSHOT_BUCKET") or None
SNAPSHOT_PREFIX = os.getenv("SNAPSHOT_PREFIX", "cache-snapshots/")
SNAPSHOT_RESTORE_TTL = os.getenv("SNAPSHOT_RESTORE_TTL", "fresh")  # fresh | remaining
SNAPSHOT_RETENTION = int(os.getenv("SNAPSHOT_RETENTION", "7"))  # timestamped snapshots kept, 0 keeps all
