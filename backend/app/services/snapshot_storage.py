"""Where cache snapshots are written: a local directory or an S3 bucket.

Both backends keep recent snapshots under timestamped names and expose the most
recent one under a fixed ``latest.json`` name. With ``keep`` set, the oldest
timestamped snapshots beyond that count are deleted after each write.
"""

import asyncio
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

import boto3
from botocore.exceptions import ClientError

from app.config import SNAPSHOT_BUCKET, SNAPSHOT_DIR, SNAPSHOT_PREFIX, SNAPSHOT_RETENTION

logger = logging.getLogger(__name__)

LATEST_NAME = "latest.json"
SNAPSHOT_PATTERN = "snapshot-*.json"


def _snapshot_name() -> str:
    return f"snapshot-{datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%fZ')}.json"


def _expired_names(names: list[str], keep: int) -> list[str]:
    # Timestamped names sort chronologically.
    if keep <= 0:
        return []
    return sorted(names)[:-keep]


class SnapshotStorage(Protocol):
    async def write(self, document: str) -> str:
        """Store a snapshot document and point ``latest`` at it. Returns its location."""
        ...

    async def read_latest(self) -> str | None:
        """Return the latest snapshot document, or None if there is none."""
        ...


class LocalSnapshotStorage:
    """Snapshots as files; ``latest.json`` is a symlink to the newest one."""

    def __init__(self, directory: Path, keep: int = 0):
        self.directory = Path(directory)
        self.keep = keep

    def _write(self, document: str) -> str:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.directory / _snapshot_name()

        fd, tmp_path = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(document)
            os.replace(tmp_path, target)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

        # Swap the pointer with a rename so readers never see it missing.
        tmp_link = self.directory / f".{LATEST_NAME}.{os.getpid()}.tmp"
        tmp_link.unlink(missing_ok=True)
        tmp_link.symlink_to(target.name)
        os.replace(tmp_link, self.directory / LATEST_NAME)

        self._prune()
        return str(target)

    def _prune(self) -> None:
        names = [path.name for path in self.directory.glob(SNAPSHOT_PATTERN)]
        for name in _expired_names(names, self.keep):
            try:
                (self.directory / name).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"Could not delete old cache snapshot {name}: {e}")
                continue
            logger.debug(f"Deleted old cache snapshot {name}")

    def _read_latest(self) -> str | None:
        latest = self.directory / LATEST_NAME
        if not latest.exists():
            return None
        return latest.read_text(encoding="utf-8")

    async def write(self, document: str) -> str:
        return await asyncio.to_thread(self._write, document)

    async def read_latest(self) -> str | None:
        return await asyncio.to_thread(self._read_latest)


class S3SnapshotStorage:
    """Snapshots as S3 objects; ``<prefix>latest.json`` holds a copy of the newest."""

    def __init__(self, bucket: str, prefix: str = "", client=None, keep: int = 0):
        self.bucket = bucket
        self.prefix = prefix
        self.keep = keep
        self._client = client or boto3.client("s3")

    def _write(self, document: str) -> str:
        body = document.encode("utf-8")
        key = f"{self.prefix}{_snapshot_name()}"
        self._client.put_object(
            Bucket=self.bucket, Key=key, Body=body, ContentType="application/json"
        )
        # A single PUT replaces the pointer object atomically.
        self._client.put_object(
            Bucket=self.bucket,
            Key=f"{self.prefix}{LATEST_NAME}",
            Body=body,
            ContentType="application/json",
        )

        if self.keep > 0:
            self._prune()
        return f"s3://{self.bucket}/{key}"

    def _prune(self) -> None:
        """Delete the oldest timestamped snapshots. Failures are logged; the write stands."""
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            keys = [
                obj["Key"]
                for page in paginator.paginate(Bucket=self.bucket, Prefix=f"{self.prefix}snapshot-")
                for obj in page.get("Contents", [])
            ]
            expired = _expired_names(keys, self.keep)
            # DeleteObjects takes at most 1000 keys per request.
            for start in range(0, len(expired), 1000):
                batch = expired[start:start + 1000]
                self._client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": k} for k in batch], "Quiet": True},
                )
        except ClientError as e:
            logger.warning(f"Could not prune old cache snapshots in s3://{self.bucket}/{self.prefix}: {e}")
            return
        if expired:
            logger.debug(f"Deleted {len(expired)} old cache snapshots from s3://{self.bucket}/{self.prefix}")

    def _read_latest(self) -> str | None:
        try:
            obj = self._client.get_object(Bucket=self.bucket, Key=f"{self.prefix}{LATEST_NAME}")
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                return None
            raise
        return obj["Body"].read().decode("utf-8")

    async def write(self, document: str) -> str:
        return await asyncio.to_thread(self._write, document)

    async def read_latest(self) -> str | None:
        return await asyncio.to_thread(self._read_latest)


def build_snapshot_storage() -> SnapshotStorage:
    if SNAPSHOT_BUCKET:
        logger.info(f"Cache snapshots go to s3://{SNAPSHOT_BUCKET}/{SNAPSHOT_PREFIX}")
        return S3SnapshotStorage(SNAPSHOT_BUCKET, SNAPSHOT_PREFIX, keep=SNAPSHOT_RETENTION)
    logger.info(f"Cache snapshots go to {SNAPSHOT_DIR}")
    return LocalSnapshotStorage(SNAPSHOT_DIR, keep=SNAPSHOT_RETENTION)
