"""Pydantic schemas for API request/response."""

from pydantic import BaseModel


class CacheStatsResponse(BaseModel):
    backend: str
    key_count: int | None = None
    approx_memory: int | str | None = None
    remote_available: bool


class SnapshotResponse(BaseModel):
    location: str
