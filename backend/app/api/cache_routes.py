"""Cache administration routes."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request

from app.api.schemas import CacheStatsResponse, SnapshotResponse
from app.services.cache import CacheService
from app.services.snapshot import SnapshotManager

router = APIRouter(prefix="/api/cache", tags=["cache"])


def get_cache(request: Request) -> CacheService:
    """Dependency for FastAPI routes."""
    return request.app.state.cache


def get_snapshots(request: Request) -> SnapshotManager:
    return request.app.state.snapshots


@router.get("/stats", response_model=CacheStatsResponse)
async def cache_stats(cache: CacheService = Depends(get_cache)):
    stats = await cache.get_stats()
    return CacheStatsResponse(**asdict(stats))


@router.post("/clear")
async def clear_cache(cache: CacheService = Depends(get_cache)):
    await cache.clear()
    return {"status": "cleared"}


@router.post("/snapshot", response_model=SnapshotResponse)
async def create_snapshot(snapshots: SnapshotManager = Depends(get_snapshots)):
    """Write a snapshot now instead of waiting for the schedule."""
    location = await snapshots.save_snapshot()
    if location is None:
        raise HTTPException(status_code=503, detail="Cache snapshot could not be written")
    return SnapshotResponse(location=location)
