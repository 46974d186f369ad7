"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api.cache_routes import router as cache_router
from app.services.cache import build_cache_service
from app.services.snapshot import build_snapshot_manager
from app.services.snapshot_storage import build_snapshot_storage
from app.tasks.scheduler import start_scheduler, stop_scheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    cache = build_cache_service()
    await cache.init()
    snapshots = build_snapshot_manager(cache, build_snapshot_storage())
    await snapshots.load_snapshot()
    app.state.cache = cache
    app.state.snapshots = snapshots
    scheduler = start_scheduler(cache, snapshots)
    yield
    stop_scheduler(scheduler)
    await cache.shutdown()


app = FastAPI(title="Stock Research Cache", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(cache_router)


@app.get("/api/health")
async def health_check():
    return {"status": "ok"}
