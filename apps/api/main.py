"""
Video Sensitivity Pipeline - FastAPI Backend
Upload intake, background processing, progress events and range streaming.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, videos, events
from services.notifier import RedisNotifier, get_notifier
from services.processing_queue import drain_background_tasks, recover_stalled_assets

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Video Sensitivity Pipeline API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_assets(settings.STALLED_ASSET_MAX_AGE_MINUTES)
        if recovered:
            print(f"♻️ Marked {recovered} stalled videos as failed after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled video recovery skipped: {exc}")
    print(
        f"🎬 Pipeline backend={settings.PIPELINE_BACKEND} "
        f"notifier={settings.NOTIFIER_BACKEND} classifier={settings.SENSITIVITY_PROVIDER}"
    )
    yield
    # Shutdown
    await drain_background_tasks()
    notifier = get_notifier()
    if isinstance(notifier, RedisNotifier):
        await notifier.aclose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Video Sensitivity Pipeline API",
    description="Upload videos, track processing and sensitivity analysis, and stream completed assets",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(videos.router, prefix="/videos", tags=["Videos"])
app.include_router(events.router, tags=["Events"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Video Sensitivity Pipeline API",
        "version": "0.1.0",
        "status": "running"
    }
