"""
Video upload, status, streaming, and reanalysis endpoints.
"""

import os
import uuid
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.asset import AssetStatus, MediaAsset, SensitivityStatus, TERMINAL_STATUSES
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.errors import (
    AssetNotReadyError,
    RangeNotSatisfiableError,
    SourceFileMissingError,
    ThumbnailNotAvailableError,
)
from services.notifier import safe_publish, user_scope
from services.pipeline import ProcessingPipeline
from services.processing_queue import get_pipeline, schedule_processing, schedule_reanalysis
from services.streaming import RangeStreamer, VIDEO_MIME_BY_EXT

router = APIRouter()
logger = logging.getLogger(__name__)

ALLOWED_VIDEO_EXTENSIONS = set(VIDEO_MIME_BY_EXT)
ALLOWED_VIDEO_MIME_TYPES = {
    "video/mp4",
    "video/webm",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
}


class SensitivitySummary(BaseModel):
    status: str
    score: Optional[int] = None
    details: Dict[str, Any] = {}
    reasons: List[str] = []


class VideoResponse(BaseModel):
    id: str
    user_id: str
    title: str
    original_filename: str
    mime_type: Optional[str] = None
    file_size_bytes: Optional[int] = None
    status: str
    progress: int
    progress_message: str
    duration_seconds: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    codec: Optional[str] = None
    frame_rate: Optional[int] = None
    bitrate: Optional[int] = None
    has_thumbnail: bool
    stream_url: Optional[str] = None
    sensitivity: SensitivitySummary
    error_message: Optional[str] = None
    views: int
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class VideoStatusResponse(BaseModel):
    status: str
    progress: int
    message: str
    error_message: Optional[str] = None
    sensitivity: SensitivitySummary


class VideoStatsResponse(BaseModel):
    total_videos: int
    total_size_bytes: int
    total_views: int
    avg_duration_seconds: Optional[float] = None
    safe_videos: int
    flagged_videos: int
    processing_videos: int


def get_streamer() -> RangeStreamer:
    return RangeStreamer(
        chunk_size=settings.STREAM_CHUNK_BYTES,
        cache_max_age=settings.STREAM_CACHE_MAX_AGE_SECONDS,
        thumbnail_cache_max_age=settings.THUMBNAIL_CACHE_MAX_AGE_SECONDS,
    )


def _sanitize_filename(filename: str) -> str:
    base = os.path.basename(filename or "upload.mp4")
    safe = "".join(ch if ch.isalnum() or ch in ("-", "_", ".") else "_" for ch in base)
    return safe or "upload.mp4"


async def _ensure_user(db: AsyncSession, auth: AuthContext) -> User:
    result = await db.execute(select(User).where(User.id == auth.user_id))
    user = result.scalar_one_or_none()
    if not user:
        user = User(id=auth.user_id, email=auth.email or f"{auth.user_id}@local.invalid")
        db.add(user)
        await db.flush()
    return user


async def _get_owned_asset(db: AsyncSession, asset_id: str, user_id: str) -> MediaAsset:
    result = await db.execute(
        select(MediaAsset).where(
            MediaAsset.id == asset_id,
            MediaAsset.user_id == user_id,
        )
    )
    asset = result.scalar_one_or_none()
    if not asset:
        raise HTTPException(status_code=404, detail="Video not found")
    return asset


def _not_ready_response(exc: AssetNotReadyError) -> JSONResponse:
    return JSONResponse(status_code=412, content={"detail": str(exc), "status": exc.status})


def _unsatisfiable_response(exc: RangeNotSatisfiableError) -> JSONResponse:
    return JSONResponse(
        status_code=416,
        content={"detail": str(exc), "file_size": exc.file_size},
        headers={"Content-Range": f"bytes */{exc.file_size}"},
    )


@router.post("/upload", response_model=VideoResponse, status_code=201)
async def upload_video(
    file: UploadFile = File(...),
    title: Optional[str] = Form(None),
    _rate_limit: None = Depends(rate_limit("video_upload", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    pipeline: ProcessingPipeline = Depends(get_pipeline),
):
    """Store an uploaded video and start background processing."""
    await _ensure_user(db, auth)

    original_filename = _sanitize_filename(file.filename or "upload.mp4")
    suffix = Path(original_filename).suffix.lower()
    content_type = (file.content_type or "").lower()

    if suffix not in ALLOWED_VIDEO_EXTENSIONS and content_type not in ALLOWED_VIDEO_MIME_TYPES:
        raise HTTPException(
            status_code=422,
            detail="Unsupported file type. Upload a video file (mp4, webm, mov, avi, mkv, m4v).",
        )

    asset_id = str(uuid.uuid4())
    user_dir = Path(settings.UPLOAD_DIR) / auth.user_id
    user_dir.mkdir(parents=True, exist_ok=True)
    destination = user_dir / f"{asset_id}_{original_filename}"

    total_size = 0
    try:
        with destination.open("wb") as out:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                total_size += len(chunk)
                if total_size > settings.MAX_UPLOAD_BYTES:
                    out.close()
                    destination.unlink(missing_ok=True)
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large. Max upload size is {settings.MAX_UPLOAD_BYTES // (1024 * 1024)}MB.",
                    )
                out.write(chunk)
    finally:
        await file.close()

    mime_type = content_type if content_type.startswith("video/") else VIDEO_MIME_BY_EXT.get(suffix)
    await db.commit()
    asset = await pipeline.store.create(
        id=asset_id,
        user_id=auth.user_id,
        title=(title or "").strip() or original_filename,
        original_filename=original_filename,
        source_path=str(destination),
        mime_type=mime_type,
        file_size_bytes=total_size,
        status=AssetStatus.UPLOADING.value,
        progress=5,
        progress_message="Upload complete, starting processing...",
        sensitivity_status=SensitivityStatus.PENDING.value,
        views=0,
    )

    await safe_publish(
        pipeline.notifier,
        user_scope(auth.user_id),
        "upload:complete",
        {"asset_id": asset_id, "message": "Upload complete, processing started"},
    )
    schedule_processing(pipeline, asset_id)
    logger.info("Accepted upload %s (%d bytes) for user %s", asset_id, total_size, auth.user_id)

    return VideoResponse(**asset.to_dict())


@router.get("/stats", response_model=VideoStatsResponse)
async def get_video_stats(
    auth: AuthContext = Depends(get_auth_context),
    pipeline: ProcessingPipeline = Depends(get_pipeline),
):
    """Aggregate counts for the caller's videos."""
    stats = await pipeline.store.stats_for_user(auth.user_id)
    return VideoStatsResponse(**stats)


@router.get("/{video_id}", response_model=VideoResponse)
async def get_video(
    video_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    asset = await _get_owned_asset(db, video_id, auth.user_id)
    return VideoResponse(**asset.to_dict())


@router.get("/{video_id}/status", response_model=VideoStatusResponse)
async def get_video_status(
    video_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Processing progress and sensitivity verdict for polling clients."""
    asset = await _get_owned_asset(db, video_id, auth.user_id)
    payload = asset.to_dict()
    return VideoStatusResponse(
        status=payload["status"],
        progress=payload["progress"],
        message=payload["progress_message"],
        error_message=payload["error_message"],
        sensitivity=SensitivitySummary(**payload["sensitivity"]),
    )


@router.get("/{video_id}/stream")
async def stream_video(
    video_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    streamer: RangeStreamer = Depends(get_streamer),
    pipeline: ProcessingPipeline = Depends(get_pipeline),
):
    """Stream a completed video, honoring `Range: bytes=start-end`."""
    asset = await _get_owned_asset(db, video_id, auth.user_id)

    try:
        response = streamer.stream(request, asset)
    except AssetNotReadyError as exc:
        return _not_ready_response(exc)
    except RangeNotSatisfiableError as exc:
        return _unsatisfiable_response(exc)
    except SourceFileMissingError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    # Counted once the range is accepted, before any body bytes are sent
    await pipeline.store.increment_view(asset.id)
    return response


@router.get("/{video_id}/thumbnail")
async def get_thumbnail(
    video_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    streamer: RangeStreamer = Depends(get_streamer),
):
    asset = await _get_owned_asset(db, video_id, auth.user_id)
    try:
        return streamer.stream_thumbnail(request, asset)
    except ThumbnailNotAvailableError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/{video_id}/download")
async def download_video(
    video_id: str,
    request: Request,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    streamer: RangeStreamer = Depends(get_streamer),
):
    asset = await _get_owned_asset(db, video_id, auth.user_id)
    try:
        return streamer.download(request, asset)
    except AssetNotReadyError as exc:
        return _not_ready_response(exc)
    except SourceFileMissingError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{video_id}/reanalyze", status_code=202)
async def reanalyze_video(
    video_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    pipeline: ProcessingPipeline = Depends(get_pipeline),
):
    """Re-run sensitivity analysis for a completed video."""
    asset = await _get_owned_asset(db, video_id, auth.user_id)
    if asset.status not in TERMINAL_STATUSES or pipeline.is_running(asset.id):
        raise HTTPException(
            status_code=409,
            detail="Video is currently being processed; try again when processing finishes",
        )
    if asset.status != AssetStatus.COMPLETED.value:
        raise HTTPException(status_code=409, detail="Only successfully processed videos can be reanalyzed")

    schedule_reanalysis(pipeline, asset.id)
    return {"video_id": asset.id, "message": "Reanalysis started"}
