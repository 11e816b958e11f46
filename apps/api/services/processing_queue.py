"""Background scheduling of pipeline runs (in-process tasks or Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Optional, Set

from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy import func, update

from config import settings
from database import async_session_maker
from media.probe import MediaProbe
from media.thumbnail import ThumbnailExtractor
from models.asset import IN_PROGRESS_STATUSES, AssetStatus, MediaAsset
from services.asset_store import AssetStore
from services.errors import AssetBusyError, InvalidAssetStateError
from services.notifier import get_notifier
from services.pipeline import ProcessingPipeline
from services.sensitivity import build_classifier

logger = logging.getLogger(__name__)

PROCESSING_QUEUE_NAME = "asset_processing"

_background_tasks: Set[asyncio.Task] = set()
_pipeline: Optional[ProcessingPipeline] = None


def build_pipeline(store: Optional[AssetStore] = None) -> ProcessingPipeline:
    """Wire a pipeline from settings."""
    return ProcessingPipeline(
        store=store or AssetStore(),
        notifier=get_notifier(),
        probe=MediaProbe(settings.FFPROBE_PATH, settings.PROBE_TIMEOUT_SECONDS),
        thumbnailer=ThumbnailExtractor(
            settings.FFMPEG_PATH,
            width=settings.THUMBNAIL_WIDTH,
            timeout_seconds=settings.THUMBNAIL_TIMEOUT_SECONDS,
        ),
        classifier=build_classifier(),
        thumbnail_timestamp=settings.THUMBNAIL_TIMESTAMP,
        stage_delay_seconds=settings.PIPELINE_STAGE_DELAY_SECONDS,
    )


def get_pipeline() -> ProcessingPipeline:
    """FastAPI dependency returning the process-wide pipeline."""
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_processing_queue() -> Queue:
    """Return the configured asset processing queue."""
    return Queue(
        name=PROCESSING_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def _log_task_result(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        logger.warning("Background pipeline task %s was cancelled", task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Background pipeline task %s crashed", task.get_name(), exc_info=exc)


def spawn(coro: Awaitable, name: str) -> asyncio.Task:
    """Start a tracked background task whose failures are always logged."""
    task = asyncio.ensure_future(coro)
    task.set_name(name)
    _background_tasks.add(task)
    task.add_done_callback(_log_task_result)
    return task


def _enqueue(job_func: str, asset_id: str, prefix: str) -> Job:
    queue = get_processing_queue()
    return queue.enqueue(
        job_func,
        asset_id,
        job_id=f"{prefix}:{asset_id}:{int(datetime.now(timezone.utc).timestamp())}",
        job_timeout=1800,
        result_ttl=86400,
        failure_ttl=86400,
    )


def schedule_processing(pipeline: ProcessingPipeline, asset_id: str) -> None:
    """Start the full pipeline for a freshly uploaded asset without awaiting it."""
    if settings.PIPELINE_BACKEND == "rq":
        _enqueue("services.processing_queue.process_asset_job", asset_id, "process")
        return
    spawn(pipeline.run(asset_id), name=f"process:{asset_id}")


async def _reanalyze_unless_busy(pipeline: ProcessingPipeline, asset_id: str) -> Optional[MediaAsset]:
    # A run that started between the request check and this task wins
    try:
        return await pipeline.reanalyze(asset_id)
    except (AssetBusyError, InvalidAssetStateError) as exc:
        logger.info("Skipped reanalysis of asset %s: %s", asset_id, exc)
        return None


def schedule_reanalysis(pipeline: ProcessingPipeline, asset_id: str) -> None:
    if settings.PIPELINE_BACKEND == "rq":
        _enqueue("services.processing_queue.reanalyze_asset_job", asset_id, "reanalyze")
        return
    spawn(_reanalyze_unless_busy(pipeline, asset_id), name=f"reanalyze:{asset_id}")


async def drain_background_tasks() -> None:
    """Wait for in-flight inline runs (used at shutdown and in tests)."""
    pending = list(_background_tasks)
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


def process_asset_job(asset_id: str) -> None:
    """RQ worker entrypoint for a full processing run."""
    asyncio.run(build_pipeline().run(asset_id))


def reanalyze_asset_job(asset_id: str) -> None:
    """RQ worker entrypoint for sensitivity reanalysis."""
    asyncio.run(_reanalyze_unless_busy(build_pipeline(), asset_id))


async def recover_stalled_assets(max_age_minutes: int = 120) -> int:
    """Mark stale in-progress assets as failed after restarts/worker interruptions."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    message = "Processing was interrupted. Upload the video again."
    async with async_session_maker() as db:
        result = await db.execute(
            update(MediaAsset)
            .where(
                MediaAsset.status.in_(IN_PROGRESS_STATUSES),
                func.coalesce(MediaAsset.updated_at, MediaAsset.created_at) < cutoff,
            )
            .values(
                status=AssetStatus.FAILED.value,
                error_message=message,
                progress_message=f"Processing failed: {message}",
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return int(result.rowcount or 0)
