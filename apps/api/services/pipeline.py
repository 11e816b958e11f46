"""
Stage-sequenced processing of one uploaded asset.

    uploading -> processing (10, 30, 50) -> analyzing (70, 90, 92, 96) -> completed (100)

`failed` is reachable from processing or analyzing. Reanalysis re-enters
analyzing (90) from completed and runs the sensitivity step only.

Each checkpoint is persisted with a single atomic field update and only then
published as `processing:update`, so a client that reacts to an event by
reading the record never sees older state than the event described.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from media.probe import MediaProbe
from media.thumbnail import ThumbnailExtractor, thumbnail_path_for
from models.asset import AssetStatus, MediaAsset, SensitivityStatus
from services.asset_store import AssetStore
from services.errors import AssetBusyError, InvalidAssetStateError, SourceFileMissingError
from services.notifier import ProgressNotifier, asset_scope, safe_publish, user_scope
from services.sensitivity import BaseSensitivityClassifier

logger = logging.getLogger(__name__)

EVENT_PROGRESS = "processing:update"
EVENT_ERROR = "processing:error"
EVENT_SENSITIVITY_START = "sensitivity:start"
EVENT_SENSITIVITY_COMPLETE = "sensitivity:complete"
EVENT_READY = "video:ready"

MESSAGE_SAFE = "Video processed successfully - Content is safe"
MESSAGE_FLAGGED = "Video processed - Content flagged for review"


class ProcessingPipeline:
    """Runs probe -> thumbnail -> sensitivity analysis against one asset record."""

    def __init__(
        self,
        store: AssetStore,
        notifier: ProgressNotifier,
        probe: MediaProbe,
        thumbnailer: ThumbnailExtractor,
        classifier: BaseSensitivityClassifier,
        thumbnail_timestamp: str = "00:00:02",
        stage_delay_seconds: float = 0.0,
    ):
        self.store = store
        self.notifier = notifier
        self.probe = probe
        self.thumbnailer = thumbnailer
        self.classifier = classifier
        self.thumbnail_timestamp = thumbnail_timestamp
        self.stage_delay_seconds = stage_delay_seconds
        self._locks: Dict[str, asyncio.Lock] = {}

    def is_running(self, asset_id: str) -> bool:
        lock = self._locks.get(asset_id)
        return bool(lock and lock.locked())

    def _lock_for(self, asset_id: str) -> asyncio.Lock:
        lock = self._locks.get(asset_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[asset_id] = lock
        return lock

    def _release(self, asset_id: str, lock: asyncio.Lock) -> None:
        lock.release()
        if self._locks.get(asset_id) is lock and not lock.locked():
            self._locks.pop(asset_id, None)

    async def _emit(self, asset: MediaAsset, event: str, payload: Dict[str, Any]) -> None:
        await safe_publish(self.notifier, asset_scope(asset.id), event, payload)
        if asset.user_id:
            await safe_publish(self.notifier, user_scope(asset.user_id), event, payload)

    async def _checkpoint(
        self,
        asset_id: str,
        progress: int,
        message: str,
        status: AssetStatus,
        **fields: Any,
    ) -> MediaAsset:
        asset = await self.store.update_fields(
            asset_id,
            progress=progress,
            progress_message=message,
            status=status.value,
            **fields,
        )
        await self._emit(
            asset,
            EVENT_PROGRESS,
            {"asset_id": asset.id, "progress": progress, "message": message, "status": status.value},
        )
        return asset

    async def _pause(self) -> None:
        if self.stage_delay_seconds > 0:
            await asyncio.sleep(self.stage_delay_seconds)

    async def run(self, asset_id: str) -> Optional[MediaAsset]:
        """Full processing run. Never raises; failures end in status=failed."""
        lock = self._lock_for(asset_id)
        if lock.locked():
            logger.warning("Asset %s already has an active pipeline run; skipping", asset_id)
            return None
        await lock.acquire()
        stage = "validate"
        try:
            asset = await self._checkpoint(asset_id, 10, "Validating file...", AssetStatus.PROCESSING)
            if not os.path.isfile(asset.source_path) or not os.access(asset.source_path, os.R_OK):
                raise SourceFileMissingError(asset.source_path)
            await self._pause()

            stage = "probe"
            asset = await self._checkpoint(asset_id, 30, "Extracting metadata...", AssetStatus.PROCESSING)
            metadata = await asyncio.to_thread(self.probe.probe, asset.source_path)
            asset = await self.store.update_fields(asset_id, **metadata.model_dump())
            await self._pause()

            stage = "thumbnail"
            asset = await self._checkpoint(asset_id, 50, "Generating thumbnail...", AssetStatus.PROCESSING)
            thumbnail = await asyncio.to_thread(
                self.thumbnailer.extract,
                asset.source_path,
                thumbnail_path_for(asset.source_path),
                self.thumbnail_timestamp,
            )
            if thumbnail:
                asset = await self.store.update_fields(asset_id, thumbnail_path=thumbnail)
            await self._pause()

            stage = "prepare"
            asset = await self._checkpoint(
                asset_id,
                70,
                "Preparing for streaming...",
                AssetStatus.ANALYZING,
                stream_url=f"/videos/{asset_id}/stream",
            )
            await self._pause()

            stage = "analyze"
            asset = await self._checkpoint(asset_id, 90, "Finalizing...", AssetStatus.ANALYZING)
            return await self._analyze(asset)
        except Exception as exc:
            await self._fail(asset_id, exc, analysis_failed=(stage == "analyze"))
            return None
        finally:
            self._release(asset_id, lock)

    async def reanalyze(self, asset_id: str) -> Optional[MediaAsset]:
        """
        Re-run sensitivity analysis only, for an asset that already completed.

        Raises AssetBusyError / InvalidAssetStateError before touching the
        record; once the reset is written, failures follow the normal
        failed-run path.
        """
        lock = self._lock_for(asset_id)
        if lock.locked():
            raise AssetBusyError(asset_id)
        await lock.acquire()
        try:
            asset = await self.store.get_by_id(asset_id)
            if asset.status != AssetStatus.COMPLETED.value:
                if asset.status == AssetStatus.FAILED.value:
                    raise InvalidAssetStateError(
                        asset_id, asset.status, "Only successfully processed videos can be reanalyzed"
                    )
                raise AssetBusyError(asset_id)

            try:
                asset = await self._checkpoint(
                    asset_id,
                    90,
                    "Queued for sensitivity reanalysis...",
                    AssetStatus.ANALYZING,
                    sensitivity_status=SensitivityStatus.PENDING.value,
                    completed_at=None,
                )
                return await self._analyze(asset)
            except Exception as exc:
                await self._fail(asset_id, exc, analysis_failed=True)
                return None
        finally:
            self._release(asset_id, lock)

    async def _analyze(self, asset: MediaAsset) -> MediaAsset:
        await self._emit(
            asset,
            EVENT_SENSITIVITY_START,
            {"asset_id": asset.id, "message": "Starting sensitivity analysis..."},
        )
        asset = await self._checkpoint(
            asset.id, 92, "Analyzing content for sensitivity...", AssetStatus.ANALYZING
        )
        scores = await self.classifier.score_categories(asset)

        asset = await self._checkpoint(
            asset.id, 96, "Generating sensitivity report...", AssetStatus.ANALYZING
        )
        result = self.classifier.evaluate(scores)
        message = MESSAGE_SAFE if result.status == SensitivityStatus.SAFE.value else MESSAGE_FLAGGED

        asset = await self._checkpoint(
            asset.id,
            100,
            message,
            AssetStatus.COMPLETED,
            sensitivity_status=result.status,
            sensitivity_score=result.overall_score,
            sensitivity_details=result.details(),
            sensitivity_reasons=list(result.reasons),
            error_message=None,
            completed_at=datetime.now(timezone.utc),
        )
        await self._emit(
            asset,
            EVENT_SENSITIVITY_COMPLETE,
            {
                "asset_id": asset.id,
                "status": result.status,
                "score": result.overall_score,
                "details": result.details(),
                "reasons": list(result.reasons),
            },
        )
        await self._emit(asset, EVENT_READY, {"asset_id": asset.id, "asset": asset.to_dict()})
        logger.info("Asset %s completed (%s, score=%s)", asset.id, result.status, result.overall_score)
        return asset

    async def _fail(self, asset_id: str, exc: Exception, analysis_failed: bool) -> None:
        cause = str(exc) or exc.__class__.__name__
        logger.exception("Processing failed for asset %s: %s", asset_id, cause)
        fields: Dict[str, Any] = {
            "status": AssetStatus.FAILED.value,
            "error_message": cause[:1000],
            "progress_message": f"Processing failed: {cause}"[:1000],
        }
        if analysis_failed:
            fields["sensitivity_status"] = SensitivityStatus.ERROR.value

        asset: Optional[MediaAsset] = None
        try:
            asset = await self.store.update_fields(asset_id, **fields)
        except Exception as persist_exc:
            logger.error("Could not persist failure for asset %s: %s", asset_id, persist_exc)

        payload = {"asset_id": asset_id, "error": cause}
        if asset is not None:
            await self._emit(asset, EVENT_ERROR, payload)
        else:
            await safe_publish(self.notifier, asset_scope(asset_id), EVENT_ERROR, payload)
