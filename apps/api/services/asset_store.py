"""Durable asset record access used by the processing pipeline."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker
from models.asset import IN_PROGRESS_STATUSES, MediaAsset
from services.errors import AssetNotFoundError

logger = logging.getLogger(__name__)

_IMMUTABLE_FIELDS = {"id", "user_id", "created_at"}


class AssetStore:
    """Get/update-by-id over `media_assets`, one committed transaction per write."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker or async_session_maker

    async def create(self, **fields: Any) -> MediaAsset:
        async with self._session_maker() as db:
            asset = MediaAsset(**fields)
            db.add(asset)
            await db.commit()
            await db.refresh(asset)
            return asset

    async def get_by_id(self, asset_id: str) -> MediaAsset:
        async with self._session_maker() as db:
            result = await db.execute(select(MediaAsset).where(MediaAsset.id == asset_id))
            asset = result.scalar_one_or_none()
        if asset is None:
            raise AssetNotFoundError(asset_id)
        return asset

    async def update_fields(self, asset_id: str, **fields: Any) -> MediaAsset:
        """Apply all `fields` in a single UPDATE and return the fresh record."""
        blocked = _IMMUTABLE_FIELDS.intersection(fields)
        if blocked:
            raise ValueError(f"Immutable asset fields cannot be updated: {sorted(blocked)}")
        if "progress" in fields and fields["progress"] is not None:
            fields["progress"] = max(0, min(int(fields["progress"]), 100))

        async with self._session_maker() as db:
            result = await db.execute(
                update(MediaAsset)
                .where(MediaAsset.id == asset_id)
                .values(**fields)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await db.rollback()
                raise AssetNotFoundError(asset_id)
            await db.commit()

            refreshed = await db.execute(select(MediaAsset).where(MediaAsset.id == asset_id))
            return refreshed.scalar_one()

    async def increment_view(self, asset_id: str) -> None:
        """Best-effort view counter bump; failures are logged, never raised."""
        try:
            async with self._session_maker() as db:
                await db.execute(
                    update(MediaAsset)
                    .where(MediaAsset.id == asset_id)
                    .values(views=MediaAsset.views + 1)
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except Exception as exc:
            logger.warning("Could not increment view count for asset %s: %s", asset_id, exc)

    async def stats_for_user(self, user_id: str) -> Dict[str, Any]:
        async with self._session_maker() as db:
            result = await db.execute(
                select(
                    func.count(MediaAsset.id),
                    func.coalesce(func.sum(MediaAsset.file_size_bytes), 0),
                    func.coalesce(func.sum(MediaAsset.views), 0),
                    func.avg(MediaAsset.duration_seconds),
                ).where(MediaAsset.user_id == user_id)
            )
            total, total_size, total_views, avg_duration = result.one()

            by_sensitivity = await db.execute(
                select(MediaAsset.sensitivity_status, func.count(MediaAsset.id))
                .where(MediaAsset.user_id == user_id)
                .group_by(MediaAsset.sensitivity_status)
            )
            sensitivity_counts = {row[0]: int(row[1]) for row in by_sensitivity.all()}

            in_progress = await db.execute(
                select(func.count(MediaAsset.id)).where(
                    MediaAsset.user_id == user_id,
                    MediaAsset.status.in_(IN_PROGRESS_STATUSES),
                )
            )
            processing_count = int(in_progress.scalar_one() or 0)

        return {
            "total_videos": int(total or 0),
            "total_size_bytes": int(total_size or 0),
            "total_views": int(total_views or 0),
            "avg_duration_seconds": round(float(avg_duration), 2) if avg_duration is not None else None,
            "safe_videos": sensitivity_counts.get("safe", 0),
            "flagged_videos": sensitivity_counts.get("flagged", 0),
            "processing_videos": processing_count,
        }
