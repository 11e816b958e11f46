"""Uploaded media asset model."""

import enum
import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, Float, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class AssetStatus(str, enum.Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    ANALYZING = "analyzing"
    COMPLETED = "completed"
    FAILED = "failed"


class SensitivityStatus(str, enum.Enum):
    PENDING = "pending"
    SAFE = "safe"
    FLAGGED = "flagged"
    ERROR = "error"


IN_PROGRESS_STATUSES = (
    AssetStatus.UPLOADING.value,
    AssetStatus.PROCESSING.value,
    AssetStatus.ANALYZING.value,
)
TERMINAL_STATUSES = (AssetStatus.COMPLETED.value, AssetStatus.FAILED.value)


class MediaAsset(Base):
    """Uploaded video plus its derived metadata and classification state."""

    __tablename__ = "media_assets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    original_filename = Column(String, nullable=False)
    source_path = Column(String, nullable=False)
    mime_type = Column(String, nullable=True)
    file_size_bytes = Column(Integer, nullable=True)

    status = Column(String, nullable=False, default=AssetStatus.UPLOADING.value, index=True)
    progress = Column(Integer, nullable=False, default=0)
    progress_message = Column(String, nullable=False, default="")

    # Populated by the probe stage; stay NULL when probing fails
    duration_seconds = Column(Float, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    codec = Column(String, nullable=True)
    frame_rate = Column(Integer, nullable=True)
    bitrate = Column(Integer, nullable=True)

    thumbnail_path = Column(String, nullable=True)
    stream_url = Column(String, nullable=True)

    sensitivity_status = Column(String, nullable=False, default=SensitivityStatus.PENDING.value, index=True)
    sensitivity_score = Column(Integer, nullable=True)
    sensitivity_details = Column(JSON, nullable=True)
    sensitivity_reasons = Column(JSON, nullable=True)

    error_message = Column(String, nullable=True)
    views = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="media_assets")

    def to_dict(self) -> dict:
        """Serialize the record for API responses and `video:ready` events."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "title": self.title,
            "original_filename": self.original_filename,
            "mime_type": self.mime_type,
            "file_size_bytes": self.file_size_bytes,
            "status": self.status,
            "progress": int(self.progress or 0),
            "progress_message": self.progress_message or "",
            "duration_seconds": self.duration_seconds,
            "width": self.width,
            "height": self.height,
            "codec": self.codec,
            "frame_rate": self.frame_rate,
            "bitrate": self.bitrate,
            "has_thumbnail": bool(self.thumbnail_path),
            "stream_url": self.stream_url,
            "sensitivity": {
                "status": self.sensitivity_status,
                "score": self.sensitivity_score,
                "details": self.sensitivity_details or {},
                "reasons": list(self.sensitivity_reasons or []),
            },
            "error_message": self.error_message,
            "views": int(self.views or 0),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
