"""Domain errors raised by the processing pipeline and the range streamer."""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for media pipeline errors."""


class AssetNotFoundError(PipelineError):
    def __init__(self, asset_id: str):
        super().__init__(f"Asset {asset_id} not found")
        self.asset_id = asset_id


class AssetNotReadyError(PipelineError):
    """Asset is not `completed`; its bytes must not be served."""

    def __init__(self, asset_id: str, status: str):
        if status == "failed":
            message = "Video processing failed; the file cannot be streamed"
        else:
            message = "Video is still processing and not ready for streaming"
        super().__init__(message)
        self.asset_id = asset_id
        self.status = status


class RangeNotSatisfiableError(PipelineError):
    def __init__(self, file_size: int):
        super().__init__("Requested range not satisfiable")
        self.file_size = file_size


class ThumbnailNotAvailableError(PipelineError):
    def __init__(self, asset_id: str):
        super().__init__("Thumbnail not available")
        self.asset_id = asset_id


class SourceFileMissingError(PipelineError):
    def __init__(self, path: str):
        super().__init__("Video file not found")
        self.path = path


class AssetBusyError(PipelineError):
    """A pipeline run is already active for the asset."""

    def __init__(self, asset_id: str):
        super().__init__("Video is currently being processed; try again when processing finishes")
        self.asset_id = asset_id


class InvalidAssetStateError(PipelineError):
    def __init__(self, asset_id: str, status: str, message: str):
        super().__init__(message)
        self.asset_id = asset_id
        self.status = status


class ClassificationError(PipelineError):
    """Sensitivity scoring produced no usable result."""
