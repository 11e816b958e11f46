"""HTTP byte-range delivery of completed assets and their thumbnails."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from fastapi import Request
from starlette.responses import StreamingResponse

from models.asset import AssetStatus, MediaAsset
from services.errors import (
    AssetNotReadyError,
    RangeNotSatisfiableError,
    SourceFileMissingError,
    ThumbnailNotAvailableError,
)

VIDEO_MIME_BY_EXT = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
    ".mkv": "video/x-matroska",
    ".m4v": "video/mp4",
}
DEFAULT_VIDEO_MIME = "video/mp4"

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1


def content_type_for(mime_type: Optional[str], path: str) -> str:
    if mime_type:
        return mime_type
    return VIDEO_MIME_BY_EXT.get(Path(path).suffix.lower(), DEFAULT_VIDEO_MIME)


def parse_range_header(value: Optional[str], file_size: int) -> Optional[ByteRange]:
    """
    Parse a single `bytes=start-end` range against `file_size`.

    Returns None when the header should be ignored (absent, another unit,
    multiple ranges, garbage) and the full file served instead. Raises
    RangeNotSatisfiableError when the range cannot be served.
    """
    if not value:
        return None
    match = _RANGE_RE.match(value)
    if not match:
        return None
    raw_start, raw_end = match.groups()
    if not raw_start and not raw_end:
        return None

    if not raw_start:
        # Suffix form: the last N bytes
        suffix = int(raw_end)
        if suffix == 0 or file_size == 0:
            raise RangeNotSatisfiableError(file_size)
        return ByteRange(max(file_size - suffix, 0), file_size - 1)

    start = int(raw_start)
    end = int(raw_end) if raw_end else file_size - 1
    if start >= file_size or end < start:
        raise RangeNotSatisfiableError(file_size)
    return ByteRange(start, min(end, file_size - 1))


def iter_file_range(path: str, start: int, length: int, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
    """Yield exactly `length` bytes of `path` beginning at `start`."""
    remaining = length
    with open(path, "rb") as handle:
        handle.seek(start)
        while remaining > 0:
            chunk = handle.read(min(chunk_size, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk


class RangeStreamer:
    """Read-only view over completed assets; never mutates the record or the file."""

    def __init__(
        self,
        chunk_size: int = 64 * 1024,
        cache_max_age: int = 3600,
        thumbnail_cache_max_age: int = 86400,
    ):
        self.chunk_size = chunk_size
        self.cache_max_age = cache_max_age
        self.thumbnail_cache_max_age = thumbnail_cache_max_age

    @staticmethod
    def _require_ready(asset: MediaAsset) -> int:
        if asset.status != AssetStatus.COMPLETED.value:
            raise AssetNotReadyError(asset.id, asset.status)
        try:
            return os.stat(asset.source_path).st_size
        except OSError as exc:
            raise SourceFileMissingError(asset.source_path) from exc

    def stream(self, request: Request, asset: MediaAsset) -> StreamingResponse:
        file_size = self._require_ready(asset)
        content_type = content_type_for(asset.mime_type, asset.source_path)
        byte_range = parse_range_header(request.headers.get("range"), file_size)

        headers = {
            "Accept-Ranges": "bytes",
            "Cache-Control": f"public, max-age={self.cache_max_age}",
        }
        if byte_range is None:
            headers["Content-Length"] = str(file_size)
            return StreamingResponse(
                iter_file_range(asset.source_path, 0, file_size, self.chunk_size),
                status_code=200,
                media_type=content_type,
                headers=headers,
            )

        headers["Content-Range"] = f"bytes {byte_range.start}-{byte_range.end}/{file_size}"
        headers["Content-Length"] = str(byte_range.length)
        return StreamingResponse(
            iter_file_range(asset.source_path, byte_range.start, byte_range.length, self.chunk_size),
            status_code=206,
            media_type=content_type,
            headers=headers,
        )

    def stream_thumbnail(self, request: Request, asset: MediaAsset) -> StreamingResponse:
        path = asset.thumbnail_path
        if not path or not os.path.isfile(path):
            raise ThumbnailNotAvailableError(asset.id)
        size = os.stat(path).st_size
        return StreamingResponse(
            iter_file_range(path, 0, size, self.chunk_size),
            status_code=200,
            media_type="image/jpeg",
            headers={
                "Content-Length": str(size),
                "Cache-Control": f"public, max-age={self.thumbnail_cache_max_age}",
            },
        )

    def download(self, request: Request, asset: MediaAsset) -> StreamingResponse:
        file_size = self._require_ready(asset)
        filename = (asset.original_filename or Path(asset.source_path).name).replace('"', "")
        return StreamingResponse(
            iter_file_range(asset.source_path, 0, file_size, self.chunk_size),
            status_code=200,
            media_type=content_type_for(asset.mime_type, asset.source_path),
            headers={
                "Content-Disposition": f'attachment; filename="{filename}"',
                "Content-Length": str(file_size),
            },
        )
