import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

import ffmpeg

logger = logging.getLogger(__name__)


def thumbnail_path_for(source_path: str) -> str:
    """Thumbnails live beside the upload as `<stem>_thumb.jpg`."""
    source = Path(source_path)
    return str(source.with_name(f"{source.stem}_thumb.jpg"))


class ThumbnailExtractor:
    """Grab one scaled still frame with ffmpeg; returns None instead of raising."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        width: int = 320,
        timeout_seconds: Optional[float] = 30.0,
    ):
        self.ffmpeg_path = ffmpeg_path
        self.width = width
        self.timeout_seconds = timeout_seconds

    def extract(self, source_path: str, dest_path: str, at_timestamp: str = "00:00:02") -> Optional[str]:
        Path(dest_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # ffmpeg -ss 00:00:02 -i video.mp4 -vframes 1 -vf scale=320:-1 -y thumb.jpg
            process = (
                ffmpeg
                .input(source_path, ss=at_timestamp)
                .filter("scale", self.width, -1)
                .output(dest_path, vframes=1)
                .overwrite_output()
                .run_async(cmd=self.ffmpeg_path, pipe_stdout=True, pipe_stderr=True)
            )
        except Exception as e:
            logger.warning(f"Could not start ffmpeg for thumbnail of {source_path}: {e}")
            return None

        try:
            _, stderr = process.communicate(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            logger.warning(f"Thumbnail extraction timed out after {self.timeout_seconds}s for {source_path}")
            return None

        if process.returncode != 0:
            detail = stderr.decode(errors="ignore").strip()[-500:] if stderr else ""
            logger.warning(f"ffmpeg thumbnail exited {process.returncode} for {source_path}: {detail}")
            return None

        if not os.path.exists(dest_path) or os.path.getsize(dest_path) == 0:
            logger.warning(f"ffmpeg produced no thumbnail for {source_path}")
            return None
        return dest_path
