import json
import logging
import subprocess
from typing import Any, Optional

import ffmpeg
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class ProbeResult(BaseModel):
    duration_seconds: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    codec: Optional[str] = None
    frame_rate: Optional[int] = None
    bitrate: Optional[int] = None


def _to_float(value: Any) -> Optional[float]:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _to_int(value: Any) -> Optional[int]:
    try:
        parsed = int(float(value))
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def parse_frame_rate(value: Optional[str]) -> Optional[int]:
    """
    Convert an ffprobe rational like "30000/1001" into a whole frame rate.
    A zero or missing denominator falls back to the numerator.
    """
    if not value:
        return None
    numerator, _, denominator = str(value).partition("/")
    try:
        num = float(numerator)
    except ValueError:
        return None
    try:
        den = float(denominator) if denominator else 0.0
    except ValueError:
        den = 0.0
    rate = int(num / den + 0.5) if den else int(num)
    return rate if rate > 0 else None


class MediaProbe:
    """Extract technical metadata with ffprobe; never raises."""

    def __init__(self, ffprobe_path: str = "ffprobe", timeout_seconds: Optional[float] = 30.0):
        self.ffprobe_path = ffprobe_path
        self.timeout_seconds = timeout_seconds

    def _run_ffprobe(self, path: str) -> dict:
        # Same argv as ffmpeg.probe(), which has no way to bound the wait
        args = [self.ffprobe_path, "-show_format", "-show_streams", "-of", "json", path]
        process = subprocess.Popen(args, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        try:
            out, err = process.communicate(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            raise
        if process.returncode != 0:
            raise ffmpeg.Error("ffprobe", out, err)
        return json.loads(out.decode("utf-8"))

    def probe(self, path: str) -> ProbeResult:
        try:
            data = self._run_ffprobe(path)
        except ffmpeg.Error as e:
            stderr = e.stderr.decode(errors="ignore") if e.stderr else str(e)
            logger.warning(f"ffprobe failed for {path}: {stderr.strip()[:500]}")
            return ProbeResult()
        except subprocess.TimeoutExpired:
            logger.warning(f"ffprobe timed out after {self.timeout_seconds}s for {path}")
            return ProbeResult()
        except Exception as e:
            # Missing binary or unparseable JSON
            logger.warning(f"Could not probe media metadata for {path}: {e}")
            return ProbeResult()

        try:
            return self._summarize(data)
        except Exception as e:
            logger.warning(f"Unexpected ffprobe output for {path}: {e}")
            return ProbeResult()

    @staticmethod
    def _summarize(data: dict) -> ProbeResult:
        fmt = data.get("format") or {}
        streams = data.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), None) or {}

        duration = _to_float(fmt.get("duration"))
        if duration is None:
            duration = _to_float(video.get("duration"))

        return ProbeResult(
            duration_seconds=duration,
            width=_to_int(video.get("width")),
            height=_to_int(video.get("height")),
            codec=video.get("codec_name") or None,
            frame_rate=parse_frame_rate(video.get("r_frame_rate")),
            bitrate=_to_int(fmt.get("bit_rate")),
        )
