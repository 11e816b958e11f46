"""ffmpeg/ffprobe wrappers used by the processing pipeline."""

from .probe import MediaProbe, ProbeResult, parse_frame_rate
from .thumbnail import ThumbnailExtractor, thumbnail_path_for
