"""
Video module: extractor metadata, format selection, and the
acquire / clip / encode / stream transform pipeline.
"""

__version__ = "1.0.0"

from .formats import FormatDescriptor, ClipRange, dedupe_by_quality, sort_formats, validate_clip_range
from .metadata_client import CaptionTrack, MediaReference, InfoDocument, MetadataClient
from .ffmpeg_transcoder import FFmpegTranscoder
from .transform import (
    CancellationToken,
    JobState,
    TransformJob,
    TransformPipeline,
    TransformRequest,
    VideoEncoding,
)

__all__ = [
    "FormatDescriptor",
    "ClipRange",
    "dedupe_by_quality",
    "sort_formats",
    "validate_clip_range",
    "CaptionTrack",
    "MediaReference",
    "InfoDocument",
    "MetadataClient",
    "FFmpegTranscoder",
    "CancellationToken",
    "JobState",
    "TransformJob",
    "TransformPipeline",
    "TransformRequest",
    "VideoEncoding",
]
