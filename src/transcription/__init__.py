"""
Transcription module: caption parsing, embedded subtitle extraction and
whisper speech-to-text fallback.
"""

__version__ = "1.0.0"

from .caption_parser import CaptionEntry, format_captions, parse_srt, parse_vtt
from .whisper_client import WhisperClient
from .caption_chain import CaptionExtractor, SubtitleStream, TranscriptionResult
from .caption_tracks import CaptionTrackFetcher

__all__ = [
    "CaptionEntry",
    "format_captions",
    "parse_srt",
    "parse_vtt",
    "WhisperClient",
    "CaptionExtractor",
    "SubtitleStream",
    "TranscriptionResult",
    "CaptionTrackFetcher",
]
