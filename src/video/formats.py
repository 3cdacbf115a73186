"""
Format descriptors, quality labels and format selection helpers.
"""

import math
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from pipeline.errors import ValidationFailure

_LEADING_NUMBER = re.compile(r"^\s*(\d+(?:\.\d+)?)")
_HEIGHT_LABEL = re.compile(r"^\s*(\d+)\s*p?\s*$", re.IGNORECASE)

MIN_CLIP_SECONDS = 1.0


@dataclass(frozen=True)
class FormatDescriptor:
    """One selectable encoding of a media reference."""
    format_id: str
    quality_label: str
    container: str
    has_video: bool
    has_audio: bool
    bitrate: Optional[float] = None        # total, kbps
    audio_bitrate: Optional[float] = None  # kbps
    mime_type: Optional[str] = None
    protocol: Optional[str] = None
    height: Optional[int] = None

    @property
    def is_muxed(self) -> bool:
        return self.has_video and self.has_audio

    @property
    def is_audio_only(self) -> bool:
        return self.has_audio and not self.has_video

    def to_dict(self) -> Dict[str, Any]:
        return {
            "formatId": self.format_id,
            "qualityLabel": self.quality_label,
            "container": self.container,
            "hasVideo": self.has_video,
            "hasAudio": self.has_audio,
            "bitrate": self.bitrate,
            "audioBitrate": self.audio_bitrate,
            "mimeType": self.mime_type,
            "protocol": self.protocol,
        }


@dataclass(frozen=True)
class ClipRange:
    start_seconds: float
    end_seconds: float

    @property
    def duration(self) -> float:
        return self.end_seconds - self.start_seconds


def _has_codec(value: Any) -> bool:
    return bool(value) and value != "none"


def _as_number(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if number > 0 else None


def format_from_extractor(raw: Dict[str, Any]) -> Optional[FormatDescriptor]:
    """Build a descriptor from one yt-dlp format dict.

    Returns None for entries nobody can download as media (storyboards,
    formats with neither a height nor an audio bitrate).
    """
    format_id = raw.get("format_id")
    if not format_id or raw.get("protocol") == "mhtml":
        return None

    vcodec = raw.get("vcodec")
    acodec = raw.get("acodec")
    has_video = _has_codec(vcodec)
    has_audio = _has_codec(acodec)
    height = raw.get("height") if isinstance(raw.get("height"), int) else None
    abr = _as_number(raw.get("abr"))

    # yt-dlp leaves codecs unknown for some single-file extractors
    if vcodec is None and acodec is None:
        has_video = height is not None
        has_audio = True

    if has_video and height:
        quality_label = f"{height}p"
    elif has_audio and abr:
        quality_label = f"{round(abr)}kbps"
    else:
        return None

    container = raw.get("ext") or "mp4"
    kind = "video" if has_video else "audio"
    codecs = ", ".join(c for c in (vcodec, acodec) if _has_codec(c))
    mime_type = f"{kind}/{container}" + (f'; codecs="{codecs}"' if codecs else "")

    return FormatDescriptor(
        format_id=str(format_id),
        quality_label=quality_label,
        container=container,
        has_video=has_video,
        has_audio=has_audio,
        bitrate=_as_number(raw.get("tbr")),
        audio_bitrate=abr,
        mime_type=mime_type,
        protocol=raw.get("protocol"),
        height=height if has_video else None,
    )


def quality_number(label: Optional[str]) -> Optional[float]:
    """Numeric prefix of a quality label ("720p" -> 720, "128kbps" -> 128)."""
    if not label:
        return None
    match = _LEADING_NUMBER.match(label)
    return float(match.group(1)) if match else None


def sort_formats(formats: Iterable[FormatDescriptor]) -> List[FormatDescriptor]:
    """Sort by numeric quality prefix, highest first; unparseable labels last."""
    def key(fmt: FormatDescriptor):
        number = quality_number(fmt.quality_label)
        return (number is None, -(number or 0))
    return sorted(formats, key=key)


def dedupe_by_quality(formats: Iterable[FormatDescriptor]) -> List[FormatDescriptor]:
    """Keep one descriptor per quality label, preferring audio+video ones.

    Among equally ranked candidates the first one seen wins, so the result is
    deterministic for a given extractor output.
    """
    chosen: Dict[str, FormatDescriptor] = {}
    for fmt in formats:
        current = chosen.get(fmt.quality_label)
        if current is None or (fmt.is_muxed and not current.is_muxed):
            chosen[fmt.quality_label] = fmt
    return sort_formats(chosen.values())


def parse_quality_height(quality: Optional[str]) -> Optional[int]:
    """Parse "720p" or "720" into a pixel height."""
    if not quality:
        return None
    match = _HEIGHT_LABEL.match(str(quality))
    if not match:
        return None
    height = int(match.group(1))
    return height if height > 0 else None


def build_format_selector(height: int) -> str:
    """yt-dlp selector for ``height``; the first alternative that matches wins.

    muxed stream at the height, then a video+audio pair at the height, then the
    best stream at or below it, then anything.
    """
    return (
        f"best[height={height}][vcodec!=none][acodec!=none]"
        f"/bestvideo[height={height}]+bestaudio"
        f"/best[height<={height}]"
        f"/best"
    )


def validate_clip_range(start: float, end: float, duration: Optional[float] = None) -> ClipRange:
    """Validate a clip against the media duration.

    ``duration`` may be None or 0 when the extractor did not report one; only
    the duration-independent checks apply then.
    """
    if start is None or end is None:
        raise ValidationFailure("Clip range needs both a start and an end time")
    # NaN compares False against everything and would pass the checks below
    if not (math.isfinite(start) and math.isfinite(end)):
        raise ValidationFailure("Start and end times must be finite numbers")
    if start < 0:
        raise ValidationFailure("Start time cannot be negative")
    if end <= start:
        raise ValidationFailure("End time must be after start time")
    if duration and end > duration:
        raise ValidationFailure("End time exceeds video duration")
    if end - start < MIN_CLIP_SECONDS:
        raise ValidationFailure("Clip must be at least 1 second long")
    return ClipRange(start_seconds=float(start), end_seconds=float(end))
