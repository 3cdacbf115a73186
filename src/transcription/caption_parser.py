"""
SRT / WebVTT parsing into caption entries, and rendering entries back out
as SRT, VTT or plain text.
"""

import html
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

CAPTION_FORMATS = ("srt", "vtt", "txt")

CAPTION_MIME_TYPES: Dict[str, str] = {
    "srt": "application/x-subrip",
    "vtt": "text/vtt",
    "txt": "text/plain",
}

_SRT_TIMING = re.compile(
    r"(\d{1,2}):(\d{2}):(\d{2})[,.](\d{3})\s*-->\s*(\d{1,2}):(\d{2}):(\d{2})[,.](\d{3})"
)
# WebVTT allows the hours field to be omitted
_VTT_TIMESTAMP = r"(?:(\d{1,2}):)?(\d{2}):(\d{2})[.,](\d{3})"
_VTT_TIMING = re.compile(_VTT_TIMESTAMP + r"\s*-->\s*" + _VTT_TIMESTAMP)
_HTML_TAG = re.compile(r"<[^>]+>")
_SSA_TAG = re.compile(r"\{[^}]*\}")
_BLOCK_SPLIT = re.compile(r"\n\s*\n")


@dataclass(frozen=True)
class CaptionEntry:
    """A single caption cue."""
    start: float     # seconds
    duration: float  # seconds
    text: str

    @property
    def end(self) -> float:
        return self.start + self.duration

    def to_dict(self) -> Dict[str, object]:
        return {"start": self.start, "duration": self.duration, "text": self.text}


def _seconds(hours: Optional[str], minutes: str, seconds: str, millis: str) -> float:
    return int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds) + int(millis) / 1000


def clean_caption_text(lines: List[str]) -> str:
    """Join cue lines and strip HTML/VTT markup and SSA style overrides."""
    text = " ".join(line.strip() for line in lines)
    text = _HTML_TAG.sub("", text)
    text = _SSA_TAG.sub("", text)
    text = html.unescape(text)
    return " ".join(text.split())


def _blocks(content: str) -> List[List[str]]:
    normalized = content.replace("\r\n", "\n").replace("\r", "\n").lstrip("\ufeff")
    return [block.strip().split("\n") for block in _BLOCK_SPLIT.split(normalized.strip()) if block.strip()]


def _sorted(entries: List[CaptionEntry]) -> List[CaptionEntry]:
    # stable, so cues sharing a start time keep file order
    return sorted(entries, key=lambda entry: entry.start)


def parse_srt(content: str) -> List[CaptionEntry]:
    """Parse SRT content into caption entries.

    Blocks without a valid timing line or without text are skipped rather than
    failing the whole file.
    """
    entries: List[CaptionEntry] = []
    skipped = 0
    for lines in _blocks(content):
        timing_index = next((i for i, line in enumerate(lines) if "-->" in line), None)
        if timing_index is None:
            skipped += 1
            continue
        match = _SRT_TIMING.search(lines[timing_index])
        if not match:
            skipped += 1
            continue

        start = _seconds(*match.group(1, 2, 3, 4))
        end = _seconds(*match.group(5, 6, 7, 8))
        text = clean_caption_text(lines[timing_index + 1:])
        if not text or end < start:
            skipped += 1
            continue
        entries.append(CaptionEntry(start=start, duration=round(end - start, 3), text=text))

    if skipped:
        logger.debug(f"Skipped {skipped} malformed SRT block(s)")
    return _sorted(entries)


def parse_vtt(content: str) -> List[CaptionEntry]:
    """Parse WebVTT content into caption entries.

    Handles the WEBVTT header, NOTE/STYLE/REGION blocks, cue identifiers and
    cue settings after the end timestamp.
    """
    entries: List[CaptionEntry] = []
    for lines in _blocks(content):
        first = lines[0].strip()
        if first.startswith(("WEBVTT", "NOTE", "STYLE", "REGION")) and "-->" not in first:
            continue
        timing_index = next((i for i, line in enumerate(lines) if "-->" in line), None)
        if timing_index is None:
            continue
        match = _VTT_TIMING.search(lines[timing_index])
        if not match:
            continue

        start = _seconds(*match.group(1, 2, 3, 4))
        end = _seconds(*match.group(5, 6, 7, 8))
        text = clean_caption_text(lines[timing_index + 1:])
        if not text or end < start:
            continue
        entries.append(CaptionEntry(start=start, duration=round(end - start, 3), text=text))
    return _sorted(entries)


def _timestamp(seconds: float, separator: str) -> str:
    total_millis = int(round(max(seconds, 0.0) * 1000))
    hours, remainder = divmod(total_millis, 3600 * 1000)
    minutes, remainder = divmod(remainder, 60 * 1000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}{separator}{millis:03d}"


def generate_srt(entries: List[CaptionEntry]) -> str:
    """Render entries as SRT (number, timecode, text, blank line)."""
    lines = []
    for counter, entry in enumerate(entries, start=1):
        lines.append(str(counter))
        lines.append(f"{_timestamp(entry.start, ',')} --> {_timestamp(entry.end, ',')}")
        lines.append(entry.text)
        lines.append("")
    return "\n".join(lines)


def generate_vtt(entries: List[CaptionEntry]) -> str:
    lines = ["WEBVTT", ""]
    for entry in entries:
        lines.append(f"{_timestamp(entry.start, '.')} --> {_timestamp(entry.end, '.')}")
        lines.append(entry.text)
        lines.append("")
    return "\n".join(lines)


def generate_text(entries: List[CaptionEntry]) -> str:
    return "\n".join(entry.text for entry in entries)


def format_captions(entries: List[CaptionEntry], caption_format: str) -> str:
    """Render entries in one of ``CAPTION_FORMATS``."""
    if caption_format == "srt":
        return generate_srt(entries)
    if caption_format == "vtt":
        return generate_vtt(entries)
    if caption_format == "txt":
        return generate_text(entries)
    raise ValueError(f"Unsupported caption format: {caption_format}")
