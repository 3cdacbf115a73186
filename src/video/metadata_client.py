"""
yt-dlp metadata client with an in-memory TTL cache in front of it.
"""

import json
import logging
import math
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pipeline.cache import MetadataCache
from pipeline.errors import ParseFailure, ProcessExitFailure
from pipeline.process_runner import ProcessRunner, find_binary

from .formats import FormatDescriptor, dedupe_by_quality, format_from_extractor

logger = logging.getLogger(__name__)

YOUTUBE_WATCH_URL = "https://www.youtube.com/watch?v={}"


@dataclass(frozen=True)
class MediaReference:
    """A platform plus an opaque video id or normalized URL."""
    platform: str
    value: str

    @property
    def url(self) -> str:
        if self.value.startswith(("http://", "https://")):
            return self.value
        if self.platform == "youtube":
            return YOUTUBE_WATCH_URL.format(self.value)
        return self.value

    @property
    def cache_key(self) -> str:
        return f"{self.platform}:info:{self.value}"


@dataclass(frozen=True)
class CaptionTrack:
    """A subtitle track the extractor can fetch for a video."""
    language: str
    name: str = ""
    automatic: bool = False  # speech-recognized by the platform
    extensions: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "languageCode": self.language,
            "name": self.name or self.language,
            "isAutoGenerated": self.automatic,
            "formats": list(self.extensions),
        }


def _caption_tracks(raw: Any, automatic: bool) -> List[CaptionTrack]:
    if not isinstance(raw, dict):
        return []
    tracks = []
    for language, variants in raw.items():
        # yt-dlp lists the live chat replay as a "subtitle"
        if not isinstance(language, str) or language == "live_chat" or not isinstance(variants, list):
            continue
        variants = [v for v in variants if isinstance(v, dict)]
        if not variants:
            continue
        name = next((_text(v.get("name")) for v in variants if _text(v.get("name"))), "")
        extensions = tuple(dict.fromkeys(_text(v.get("ext")) for v in variants if _text(v.get("ext"))))
        tracks.append(CaptionTrack(language=language, name=name, automatic=automatic, extensions=extensions))
    return tracks


@dataclass
class InfoDocument:
    """The slice of extractor output the pipeline actually uses."""
    id: str
    title: str
    duration: float = 0.0
    description: str = ""
    thumbnail: str = ""
    thumbnails: List[str] = field(default_factory=list)
    uploader: str = ""
    uploader_url: str = ""
    view_count: int = 0
    upload_date: str = ""
    webpage_url: str = ""
    formats: List[FormatDescriptor] = field(default_factory=list)
    caption_tracks: List[CaptionTrack] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "duration": self.duration,
            "description": self.description,
            "thumbnail": self.thumbnail,
            "uploader": self.uploader,
            "uploaderUrl": self.uploader_url,
            "viewCount": self.view_count,
            "uploadDate": self.upload_date,
            "url": self.webpage_url,
        }


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def _number(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def parse_info_document(payload: str) -> InfoDocument:
    """Parse ``yt-dlp -j`` output into an InfoDocument.

    Raises:
        ParseFailure: the output is not a JSON object or lacks ``id``/``formats``.
    """
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseFailure(f"Failed to parse yt-dlp JSON output: {e}") from e
    if not isinstance(data, dict):
        raise ParseFailure("yt-dlp JSON output is not an object")

    video_id = data.get("id")
    if not isinstance(video_id, str) or not video_id:
        raise ParseFailure("yt-dlp output is missing the video id")
    raw_formats = data.get("formats")
    if not isinstance(raw_formats, list):
        raise ParseFailure(f"yt-dlp output for {video_id} has no format list")

    formats = []
    for raw in raw_formats:
        if isinstance(raw, dict):
            descriptor = format_from_extractor(raw)
            if descriptor is not None:
                formats.append(descriptor)

    thumbnails = [
        t["url"] for t in data.get("thumbnails") or []
        if isinstance(t, dict) and isinstance(t.get("url"), str)
    ]
    description = _text(data.get("description"))
    title = _text(data.get("title")) or description or "Untitled"

    return InfoDocument(
        id=video_id,
        title=" ".join(title.split()),
        duration=_number(data.get("duration")),
        description=description,
        thumbnail=_text(data.get("thumbnail")) or (thumbnails[-1] if thumbnails else ""),
        thumbnails=thumbnails,
        uploader=_text(data.get("uploader")) or _text(data.get("creator")) or _text(data.get("channel")),
        uploader_url=_text(data.get("uploader_url")) or _text(data.get("channel_url")),
        view_count=int(_number(data.get("view_count"))),
        upload_date=_text(data.get("upload_date")),
        webpage_url=_text(data.get("webpage_url")),
        formats=formats,
        caption_tracks=(
            _caption_tracks(data.get("subtitles"), automatic=False)
            + _caption_tracks(data.get("automatic_captions"), automatic=True)
        ),
    )


def extractor_env() -> Dict[str, str]:
    """PATH with ~/.deno/bin first; yt-dlp uses deno for JS challenges."""
    deno_bin = os.path.join(os.path.expanduser("~"), ".deno", "bin")
    return {"PATH": f"{deno_bin}{os.pathsep}{os.environ.get('PATH', '')}"}


class MetadataClient:
    """Fetches normalized info documents through yt-dlp, cached by reference."""

    def __init__(
        self,
        runner: ProcessRunner,
        cache: MetadataCache,
        ytdlp_path: Optional[str] = None,
        cookies_path: Optional[str] = None,
    ):
        self.runner = runner
        self.cache = cache
        self.ytdlp_path = ytdlp_path or find_binary("yt-dlp")
        self.cookies_path = cookies_path

    def base_args(self) -> List[str]:
        args = ["--no-warnings", "--no-playlist"]
        if self.cookies_path and os.path.exists(self.cookies_path):
            args += ["--cookies", self.cookies_path]
        return args

    async def fetch_info(self, reference: MediaReference) -> InfoDocument:
        """Return the info document for ``reference``, consulting the cache first."""
        cached = self.cache.get(reference.cache_key)
        if cached is not None:
            logger.debug(f"Cache hit for {reference.cache_key}")
            return cached

        args = self.base_args() + ["-j", reference.url]
        result = await self.runner.run(self.ytdlp_path, args, env=extractor_env())
        if result.exit_code != 0:
            logger.error(f"yt-dlp info failed for {reference.url}: {result.stderr.strip()}")
            raise ProcessExitFailure("yt-dlp", result.exit_code, result.stderr)

        # yt-dlp prints one JSON document per line; --no-playlist keeps it to one
        lines = [line for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise ParseFailure(f"yt-dlp produced no output for {reference.url}")
        info = parse_info_document(lines[0])

        self.cache.set(reference.cache_key, info)
        logger.info(f"Fetched info for {reference.cache_key}: {len(info.formats)} formats")
        return info

    async def get_format(self, reference: MediaReference, format_id: str) -> Optional[FormatDescriptor]:
        info = await self.fetch_info(reference)
        for fmt in info.formats:
            if fmt.format_id == format_id:
                return fmt
        return None

    async def list_formats(self, reference: MediaReference) -> List[FormatDescriptor]:
        """Formats for display: one per quality label, highest quality first."""
        info = await self.fetch_info(reference)
        return dedupe_by_quality(info.formats)

    async def list_caption_tracks(self, reference: MediaReference) -> List[CaptionTrack]:
        """Uploader-provided tracks first, then the platform's automatic ones."""
        info = await self.fetch_info(reference)
        return list(info.caption_tracks)
