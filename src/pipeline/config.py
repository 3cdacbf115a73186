"""
Configuration management for the media pipeline.
"""

import os
import tempfile
from dataclasses import dataclass
from typing import Optional


@dataclass
class PipelineConfig:
    """Configuration for the media acquisition and transformation pipeline."""

    # Storage
    upload_dir: str = os.path.join(os.getcwd(), "uploads")
    temp_dir: str = tempfile.gettempdir()
    cookies_path: Optional[str] = None  # Netscape cookie jar for yt-dlp

    # Metadata cache
    cache_ttl_seconds: float = 60 * 60
    cache_sweep_interval_seconds: float = 5 * 60

    # Uploads
    upload_retention_seconds: float = 60 * 60
    upload_reap_interval_seconds: float = 10 * 60
    max_upload_size: int = 500 * 1024 * 1024

    # External binaries (None = resolve from the usual install locations)
    ytdlp_path: Optional[str] = None
    ffmpeg_path: Optional[str] = None
    ffprobe_path: Optional[str] = None
    whisper_path: Optional[str] = None

    # Speech fallback
    whisper_model: str = "base"  # tiny, base, small, medium, large
    whisper_language: str = "en"

    # Server
    log_level: str = "INFO"
    port: int = 8000

    @staticmethod
    def default_cookies_path() -> Optional[str]:
        """cookies.txt in the working directory, if one is present."""
        path = os.path.join(os.getcwd(), "cookies.txt")
        return path if os.path.exists(path) else None

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        """Create configuration from environment variables."""
        return cls(
            upload_dir=os.getenv("UPLOADS_DIR", cls.upload_dir),
            temp_dir=os.getenv("MEDIA_TEMP_DIR", cls.temp_dir),
            cookies_path=os.getenv("COOKIES_PATH", cls.default_cookies_path()),
            cache_ttl_seconds=float(os.getenv("CACHE_TTL_SECONDS", cls.cache_ttl_seconds)),
            cache_sweep_interval_seconds=float(
                os.getenv("CACHE_SWEEP_INTERVAL_SECONDS", cls.cache_sweep_interval_seconds)
            ),
            upload_retention_seconds=float(os.getenv("UPLOAD_RETENTION_SECONDS", cls.upload_retention_seconds)),
            upload_reap_interval_seconds=float(
                os.getenv("UPLOAD_REAP_INTERVAL_SECONDS", cls.upload_reap_interval_seconds)
            ),
            max_upload_size=int(os.getenv("MAX_UPLOAD_SIZE", cls.max_upload_size)),
            ytdlp_path=os.getenv("YT_DLP_PATH", cls.ytdlp_path),
            ffmpeg_path=os.getenv("FFMPEG_PATH", cls.ffmpeg_path),
            ffprobe_path=os.getenv("FFPROBE_PATH", cls.ffprobe_path),
            whisper_path=os.getenv("WHISPER_PATH", cls.whisper_path),
            whisper_model=os.getenv("WHISPER_MODEL", cls.whisper_model),
            whisper_language=os.getenv("WHISPER_LANGUAGE", cls.whisper_language),
            log_level=os.getenv("LOG_LEVEL", cls.log_level),
            port=int(os.getenv("PORT", cls.port)),
        )
