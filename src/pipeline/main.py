"""
Service container for the media pipeline.

``MediaServices`` builds the long-lived collaborators once (process runner,
metadata cache, clients, upload manager), starts their timers, and tears them
down again. The HTTP layer holds one instance for the lifetime of the process.

Run the server with:
python -m pipeline.main
"""

import logging
import os
from typing import Any, Dict, Optional

from .cache import MetadataCache
from .config import PipelineConfig
from .process_runner import ProcessRunner

from transcription.caption_chain import CaptionExtractor
from transcription.caption_tracks import CaptionTrackFetcher
from transcription.whisper_client import WhisperClient
from uploads.manager import UploadManager
from video.ffmpeg_transcoder import FFmpegTranscoder
from video.metadata_client import MetadataClient
from video.transform import TransformPipeline

logger = logging.getLogger(__name__)


class MediaServices:
    """Explicitly owned singletons shared by all requests."""

    def __init__(self, config: PipelineConfig, runner: Optional[ProcessRunner] = None):
        self.config = config
        self.runner = runner or ProcessRunner()
        self.cache = MetadataCache(
            default_ttl=config.cache_ttl_seconds,
            sweep_interval=config.cache_sweep_interval_seconds,
        )
        self.metadata_client = MetadataClient(
            self.runner,
            self.cache,
            ytdlp_path=config.ytdlp_path,
            cookies_path=config.cookies_path,
        )
        self.transcoder = FFmpegTranscoder(self.runner, ffmpeg_path=config.ffmpeg_path)
        self.transform_pipeline = TransformPipeline(
            self.runner,
            self.metadata_client,
            self.transcoder,
            temp_dir=config.temp_dir,
        )
        self.whisper = WhisperClient(
            self.runner,
            whisper_path=config.whisper_path,
            model_size=config.whisper_model,
            language=config.whisper_language,
            temp_dir=config.temp_dir,
        )
        self.caption_extractor = CaptionExtractor(
            self.runner,
            self.transcoder,
            self.whisper,
            ffprobe_path=config.ffprobe_path,
            temp_dir=config.temp_dir,
        )
        self.caption_tracks = CaptionTrackFetcher(self.runner, self.metadata_client, temp_dir=config.temp_dir)
        self.uploads = UploadManager(
            config.upload_dir,
            retention_seconds=config.upload_retention_seconds,
            reap_interval_seconds=config.upload_reap_interval_seconds,
            max_upload_size=config.max_upload_size,
        )
        self._started = False

    async def start(self) -> None:
        """Start the cache sweep and the upload reaper."""
        if self._started:
            return
        self.cache.start()
        self.uploads.start()
        self._started = True
        logger.info(
            f"Media services started (yt-dlp={self.metadata_client.ytdlp_path}, "
            f"ffmpeg={self.transcoder.ffmpeg_path}, uploads={self.uploads.upload_dir})"
        )

    async def stop(self) -> None:
        """Cancel running jobs and stop background timers."""
        cancelled = self.transform_pipeline.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} running transform job(s)")
        await self.cache.stop()
        await self.uploads.stop()
        self._started = False
        logger.info("Media services stopped")

    def stats(self) -> Dict[str, Any]:
        return {
            "cache": self.cache.stats(),
            "activeJobs": len(self.transform_pipeline.active_jobs),
            "whisper": self.whisper.get_model_info(),
        }


if __name__ == "__main__":
    import uvicorn

    config = PipelineConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    port = int(os.getenv("PORT", config.port))
    logger.info("Starting media pipeline server on port %d", port)
    uvicorn.run("server.app:app", host="0.0.0.0", port=port)
