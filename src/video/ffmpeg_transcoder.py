"""
FFmpeg-based clipping, H.264 re-encoding and subtitle extraction.
"""

import logging
import os
from typing import Callable, List, Optional

from pipeline.errors import ProcessExitFailure
from pipeline.process_runner import ManagedProcess, ProcessRunner, find_binary

logger = logging.getLogger(__name__)

ProcessTracker = Callable[[ManagedProcess], None]


def format_seconds(seconds: float) -> str:
    return f"{seconds:.3f}"


class FFmpegTranscoder:
    """Transcoder for downloaded media files using FFmpeg."""

    def __init__(self, runner: ProcessRunner, ffmpeg_path: Optional[str] = None):
        self.runner = runner
        self.ffmpeg_path = ffmpeg_path or find_binary("ffmpeg")

    @staticmethod
    def clip_args(input_file: str, output_file: str, start: float, end: float) -> List[str]:
        """Stream-copy a time range; cut points snap to keyframes."""
        return [
            '-ss', format_seconds(start),
            '-to', format_seconds(end),
            '-i', input_file,
            '-c', 'copy',
            '-movflags', '+faststart',  # index up front for progressive playback
            '-avoid_negative_ts', 'make_zero',
            '-y',
            output_file,
        ]

    @staticmethod
    def h264_args(input_file: str, output_file: str) -> List[str]:
        """Re-encode to H.264 high@4.1 / AAC 48 kHz stereo."""
        return [
            '-i', input_file,
            '-c:v', 'libx264',
            '-preset', 'medium',
            '-crf', '23',
            '-profile:v', 'high',
            '-level:v', '4.1',
            '-pix_fmt', 'yuv420p',
            '-c:a', 'aac',
            '-b:a', '192k',
            '-ar', '48000',
            '-ac', '2',
            '-movflags', '+faststart',
            '-y',
            output_file,
        ]

    @staticmethod
    def subtitle_args(input_file: str, stream_index: int, output_file: str) -> List[str]:
        return [
            '-i', input_file,
            '-map', f'0:{stream_index}',
            '-f', 'srt',
            '-y',
            output_file,
        ]

    async def clip(self, input_file: str, output_file: str, start: float, end: float,
                   track: Optional[ProcessTracker] = None) -> str:
        logger.debug(f"Clipping {input_file} [{start}s - {end}s] -> {output_file}")
        return await self._run(self.clip_args(input_file, output_file, start, end), output_file, track)

    async def encode_h264(self, input_file: str, output_file: str,
                          track: Optional[ProcessTracker] = None) -> str:
        logger.debug(f"Encoding {input_file} to H.264 -> {output_file}")
        return await self._run(self.h264_args(input_file, output_file), output_file, track)

    async def extract_subtitles(self, input_file: str, stream_index: int, output_file: str) -> Optional[str]:
        """Extract one subtitle stream as SRT text, or None if FFmpeg fails."""
        process = await self.runner.spawn(self.ffmpeg_path, self.subtitle_args(input_file, stream_index, output_file))
        result = await process.communicate()
        if result.exit_code != 0:
            logger.warning(f"Subtitle extraction failed for stream {stream_index}: {result.stderr.strip()[-500:]}")
            return None
        if not os.path.exists(output_file):
            return None
        with open(output_file, 'r', encoding='utf-8', errors='replace') as f:
            return f.read()

    async def _run(self, args: List[str], output_file: str, track: Optional[ProcessTracker]) -> str:
        process = await self.runner.spawn(self.ffmpeg_path, args)
        if track is not None:
            track(process)

        result = await process.communicate()
        if result.exit_code != 0:
            logger.error(f"FFmpeg failed ({result.exit_code}) for {output_file}: {result.stderr.strip()[-2000:]}")
            raise ProcessExitFailure("ffmpeg", result.exit_code, result.stderr)
        if not (os.path.exists(output_file) and os.path.getsize(output_file) > 0):
            raise ProcessExitFailure("ffmpeg", result.exit_code, f"no output written to {output_file}")
        return output_file
