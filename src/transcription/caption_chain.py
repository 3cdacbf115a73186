"""
Caption extraction for uploaded videos.

Strategy:
1. Probe the file for embedded subtitle streams with ffprobe
2. If there are any, extract the first one as SRT with ffmpeg and parse it
3. Otherwise (or if that yields nothing) transcribe the audio with whisper
   and parse the resulting VTT
"""

import json
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass, field
from typing import List, Optional

from pipeline.errors import NotFound, ParseFailure, PipelineError, UnsupportedOperation
from pipeline.process_runner import ProcessRunner, find_binary
from video.ffmpeg_transcoder import FFmpegTranscoder

from .caption_parser import CaptionEntry, parse_srt, parse_vtt
from .whisper_client import WhisperClient

logger = logging.getLogger(__name__)

METHOD_EMBEDDED = "embedded"
METHOD_SPEECH = "speech"


@dataclass(frozen=True)
class SubtitleStream:
    """An embedded subtitle stream reported by ffprobe."""
    index: int
    language: str = "und"
    title: Optional[str] = None


@dataclass(frozen=True)
class TranscriptionResult:
    entries: List[CaptionEntry] = field(default_factory=list)
    method: str = METHOD_EMBEDDED  # "embedded" or "speech"
    language: Optional[str] = None

    def to_dict(self):
        return {
            "entries": [entry.to_dict() for entry in self.entries],
            "method": self.method,
            "language": self.language,
            "entryCount": len(self.entries),
        }


class CaptionExtractor:
    """Runs the embedded-subtitle -> speech-recognition fallback chain."""

    def __init__(
        self,
        runner: ProcessRunner,
        transcoder: FFmpegTranscoder,
        whisper: WhisperClient,
        ffprobe_path: Optional[str] = None,
        temp_dir: Optional[str] = None,
    ):
        self.runner = runner
        self.transcoder = transcoder
        self.whisper = whisper
        self.ffprobe_path = ffprobe_path or find_binary("ffprobe")
        self.temp_dir = temp_dir

    async def probe_subtitle_streams(self, file_path: str) -> List[SubtitleStream]:
        """List subtitle streams without decoding the file."""
        result = await self.runner.run(self.ffprobe_path, [
            "-v", "quiet",
            "-print_format", "json",
            "-show_streams",
            "-select_streams", "s",
            file_path,
        ])
        if result.exit_code != 0:
            logger.warning(f"ffprobe exited with {result.exit_code} for {file_path}; assuming no subtitles")
            return []

        try:
            data = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as e:
            raise ParseFailure(f"ffprobe returned invalid JSON for {file_path}") from e
        if not isinstance(data, dict):
            raise ParseFailure(f"ffprobe returned unexpected JSON for {file_path}")

        streams = []
        for stream in data.get("streams") or []:
            if not isinstance(stream, dict) or not isinstance(stream.get("index"), int):
                continue
            tags = stream.get("tags") or {}
            streams.append(SubtitleStream(
                index=stream["index"],
                language=tags.get("language") or "und",
                title=tags.get("title"),
            ))
        logger.debug(f"Found {len(streams)} subtitle stream(s) in {file_path}")
        return streams

    async def extract_embedded(self, file_path: str, stream_index: int) -> Optional[str]:
        """Extract one subtitle stream as SRT text into a throwaway directory."""
        work_dir = tempfile.mkdtemp(prefix="caption-extract-", dir=self.temp_dir)
        try:
            output_path = os.path.join(work_dir, "output.srt")
            return await self.transcoder.extract_subtitles(file_path, stream_index, output_path)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    async def extract_captions(self, file_path: str) -> TranscriptionResult:
        """
        Extract captions from a media file.

        Raises:
            NotFound: the file does not exist, or vanished while it was being read
            UnsupportedOperation: no embedded captions and whisper is not installed
            ParseFailure: whisper ran but no speech could be parsed
            ProcessExitFailure: whisper exited with an error
        """
        if not os.path.isfile(file_path):
            raise NotFound("File not found. It may have been deleted or expired.")
        try:
            return await self._run_chain(file_path)
        except PipelineError as e:
            if not isinstance(e, NotFound) and not os.path.exists(file_path):
                raise NotFound("File was removed during transcription. Please upload it again.") from e
            raise

    async def _run_chain(self, file_path: str) -> TranscriptionResult:
        streams = await self.probe_subtitle_streams(file_path)
        if streams:
            first = streams[0]
            srt_content = await self.extract_embedded(file_path, first.index)
            if srt_content:
                entries = parse_srt(srt_content)
                if entries:
                    logger.info(f"Extracted {len(entries)} embedded caption(s) from {file_path}")
                    return TranscriptionResult(entries=entries, method=METHOD_EMBEDDED, language=first.language)
            logger.info(f"Embedded subtitle stream {first.index} yielded no captions; falling back to speech")

        if not await self.whisper.is_available():
            raise UnsupportedOperation(
                "No embedded subtitles found in this video and no speech engine is available. "
                "Install Whisper (pip install openai-whisper) for speech-to-text transcription."
            )

        vtt_content = await self.whisper.transcribe_to_vtt(file_path)
        entries = parse_vtt(vtt_content) if vtt_content else []
        if not entries:
            raise ParseFailure("No captions could be extracted from the video. It may not contain audible speech.")

        logger.info(f"Transcribed {len(entries)} caption(s) from {file_path}")
        return TranscriptionResult(entries=entries, method=METHOD_SPEECH, language=self.whisper.language)
