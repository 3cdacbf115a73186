"""
Whisper CLI client for speech-to-text transcription.
"""

import logging
import os
import shutil
import tempfile
from typing import Any, Dict, Optional

from pipeline.errors import ProcessExitFailure, SpawnFailure
from pipeline.process_runner import ProcessRunner, find_binary

logger = logging.getLogger(__name__)


class WhisperClient:
    """Client for the ``whisper`` command-line transcriber."""

    def __init__(
        self,
        runner: ProcessRunner,
        whisper_path: Optional[str] = None,
        model_size: str = "base",
        language: str = "en",
        temp_dir: Optional[str] = None,
    ):
        """
        Initialize the whisper client.

        Args:
            runner: Process runner used to invoke the CLI
            whisper_path: Path to the whisper executable (resolved if None)
            model_size: Whisper model size (tiny, base, small, medium, large)
            language: Language reported for speech transcripts
            temp_dir: Parent directory for per-run output directories
        """
        self.runner = runner
        self.whisper_path = whisper_path or find_binary("whisper")
        self.model_size = model_size
        self.language = language
        self.temp_dir = temp_dir

    async def is_available(self) -> bool:
        """Check whether the whisper CLI can be invoked."""
        try:
            result = await self.runner.run(self.whisper_path, ["--help"])
        except SpawnFailure:
            return False
        return result.exit_code == 0

    async def transcribe_to_vtt(self, media_path: str) -> Optional[str]:
        """
        Transcribe a media file and return the WebVTT output.

        The CLI writes into an isolated temp directory that is removed
        afterwards regardless of the outcome.

        Returns:
            VTT content, or None if whisper produced no .vtt file

        Raises:
            SpawnFailure: whisper could not be started
            ProcessExitFailure: whisper exited with a non-zero code
        """
        output_dir = tempfile.mkdtemp(prefix="whisper-", dir=self.temp_dir)
        try:
            args = [
                media_path,
                "--model", self.model_size,
                "--output_format", "vtt",
                "--output_dir", output_dir,
                "--verbose", "False",
            ]
            logger.info(f"Transcribing {media_path} with whisper model {self.model_size}")
            result = await self.runner.run(self.whisper_path, args)
            if result.exit_code != 0:
                logger.error(f"Whisper failed: {result.stderr.strip()}")
                raise ProcessExitFailure("whisper", result.exit_code, result.stderr)

            # whisper names the output after the input file
            vtt_files = sorted(name for name in os.listdir(output_dir) if name.endswith(".vtt"))
            if not vtt_files:
                logger.warning(f"Whisper produced no VTT output for {media_path}")
                return None
            with open(os.path.join(output_dir, vtt_files[0]), "r", encoding="utf-8") as f:
                return f.read()
        finally:
            shutil.rmtree(output_dir, ignore_errors=True)

    def get_model_info(self) -> Dict[str, Any]:
        return {
            "binary": self.whisper_path,
            "model": self.model_size,
            "language": self.language,
        }
