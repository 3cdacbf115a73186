"""
Caption tracks published alongside a platform video.

yt-dlp writes one track as WebVTT into a throwaway directory; the cues are
parsed with the same VTT parser the speech fallback uses.
"""

import glob
import logging
import os
import shutil
import tempfile
from typing import List, Optional, Sequence

from pipeline.errors import NotFound, ParseFailure, ProcessExitFailure
from pipeline.process_runner import ProcessRunner
from video.metadata_client import CaptionTrack, MediaReference, MetadataClient, extractor_env

from .caption_parser import CaptionEntry, parse_vtt

logger = logging.getLogger(__name__)


def find_track(tracks: Sequence[CaptionTrack], language: str,
               automatic: Optional[bool] = None) -> Optional[CaptionTrack]:
    """Pick the track for ``language``; uploader tracks win unless ``automatic`` says otherwise."""
    candidates = [t for t in tracks if t.language == language]
    if automatic is not None:
        candidates = [t for t in candidates if t.automatic == automatic]
    candidates.sort(key=lambda t: t.automatic)
    return candidates[0] if candidates else None


class CaptionTrackFetcher:
    """Lists and downloads caption tracks through yt-dlp."""

    def __init__(self, runner: ProcessRunner, metadata_client: MetadataClient, temp_dir: Optional[str] = None):
        self.runner = runner
        self.metadata_client = metadata_client
        self.temp_dir = temp_dir

    async def list_tracks(self, reference: MediaReference) -> List[CaptionTrack]:
        return await self.metadata_client.list_caption_tracks(reference)

    async def fetch_track(
        self,
        reference: MediaReference,
        language: str,
        automatic: Optional[bool] = None,
    ) -> List[CaptionEntry]:
        """
        Download one caption track and parse it.

        The language is checked against the cached info document before
        yt-dlp is asked for the track.

        Raises:
            NotFound: the video has no track for ``language``
            ProcessExitFailure: yt-dlp exited with an error
            ParseFailure: no VTT file was written, or it held no cues
        """
        tracks = await self.list_tracks(reference)
        track = find_track(tracks, language, automatic)
        if track is None:
            raise NotFound(f"No '{language}' captions are available for this video")

        work_dir = tempfile.mkdtemp(prefix="caption-track-", dir=self.temp_dir)
        try:
            args = self.metadata_client.base_args() + [
                "--skip-download",
                "--write-auto-subs" if track.automatic else "--write-subs",
                "--sub-langs", track.language,
                "--sub-format", "vtt",
                "-o", os.path.join(work_dir, "captions.%(ext)s"),
                reference.url,
            ]
            result = await self.runner.run(self.metadata_client.ytdlp_path, args, env=extractor_env())
            if result.exit_code != 0:
                logger.error(f"yt-dlp caption download failed for {reference.url}: {result.stderr.strip()}")
                raise ProcessExitFailure("yt-dlp", result.exit_code, result.stderr)

            vtt_files = sorted(glob.glob(os.path.join(glob.escape(work_dir), "*.vtt")))
            if not vtt_files:
                raise ParseFailure(f"yt-dlp wrote no '{track.language}' caption file")
            with open(vtt_files[0], "r", encoding="utf-8", errors="replace") as f:
                entries = parse_vtt(f.read())
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        if not entries:
            raise ParseFailure(f"The '{track.language}' caption track contains no cues")
        logger.info(f"Fetched {len(entries)} '{track.language}' caption(s) for {reference.cache_key}")
        return entries
