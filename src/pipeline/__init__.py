"""
Media Pipeline Module

This module holds the shared plumbing of the media pipeline that:
1. Runs external tools (yt-dlp, ffmpeg, ffprobe, whisper) as child processes
2. Caches extractor metadata with a time-to-live
3. Wires the video, transcription and upload components together
"""

__version__ = "1.0.0"
