"""
Upload storage management.

Saves uploaded video files under a single upload directory with a random
file id, resolves ids back to paths, and deletes files older than the
retention window on a background timer.
"""

import asyncio
import logging
import os
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Callable, Optional

from pipeline.errors import NotFound, ValidationFailure

logger = logging.getLogger(__name__)

FILE_ID_PATTERN = re.compile(r"^[a-f0-9]{32}$")
DEFAULT_EXTENSION = ".mp4"

ACCEPTED_VIDEO_TYPES = frozenset({
    "video/mp4",
    "video/webm",
    "video/quicktime",
    "video/x-msvideo",
    "video/x-matroska",
    "video/ogg",
    "video/3gpp",
    "video/x-flv",
    "video/mpeg",
    "video/mp2t",
})

ACCEPTED_VIDEO_EXTENSIONS = frozenset({
    ".mp4", ".webm", ".mov", ".avi", ".mkv", ".ogv",
    ".3gp", ".flv", ".mpeg", ".mpg", ".ts", ".m4v",
})


@dataclass(frozen=True)
class UploadedFile:
    file_id: str
    stored_path: Path
    created_at: float
    original_name: str = ""
    size: int = 0


def get_extension(filename: str) -> str:
    return Path(filename or "").suffix.lower()


def is_valid_file_id(file_id: Optional[str]) -> bool:
    return bool(file_id) and FILE_ID_PATTERN.match(file_id) is not None


class UploadManager:
    """Owns the upload directory and the reaper that keeps it bounded."""

    def __init__(
        self,
        upload_dir: str,
        retention_seconds: float = 60 * 60,
        reap_interval_seconds: float = 10 * 60,
        max_upload_size: int = 500 * 1024 * 1024,
        clock: Callable[[], float] = time.time,
    ):
        self.upload_dir = Path(upload_dir)
        self.retention_seconds = retention_seconds
        self.reap_interval_seconds = reap_interval_seconds
        self.max_upload_size = max_upload_size
        self._clock = clock
        self._reaper_task: Optional[asyncio.Task] = None
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    @staticmethod
    def is_accepted(filename: str, mime_type: Optional[str] = None) -> bool:
        """Accept a known video extension, or a known video MIME type."""
        valid_ext = get_extension(filename) in ACCEPTED_VIDEO_EXTENSIONS
        if mime_type:
            return valid_ext or mime_type in ACCEPTED_VIDEO_TYPES
        return valid_ext

    def validate_upload(self, filename: str, mime_type: Optional[str] = None, size: Optional[int] = None) -> None:
        if not filename:
            raise ValidationFailure("No file provided. Please upload a video file.")
        if not self.is_accepted(filename, mime_type):
            raise ValidationFailure(
                "Unsupported file type. Please upload a video file (MP4, WebM, MOV, AVI, MKV, etc.)."
            )
        if size is not None and size > self.max_upload_size:
            raise ValidationFailure(f"File is too large. Maximum size is {self.max_upload_size // (1024 * 1024)} MB.")

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    def _new_path(self, original_name: str):
        file_id = secrets.token_hex(16)
        extension = get_extension(original_name) or DEFAULT_EXTENSION
        return file_id, self.upload_dir / f"{file_id}{extension}"

    def save(self, data: bytes, original_name: str) -> UploadedFile:
        """Write ``data`` under a fresh file id, keeping the original extension."""
        file_id, path = self._new_path(original_name)
        path.write_bytes(data)
        logger.info(f"Stored upload {file_id} ({len(data)} bytes) from {original_name!r}")
        return UploadedFile(file_id=file_id, stored_path=path, created_at=self._clock(),
                            original_name=original_name, size=len(data))

    async def save_chunks(self, chunks: AsyncIterator[bytes], original_name: str) -> UploadedFile:
        """Stream an upload to disk, enforcing the size limit as it arrives.

        The partial file is removed if the limit is exceeded or the stream fails.
        """
        file_id, path = self._new_path(original_name)
        size = 0
        try:
            with open(path, "wb") as f:
                async for chunk in chunks:
                    size += len(chunk)
                    if size > self.max_upload_size:
                        raise ValidationFailure(
                            f"File is too large. Maximum size is {self.max_upload_size // (1024 * 1024)} MB."
                        )
                    f.write(chunk)
        except BaseException:
            path.unlink(missing_ok=True)
            raise
        logger.info(f"Stored upload {file_id} ({size} bytes) from {original_name!r}")
        return UploadedFile(file_id=file_id, stored_path=path, created_at=self._clock(),
                            original_name=original_name, size=size)

    def resolve(self, file_id: str) -> Path:
        """Return the stored path for ``file_id``.

        Ids that are not 32 lowercase hex characters are rejected before any
        filesystem access.

        Raises:
            NotFound: malformed, unknown or already reaped id
        """
        if not is_valid_file_id(file_id):
            raise NotFound("File not found. It may have been deleted or expired.")
        try:
            with os.scandir(self.upload_dir) as entries:
                for entry in entries:
                    if entry.name.startswith(file_id) and entry.is_file():
                        return Path(entry.path)
        except FileNotFoundError:
            pass
        raise NotFound("File not found. It may have been deleted or expired.")

    def get(self, file_id: str) -> UploadedFile:
        path = self.resolve(file_id)
        try:
            stat = path.stat()
        except FileNotFoundError as e:
            raise NotFound("File not found. It may have been deleted or expired.") from e
        return UploadedFile(file_id=file_id, stored_path=path, created_at=stat.st_mtime, size=stat.st_size)

    def delete(self, file_id: str) -> bool:
        """Delete an upload. Returns False if it was already gone."""
        try:
            path = self.resolve(file_id)
        except NotFound:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info(f"Deleted upload {file_id}")
        return True

    # ------------------------------------------------------------------
    # Reaper
    # ------------------------------------------------------------------
    def reap(self) -> int:
        """Delete every file older than the retention window."""
        if not self.upload_dir.exists():
            return 0
        now = self._clock()
        deleted = 0
        for path in self.upload_dir.iterdir():
            try:
                if not path.is_file():
                    continue
                if now - path.stat().st_mtime > self.retention_seconds:
                    path.unlink()
                    deleted += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to reap {path}: {e}")
        if deleted:
            logger.info(f"Deleted {deleted} expired upload(s)")
        return deleted

    async def _reap_loop(self):
        while True:
            await asyncio.sleep(self.reap_interval_seconds)
            try:
                self.reap()
            except Exception:
                logger.exception("Upload reaper failed")

    def start(self) -> None:
        """Run one sweep now, then keep sweeping on the running event loop."""
        self.reap()
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.get_running_loop().create_task(self._reap_loop())

    async def stop(self) -> None:
        task, self._reaper_task = self._reaper_task, None
        if task is not None:
            task.cancel()
            await asyncio.wait({task})
