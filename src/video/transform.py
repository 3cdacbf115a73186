"""
Transform pipeline: acquire media with yt-dlp, optionally clip and/or
re-encode it with FFmpeg, and stream the result to the caller.

Each download request becomes a ``TransformJob``, an explicit state machine
that owns its child processes and temp files:

    PENDING -> ACQUIRING -> DIRECT | ACQUIRE_TO_FILE -> [CLIPPING] -> [ENCODING]
            -> STREAMING -> COMPLETED

FAILED and CANCELLED are reachable from every non-terminal state. Entering any
terminal state kills the job's processes and unlinks its temp files, exactly
once. When both a clip and H.264 encoding are requested the clip runs first and
the clipped file is encoded.
"""

import asyncio
import contextlib
import glob
import logging
import os
import re
import secrets
import threading
import time
import uuid
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional

from pipeline.errors import ProcessExitFailure, TransformCancelled, ValidationFailure
from pipeline.process_runner import DEFAULT_CHUNK_SIZE, ManagedProcess, ProcessRunner

from .ffmpeg_transcoder import FFmpegTranscoder
from .formats import (
    ClipRange,
    FormatDescriptor,
    build_format_selector,
    dedupe_by_quality,
    parse_quality_height,
    validate_clip_range,
)
from .metadata_client import InfoDocument, MediaReference, MetadataClient, extractor_env

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    PENDING = "pending"
    ACQUIRING = "acquiring"
    DIRECT = "direct"
    ACQUIRE_TO_FILE = "acquire_to_file"
    CLIPPING = "clipping"
    ENCODING = "encoding"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({JobState.COMPLETED, JobState.FAILED, JobState.CANCELLED})


class VideoEncoding(str, Enum):
    ORIGINAL = "original"
    H264 = "h264"


class CancellationToken:
    """Cancellation signal shared between a job and whoever consumes it.

    Callbacks run synchronously inside ``cancel()``, once.
    """

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def add_callback(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise TransformCancelled("Transform job was cancelled")


@dataclass
class TransformRequest:
    """A download request as received from the caller (not yet validated)."""
    reference: MediaReference
    format_id: Optional[str] = None
    quality: Optional[str] = None  # "720p" or "720"
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    encoding: VideoEncoding = VideoEncoding.ORIGINAL
    merge_audio: bool = True


@dataclass(frozen=True)
class TransformPlan:
    """Validated decisions for one job."""
    direct: bool
    selector: str
    quality_label: str
    clip: Optional[ClipRange] = None
    encoding: VideoEncoding = VideoEncoding.ORIGINAL
    audio_only: bool = False
    extension: str = "mp4"


def _safe_name(value: str, limit: int = 64) -> str:
    return re.sub(r"[^A-Za-z0-9_-]+", "-", value).strip("-")[:limit] or "media"


def _unlink_with_partials(path: str) -> None:
    """Remove ``path`` plus any yt-dlp leftovers sharing its stem (.part, .fNNN)."""
    stem = os.path.splitext(path)[0]
    for candidate in set(glob.glob(glob.escape(stem) + "*")) | {path}:
        try:
            os.remove(candidate)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove temp file {candidate}: {e}")


class TransformJob:
    """One download request, from acquisition to the last streamed byte."""

    def __init__(
        self,
        pipeline: "TransformPipeline",
        reference: MediaReference,
        plan: TransformPlan,
        token: Optional[CancellationToken] = None,
        request: Optional[TransformRequest] = None,
        info: Optional[InfoDocument] = None,
    ):
        self.id = uuid.uuid4().hex
        self.reference = reference
        self.plan = plan
        self.info = info
        self.format_id = request.format_id if request else None
        self.quality = request.quality if request else None
        self.clip = plan.clip
        self.encoding = plan.encoding
        self.state = JobState.PENDING
        self.process_handles: List[ManagedProcess] = []
        self.temp_paths: List[str] = []
        self.error: Optional[BaseException] = None

        self._pipeline = pipeline
        self._lock = threading.Lock()
        self._started = False
        self.token = token or CancellationToken()
        self.token.add_callback(self._on_cancel)

    # ------------------------------------------------------------------
    # State and resources
    # ------------------------------------------------------------------
    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def content_type(self) -> str:
        kind = "audio" if self.plan.audio_only else "video"
        return f"{kind}/{self.plan.extension}"

    def _transition(self, state: JobState) -> bool:
        with self._lock:
            if self.state in TERMINAL_STATES:
                return False
            previous, self.state = self.state, state
        logger.debug(f"Job {self.id}: {previous.value} -> {state.value}")
        if state in TERMINAL_STATES:
            self._cleanup()
            self._pipeline._forget(self)
        return True

    def _cleanup(self):
        with self._lock:
            handles = list(self.process_handles)
            paths = list(self.temp_paths)
            self.temp_paths.clear()
        for process in handles:
            process.kill()
        for path in paths:
            _unlink_with_partials(path)
        if handles or paths:
            logger.debug(f"Job {self.id}: cleaned up {len(handles)} process(es), {len(paths)} temp file(s)")

    def _track(self, process: ManagedProcess) -> None:
        with self._lock:
            terminal = self.state in TERMINAL_STATES
            if not terminal:
                self.process_handles.append(process)
        if terminal:
            # spawned while the job was being torn down
            process.kill()

    def _new_temp_path(self, stage: str) -> str:
        name = "_".join([
            _safe_name(self.reference.value),
            _safe_name(self.plan.quality_label, 16),
            str(time.time_ns()),
            secrets.token_hex(4),
            stage,
        ])
        path = os.path.join(self._pipeline.temp_dir, f"{name}.mp4")
        with self._lock:
            if self.state in TERMINAL_STATES:
                raise TransformCancelled("Transform job is no longer active")
            self.temp_paths.append(path)
        return path

    def _discard(self, path: str) -> None:
        with self._lock:
            if path in self.temp_paths:
                self.temp_paths.remove(path)
        _unlink_with_partials(path)

    def _on_cancel(self):
        if self._transition(JobState.CANCELLED):
            logger.info(f"Job {self.id} cancelled")

    def cancel(self) -> None:
        """Kill running processes and remove temp files. Safe to call repeatedly."""
        self.token.cancel()

    def download_filename(self, title: str) -> str:
        """Attachment name: <title>_<quality>[_h264][_clip_<s>s-<e>s].<ext>"""
        safe_title = re.sub(r"[^a-z0-9\s-]", "", title, flags=re.IGNORECASE)
        safe_title = re.sub(r"\s+", "_", safe_title.strip())[:100] or "video"
        name = f"{safe_title}_{self.plan.quality_label}"
        if self.encoding == VideoEncoding.H264:
            name += "_h264"
        if self.clip is not None:
            name += f"_clip_{self.clip.start_seconds:g}s-{self.clip.end_seconds:g}s"
        return f"{name}.{self.plan.extension}"

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def stream(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Run the job and yield the resulting bytes.

        Closing the generator early (or cancelling the task consuming it)
        cancels the job.
        """
        if self._started:
            raise RuntimeError(f"Job {self.id} has already been started")
        self._started = True

        try:
            self.token.raise_if_cancelled()
            self._transition(JobState.ACQUIRING)
            if self.plan.direct:
                source = self._stream_direct(chunk_size)
            else:
                path = await self._acquire_to_file()
                if self.clip is not None:
                    path = await self._clip(path)
                if self.encoding == VideoEncoding.H264:
                    path = await self._encode(path)
                source = self._stream_file(path, chunk_size)
            async with contextlib.aclosing(source) as chunks:
                async for chunk in chunks:
                    yield chunk
            self.token.raise_if_cancelled()
            self._transition(JobState.COMPLETED)
            logger.info(f"Job {self.id} completed for {self.reference.cache_key}")
        except (asyncio.CancelledError, GeneratorExit):
            self.cancel()
            raise
        except TransformCancelled:
            self.cancel()
            raise
        except Exception as e:
            if self.token.cancelled:
                # the process died because we killed it
                raise TransformCancelled("Transform job was cancelled") from e
            self.error = e
            logger.error(f"Job {self.id} failed in state {self.state.value}: {e}")
            self._transition(JobState.FAILED)
            raise
        finally:
            if not self.is_terminal:
                self.cancel()

    async def _stream_direct(self, chunk_size: int) -> AsyncIterator[bytes]:
        self._transition(JobState.DIRECT)
        args = self._pipeline.metadata_client.base_args() + [
            "-f", self.plan.selector,
            "-o", "-",
            self.reference.url,
        ]
        process = await self._pipeline.runner.spawn_streaming(
            self._pipeline.metadata_client.ytdlp_path, args, env=extractor_env()
        )
        self._track(process)
        self.token.raise_if_cancelled()

        self._transition(JobState.STREAMING)
        sent = 0
        async for chunk in process.iter_stdout(chunk_size):
            sent += len(chunk)
            yield chunk
        code = await process.wait()
        self.token.raise_if_cancelled()
        if code != 0:
            raise ProcessExitFailure("yt-dlp", code, process.stderr_tail)
        if sent == 0:
            raise ProcessExitFailure("yt-dlp", code, "no media data was produced")

    async def _acquire_to_file(self) -> str:
        self._transition(JobState.ACQUIRE_TO_FILE)
        dest = self._new_temp_path("master")
        args = self._pipeline.metadata_client.base_args() + [
            "-f", self.plan.selector,
            "-o", dest,
            "--merge-output-format", "mp4",
            self.reference.url,
        ]
        process = await self._pipeline.runner.spawn(
            self._pipeline.metadata_client.ytdlp_path, args, env=extractor_env()
        )
        self._track(process)
        result = await process.communicate()
        self.token.raise_if_cancelled()

        if result.exit_code != 0:
            logger.error(f"yt-dlp download failed for {self.reference.url}: {result.stderr.strip()[-2000:]}")
            raise ProcessExitFailure("yt-dlp", result.exit_code, result.stderr)
        if not (os.path.exists(dest) and os.path.getsize(dest) > 0):
            raise ProcessExitFailure("yt-dlp", result.exit_code, f"no file was written to {dest}")
        logger.debug(f"Job {self.id}: acquired {os.path.getsize(dest)} bytes")
        return dest

    async def _clip(self, source: str) -> str:
        self._transition(JobState.CLIPPING)
        output = self._new_temp_path("clip")
        try:
            await self._pipeline.transcoder.clip(
                source, output, self.clip.start_seconds, self.clip.end_seconds, track=self._track
            )
        finally:
            self._discard(source)
        self.token.raise_if_cancelled()
        return output

    async def _encode(self, source: str) -> str:
        self._transition(JobState.ENCODING)
        output = self._new_temp_path("h264")
        try:
            await self._pipeline.transcoder.encode_h264(source, output, track=self._track)
        finally:
            self._discard(source)
        self.token.raise_if_cancelled()
        return output

    async def _stream_file(self, path: str, chunk_size: int) -> AsyncIterator[bytes]:
        self._transition(JobState.STREAMING)
        loop = asyncio.get_running_loop()
        f = open(path, "rb")
        try:
            while True:
                self.token.raise_if_cancelled()
                chunk = await loop.run_in_executor(None, f.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            f.close()
        # delete as soon as the read ends, not when the job is collected
        self._discard(path)


class TransformPipeline:
    """Creates transform jobs and keeps track of the ones still running."""

    def __init__(
        self,
        runner: ProcessRunner,
        metadata_client: MetadataClient,
        transcoder: FFmpegTranscoder,
        temp_dir: str,
    ):
        self.runner = runner
        self.metadata_client = metadata_client
        self.transcoder = transcoder
        self.temp_dir = temp_dir
        self._jobs: Dict[str, TransformJob] = {}
        os.makedirs(self.temp_dir, exist_ok=True)

    @property
    def active_jobs(self) -> List[TransformJob]:
        return list(self._jobs.values())

    def _forget(self, job: TransformJob) -> None:
        self._jobs.pop(job.id, None)

    async def create_job(
        self,
        request: TransformRequest,
        token: Optional[CancellationToken] = None,
    ) -> TransformJob:
        """Validate ``request`` and return a job ready to be streamed.

        Raises:
            ValidationFailure: the request cannot be planned (unknown encoding,
                unresolvable format, bad clip range). Nothing has been spawned yet.
        """
        try:
            encoding = VideoEncoding(request.encoding)
        except ValueError as e:
            raise ValidationFailure(f"Unsupported encoding: {request.encoding}") from e
        request = dataclasses.replace(request, encoding=encoding)
        if not request.format_id and not request.quality:
            raise ValidationFailure("Missing format id or quality")
        if request.quality and parse_quality_height(request.quality) is None:
            raise ValidationFailure(f"Unrecognized quality: {request.quality}")
        wants_clip = request.start_time is not None or request.end_time is not None
        if wants_clip:
            # duration-independent checks before touching the extractor
            validate_clip_range(request.start_time, request.end_time)

        info = await self.metadata_client.fetch_info(request.reference)
        clip = validate_clip_range(request.start_time, request.end_time, info.duration) if wants_clip else None
        plan = self.plan(request, info, clip)

        job = TransformJob(self, request.reference, plan, token=token, request=request, info=info)
        if not job.is_terminal:
            self._jobs[job.id] = job
        logger.info(
            f"Created job {job.id} for {request.reference.cache_key}: "
            f"{'direct' if plan.direct else 'file'} selector={plan.selector} "
            f"clip={clip} encoding={plan.encoding.value}"
        )
        return job

    def plan(self, request: TransformRequest, info: InfoDocument, clip: Optional[ClipRange]) -> TransformPlan:
        """Decide between direct streaming and acquire-to-file."""
        encoding = VideoEncoding(request.encoding)
        transform = clip is not None or encoding == VideoEncoding.H264

        if request.quality:
            height = parse_quality_height(request.quality)
            label = f"{height}p"
            muxed = next(
                (f for f in dedupe_by_quality(info.formats) if f.quality_label == label and f.is_muxed),
                None,
            )
            if muxed is not None and not transform:
                return TransformPlan(direct=True, selector=muxed.format_id, quality_label=label,
                                     extension=muxed.container)
            return TransformPlan(direct=False, selector=build_format_selector(height),
                                 quality_label=label, clip=clip, encoding=encoding)

        fmt = self._find_format(info, request.format_id)
        if encoding == VideoEncoding.H264 and not fmt.has_video:
            raise ValidationFailure("H.264 encoding requires a video format")

        needs_mux = fmt.has_video and not fmt.has_audio and request.merge_audio
        if not transform and not needs_mux:
            return TransformPlan(direct=True, selector=fmt.format_id, quality_label=fmt.quality_label,
                                 audio_only=fmt.is_audio_only, extension=fmt.container)

        if needs_mux:
            selector = f"{fmt.format_id}+bestaudio"
            if fmt.height:
                selector += "/" + build_format_selector(fmt.height)
        else:
            selector = fmt.format_id
        return TransformPlan(direct=False, selector=selector, quality_label=fmt.quality_label,
                             clip=clip, encoding=encoding, audio_only=fmt.is_audio_only)

    @staticmethod
    def _find_format(info: InfoDocument, format_id: str) -> FormatDescriptor:
        for fmt in info.formats:
            if fmt.format_id == format_id:
                return fmt
        raise ValidationFailure(f"Format {format_id} is not available for {info.id}")

    def cancel_all(self) -> int:
        """Cancel every running job; used at shutdown."""
        jobs = self.active_jobs
        for job in jobs:
            job.cancel()
        return len(jobs)
