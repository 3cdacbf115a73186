"""FastAPI server exposing the media pipeline over HTTP.

Run with:
uvicorn server.app:app --host 0.0.0.0 --port 8000

GET  /api/video/info?platform=youtube&value=<id or url>
GET  /api/video/download?platform=youtube&value=<id>&quality=720&encode=h264&startTime=10&endTime=70
GET  /api/caption/list?platform=youtube&value=<id>
GET  /api/caption/preview?value=<id>&lang=en&auto=false
GET  /api/caption/download?value=<id>&lang=en&format=srt
POST /api/caption/upload                      (multipart form, field "file")
POST /api/caption/upload/transcribe           {"fileId": "<32 hex chars>"}
GET  /api/caption/upload/download?fileId=<id>&format=srt
DELETE /api/caption/upload/<fileId>
GET  /api/stats
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, File, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from pipeline.config import PipelineConfig
from pipeline.errors import (
    NotFound,
    ParseFailure,
    PipelineError,
    ProcessExitFailure,
    SpawnFailure,
    UnsupportedOperation,
    ValidationFailure,
)
from pipeline.main import MediaServices
from transcription.caption_parser import CAPTION_FORMATS, CAPTION_MIME_TYPES, format_captions
from video.metadata_client import MediaReference
from video.transform import TransformRequest, VideoEncoding

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

UPLOAD_CHUNK_SIZE = 1 << 20
UNAVAILABLE_PATTERNS = ("Video unavailable", "Private video", "This video is private", "HTTP Error 404")
RESTRICTED_PATTERNS = ("age-restricted", "confirm your age", "login required", "not available in your country")

_started_at = time.monotonic()


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: Optional[MediaServices] = getattr(app.state, "services", None)
    if services is None:
        services = MediaServices(PipelineConfig.from_env())
        app.state.services = services
    await services.start()
    try:
        yield
    finally:
        await services.stop()


app = FastAPI(title="Media Pipeline API", lifespan=lifespan)


def get_services(request: Request) -> MediaServices:
    return request.app.state.services


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------
class FormatModel(BaseModel):
    formatId: str
    qualityLabel: str
    container: str
    hasVideo: bool
    hasAudio: bool
    bitrate: Optional[float] = None
    audioBitrate: Optional[float] = None
    mimeType: Optional[str] = None
    protocol: Optional[str] = None


class VideoInfoResponse(BaseModel):
    info: Dict[str, Any]
    formats: List[FormatModel]


class UploadResponse(BaseModel):
    fileId: str
    originalName: str
    size: int
    message: str = "File uploaded successfully. Use the fileId to trigger transcription."


class TranscribeRequest(BaseModel):
    fileId: Optional[str] = Field(None, description="Id returned by /api/caption/upload")

    @field_validator("fileId")
    def _strip(cls, v):  # noqa: D401
        if isinstance(v, str):
            return v.strip()
        return v


class CaptionEntryModel(BaseModel):
    start: float
    duration: float
    text: str


class TranscribeResponse(BaseModel):
    entries: List[CaptionEntryModel]
    method: str
    language: Optional[str] = None
    entryCount: int


class CaptionTrackModel(BaseModel):
    languageCode: str
    name: str
    isAutoGenerated: bool
    formats: List[str]


class CaptionListResponse(BaseModel):
    videoId: str
    tracks: List[CaptionTrackModel]


class CaptionPreviewResponse(BaseModel):
    videoId: str
    language: str
    entries: List[CaptionEntryModel]
    entryCount: int


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------
def status_for(exc: PipelineError) -> int:
    if isinstance(exc, ValidationFailure):
        return 400
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ProcessExitFailure):
        if exc.matches(UNAVAILABLE_PATTERNS):
            return 404
        if exc.matches(RESTRICTED_PATTERNS):
            return 403
        return 502
    if isinstance(exc, UnsupportedOperation):
        return 501
    if isinstance(exc, SpawnFailure):
        return 503
    if isinstance(exc, ParseFailure):
        return 502
    return 500


def error_message(exc: PipelineError, status_code: int) -> str:
    if isinstance(exc, ProcessExitFailure):
        if status_code == 404:
            return "This video is unavailable or private"
        if status_code == 403:
            return "This video is age-restricted, private, or region-locked and cannot be downloaded"
    return str(exc)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status_code,
        content={"error": error_message(exc, status_code), "kind": exc.kind},
    )


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/api/video/info", response_model=VideoInfoResponse)
async def video_info(request: Request, platform: str = "youtube", value: str = Query(..., min_length=1)):
    services = get_services(request)
    reference = MediaReference(platform=platform, value=value.strip())
    info = await services.metadata_client.fetch_info(reference)
    formats = await services.metadata_client.list_formats(reference)
    return VideoInfoResponse(info=info.to_dict(), formats=[FormatModel(**f.to_dict()) for f in formats])


@app.get("/api/video/download")
async def video_download(
    request: Request,
    value: str = Query(..., min_length=1),
    platform: str = "youtube",
    formatId: Optional[str] = None,
    quality: Optional[str] = None,
    mergeAudio: bool = True,
    encode: Optional[str] = None,
    startTime: Optional[float] = None,
    endTime: Optional[float] = None,
):
    services = get_services(request)
    encoding = VideoEncoding(encode) if encode in {e.value for e in VideoEncoding} else VideoEncoding.ORIGINAL
    reference = MediaReference(platform=platform, value=value.strip())
    transform_request = TransformRequest(
        reference=reference,
        format_id=formatId,
        quality=quality,
        start_time=startTime,
        end_time=endTime,
        encoding=encoding,
        merge_audio=mergeAudio,
    )

    job = await services.transform_pipeline.create_job(transform_request)
    stream = job.stream()

    # pull the first chunk so acquisition failures become a proper status code
    try:
        first_chunk = await stream.__anext__()
    except StopAsyncIteration:
        first_chunk = b""

    async def body() -> AsyncIterator[bytes]:
        try:
            if first_chunk:
                yield first_chunk
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()
            job.cancel()

    headers = {
        "Content-Disposition": f'attachment; filename="{job.download_filename(job.info.title)}"',
        "Cache-Control": "no-cache",
    }
    return StreamingResponse(body(), media_type=job.content_type, headers=headers)


@app.get("/api/caption/list", response_model=CaptionListResponse)
async def caption_list(request: Request, value: str = Query(..., min_length=1), platform: str = "youtube"):
    services = get_services(request)
    reference = MediaReference(platform=platform, value=value.strip())
    info = await services.metadata_client.fetch_info(reference)
    tracks = await services.caption_tracks.list_tracks(reference)
    return CaptionListResponse(videoId=info.id, tracks=[CaptionTrackModel(**t.to_dict()) for t in tracks])


@app.get("/api/caption/preview", response_model=CaptionPreviewResponse)
async def caption_preview(
    request: Request,
    value: str = Query(..., min_length=1),
    lang: str = Query(..., min_length=1),
    platform: str = "youtube",
    auto: Optional[bool] = None,
):
    services = get_services(request)
    reference = MediaReference(platform=platform, value=value.strip())
    entries = await services.caption_tracks.fetch_track(reference, lang, automatic=auto)
    info = await services.metadata_client.fetch_info(reference)
    return CaptionPreviewResponse(
        videoId=info.id,
        language=lang,
        entries=[CaptionEntryModel(**e.to_dict()) for e in entries],
        entryCount=len(entries),
    )


@app.get("/api/caption/download")
async def caption_track_download(
    request: Request,
    value: str = Query(..., min_length=1),
    lang: str = Query(..., min_length=1),
    format: str = Query("srt"),
    platform: str = "youtube",
    auto: Optional[bool] = None,
):
    services = get_services(request)
    if format not in CAPTION_FORMATS:
        raise ValidationFailure(f"Invalid format. Supported formats: {', '.join(CAPTION_FORMATS)}")
    reference = MediaReference(platform=platform, value=value.strip())
    entries = await services.caption_tracks.fetch_track(reference, lang, automatic=auto)
    info = await services.metadata_client.fetch_info(reference)
    filename = f"{info.id}_{lang}.{format}"
    return Response(
        content=format_captions(entries, format),
        media_type=f"{CAPTION_MIME_TYPES[format]}; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.post("/api/caption/upload", response_model=UploadResponse)
async def caption_upload(request: Request, file: UploadFile = File(...)):
    services = get_services(request)
    filename = file.filename or ""
    services.uploads.validate_upload(filename, file.content_type, file.size)

    async def chunks() -> AsyncIterator[bytes]:
        while True:
            chunk = await file.read(UPLOAD_CHUNK_SIZE)
            if not chunk:
                break
            yield chunk

    try:
        uploaded = await services.uploads.save_chunks(chunks(), filename)
    finally:
        await file.close()
    return UploadResponse(fileId=uploaded.file_id, originalName=filename, size=uploaded.size)


@app.post("/api/caption/upload/transcribe", response_model=TranscribeResponse)
async def caption_transcribe(request: Request, payload: TranscribeRequest):
    services = get_services(request)
    if not payload.fileId:
        raise ValidationFailure("Missing fileId. Upload a video first.")
    path = services.uploads.resolve(payload.fileId)
    result = await services.caption_extractor.extract_captions(str(path))
    return TranscribeResponse(**result.to_dict())


@app.get("/api/caption/upload/download")
async def caption_download(request: Request, fileId: str = Query(...), format: str = Query("srt")):
    services = get_services(request)
    if format not in CAPTION_FORMATS:
        raise ValidationFailure(f"Invalid format. Supported formats: {', '.join(CAPTION_FORMATS)}")
    path = services.uploads.resolve(fileId)
    result = await services.caption_extractor.extract_captions(str(path))
    content = format_captions(result.entries, format)
    filename = f"captions_{result.language or 'und'}.{format}"
    return Response(
        content=content,
        media_type=f"{CAPTION_MIME_TYPES[format]}; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@app.delete("/api/caption/upload/{file_id}")
async def caption_delete(request: Request, file_id: str):
    services = get_services(request)
    return {"fileId": file_id, "deleted": services.uploads.delete(file_id)}


@app.get("/api/stats")
async def stats(request: Request):
    services = get_services(request)
    return {**services.stats(), "uptime": round(time.monotonic() - _started_at, 1)}
