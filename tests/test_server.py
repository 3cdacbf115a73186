from __future__ import annotations

import os

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

from fakes import calls, fake_ffmpeg, fake_ffprobe, fake_whisper, fake_ytdlp
from pipeline.config import PipelineConfig
from pipeline.main import MediaServices
from server import app as app_module

WHISPER_VTT = "WEBVTT\n\n00:00.000 --> 00:01.500\nHello from speech\n"
TRACK_VTT = "WEBVTT\n\n00:00:01.000 --> 00:00:02.500\nTrack caption\n"


@pytest.fixture
def bin_dir(tmp_path):
    path = tmp_path / "bin"
    path.mkdir()
    fake_ffprobe(path, streams=[])
    fake_ffmpeg(path)
    fake_whisper(path, vtt=WHISPER_VTT)
    return path


def _client(tmp_path, bin_dir, ytdlp: str) -> TestClient:
    config = PipelineConfig(
        upload_dir=str(tmp_path / "uploads"),
        temp_dir=str(tmp_path / "work"),
        ytdlp_path=ytdlp,
        ffmpeg_path=str(bin_dir / "ffmpeg"),
        ffprobe_path=str(bin_dir / "ffprobe"),
        whisper_path=str(bin_dir / "whisper"),
    )
    app_module.app.state.services = MediaServices(config)
    return TestClient(app_module.app)


@pytest.fixture(autouse=True)
def _reset_services():
    yield
    if hasattr(app_module.app.state, "services"):
        del app_module.app.state.services


def test_video_info_returns_deduplicated_formats(tmp_path, bin_dir) -> None:
    with _client(tmp_path, bin_dir, fake_ytdlp(bin_dir)) as client:
        response = client.get("/api/video/info", params={"value": "abc123"})

    assert response.status_code == 200
    body = response.json()
    assert body["info"]["id"] == "abc123"
    assert body["info"]["title"] == "Sample Video: Part 1"
    assert [f["qualityLabel"] for f in body["formats"]] == ["720p", "360p", "130kbps"]


@pytest.mark.parametrize(
    "stderr, status",
    [
        ("ERROR: [youtube] abc123: Video unavailable\n", 404),
        ("ERROR: [youtube] abc123: Sign in to confirm your age\n", 403),
        ("ERROR: unable to download webpage\n", 502),
    ],
)
def test_extractor_failures_map_to_status_codes(tmp_path, bin_dir, stderr, status) -> None:
    ytdlp = fake_ytdlp(bin_dir, exit_code=1, stderr=stderr)
    with _client(tmp_path, bin_dir, ytdlp) as client:
        response = client.get("/api/video/info", params={"value": "abc123"})

    assert response.status_code == status
    assert response.json()["kind"] == "process_exit_failure"


def test_missing_extractor_is_service_unavailable(tmp_path, bin_dir) -> None:
    with _client(tmp_path, bin_dir, str(bin_dir / "missing-yt-dlp")) as client:
        response = client.get("/api/video/info", params={"value": "abc123"})

    assert response.status_code == 503
    assert response.json()["kind"] == "spawn_failure"


def test_download_streams_with_attachment_name(tmp_path, bin_dir) -> None:
    with _client(tmp_path, bin_dir, fake_ytdlp(bin_dir, payload=b"VIDEO-DATA")) as client:
        response = client.get("/api/video/download", params={"value": "abc123", "quality": "360p"})

    assert response.status_code == 200
    assert response.content == b"VIDEO-DATA"
    assert response.headers["content-type"].startswith("video/mp4")
    assert response.headers["content-disposition"] == 'attachment; filename="Sample_Video_Part_1_360p.mp4"'


def test_download_with_clip_and_encoding(tmp_path, bin_dir) -> None:
    params = {"value": "abc123", "quality": "720p", "startTime": 5, "endTime": 15, "encode": "h264"}
    with _client(tmp_path, bin_dir, fake_ytdlp(bin_dir, payload=b"RAW")) as client:
        response = client.get("/api/video/download", params=params)

    assert response.status_code == 200
    assert response.content == b"RAW[clip][h264]"
    assert "_h264_clip_5s-15s.mp4" in response.headers["content-disposition"]
    assert os.listdir(tmp_path / "work") == []


def test_download_with_invalid_clip_is_bad_request(tmp_path, bin_dir) -> None:
    params = {"value": "abc123", "quality": "720p", "startTime": 30, "endTime": 10}
    with _client(tmp_path, bin_dir, fake_ytdlp(bin_dir)) as client:
        response = client.get("/api/video/download", params=params)

    assert response.status_code == 400
    assert response.json()["error"] == "End time must be after start time"


def test_download_with_nan_clip_is_bad_request_without_spawning(tmp_path, bin_dir) -> None:
    ytdlp = fake_ytdlp(bin_dir)
    params = {"value": "abc123", "quality": "720p", "startTime": "nan", "endTime": "nan"}
    with _client(tmp_path, bin_dir, ytdlp) as client:
        response = client.get("/api/video/download", params=params)

    assert response.status_code == 400
    assert "finite" in response.json()["error"]
    assert calls(ytdlp) == []


def test_download_with_only_one_clip_bound_is_bad_request(tmp_path, bin_dir) -> None:
    ytdlp = fake_ytdlp(bin_dir)
    with _client(tmp_path, bin_dir, ytdlp) as client:
        response = client.get("/api/video/download", params={"value": "abc123", "quality": "720p", "startTime": 5})

    assert response.status_code == 400
    assert response.json()["error"] == "Clip range needs both a start and an end time"
    assert calls(ytdlp) == []


def test_download_does_not_leak_a_job_when_metadata_lookup_would_fail(tmp_path, bin_dir, monkeypatch) -> None:
    with _client(tmp_path, bin_dir, fake_ytdlp(bin_dir, payload=b"VIDEO-DATA")) as client:
        services = app_module.app.state.services
        create_job = services.transform_pipeline.create_job

        async def create_then_break_metadata(request):
            job = await create_job(request)

            async def failing_fetch(reference):
                raise AssertionError("metadata fetched twice")

            monkeypatch.setattr(services.metadata_client, "fetch_info", failing_fetch)
            return job

        monkeypatch.setattr(services.transform_pipeline, "create_job", create_then_break_metadata)
        response = client.get("/api/video/download", params={"value": "abc123", "quality": "360p"})

        assert response.status_code == 200
        assert response.content == b"VIDEO-DATA"
        assert "Sample_Video_Part_1_360p.mp4" in response.headers["content-disposition"]
        assert services.transform_pipeline.active_jobs == []


def test_upload_transcribe_download_and_delete(tmp_path, bin_dir) -> None:
    with _client(tmp_path, bin_dir, fake_ytdlp(bin_dir)) as client:
        uploaded = client.post(
            "/api/caption/upload", files={"file": ("talk.mp4", b"fake video", "video/mp4")},
        )
        assert uploaded.status_code == 200
        file_id = uploaded.json()["fileId"]
        assert len(file_id) == 32

        transcribed = client.post("/api/caption/upload/transcribe", json={"fileId": file_id})
        assert transcribed.status_code == 200
        assert transcribed.json()["method"] == "speech"
        assert transcribed.json()["entries"] == [{"start": 0.0, "duration": 1.5, "text": "Hello from speech"}]

        srt = client.get("/api/caption/upload/download", params={"fileId": file_id, "format": "srt"})
        assert srt.status_code == 200
        assert "00:00:00,000 --> 00:00:01,500" in srt.text
        assert srt.headers["content-disposition"] == 'attachment; filename="captions_en.srt"'

        deleted = client.delete(f"/api/caption/upload/{file_id}")
        assert deleted.json()["deleted"] is True

        gone = client.post("/api/caption/upload/transcribe", json={"fileId": file_id})
        assert gone.status_code == 404


def test_upload_rejects_non_video(tmp_path, bin_dir) -> None:
    with _client(tmp_path, bin_dir, fake_ytdlp(bin_dir)) as client:
        response = client.post(
            "/api/caption/upload", files={"file": ("notes.txt", b"hello", "text/plain")},
        )

    assert response.status_code == 400
    assert not os.listdir(tmp_path / "uploads")


def test_transcribe_validation(tmp_path, bin_dir) -> None:
    with _client(tmp_path, bin_dir, fake_ytdlp(bin_dir)) as client:
        missing = client.post("/api/caption/upload/transcribe", json={})
        traversal = client.post("/api/caption/upload/transcribe", json={"fileId": "../../etc/passwd"})
        bad_format = client.get(
            "/api/caption/upload/download", params={"fileId": "0" * 32, "format": "docx"},
        )

    assert missing.status_code == 400
    assert traversal.status_code == 404
    assert bad_format.status_code == 400


def test_caption_track_list_preview_and_download(tmp_path, bin_dir) -> None:
    ytdlp = fake_ytdlp(bin_dir, subtitles_vtt=TRACK_VTT)
    with _client(tmp_path, bin_dir, ytdlp) as client:
        listed = client.get("/api/caption/list", params={"value": "abc123"})
        preview = client.get("/api/caption/preview", params={"value": "abc123", "lang": "en"})
        download = client.get("/api/caption/download", params={"value": "abc123", "lang": "de", "format": "vtt"})
        missing = client.get("/api/caption/preview", params={"value": "abc123", "lang": "ja"})
        bad_format = client.get("/api/caption/download", params={"value": "abc123", "lang": "en", "format": "doc"})

    assert listed.status_code == 200
    assert listed.json()["videoId"] == "abc123"
    assert [(t["languageCode"], t["isAutoGenerated"]) for t in listed.json()["tracks"]] == [
        ("en", False), ("en", True), ("de", True),
    ]

    assert preview.status_code == 200
    assert preview.json()["entryCount"] == 1
    assert preview.json()["entries"][0] == {"start": 1.0, "duration": 1.5, "text": "Track caption"}

    assert download.status_code == 200
    assert download.headers["content-disposition"] == 'attachment; filename="abc123_de.vtt"'
    assert download.text.startswith("WEBVTT")
    assert "Track caption" in download.text

    assert missing.status_code == 404
    assert bad_format.status_code == 400
    # one metadata lookup, then one subtitle download per fetched track
    assert [("-j" in args) for args in calls(ytdlp)] == [True, False, False]
    assert os.listdir(tmp_path / "work") == []


def test_stats_reports_services(tmp_path, bin_dir) -> None:
    with _client(tmp_path, bin_dir, fake_ytdlp(bin_dir)) as client:
        client.get("/api/video/info", params={"value": "abc123"})
        response = client.get("/api/stats")

    assert response.status_code == 200
    body = response.json()
    assert body["cache"]["size"] == 1
    assert body["activeJobs"] == 0
    assert body["whisper"]["model"] == "base"
