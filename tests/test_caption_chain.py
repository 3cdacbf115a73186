import os
import tempfile
import unittest

from fakes import calls, fake_ffmpeg, fake_ffprobe, fake_whisper
from pipeline.errors import NotFound, ParseFailure, ProcessExitFailure, UnsupportedOperation
from pipeline.process_runner import ProcessRunner
from transcription.caption_chain import METHOD_EMBEDDED, METHOD_SPEECH, CaptionExtractor
from transcription.whisper_client import WhisperClient
from video.ffmpeg_transcoder import FFmpegTranscoder

EMBEDDED_SRT = "1\n00:00:01,000 --> 00:00:02,500\nHello <b>world</b>\n\n2\n00:00:03,000 --> 00:00:04,000\nBye\n"
WHISPER_VTT = "WEBVTT\n\n00:00.000 --> 00:02.000\n Spoken words\n\n00:02.000 --> 00:04.000\n more words\n"


class CaptionExtractorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.bin_dir = os.path.join(self.tmpdir.name, "bin")
        self.work_dir = os.path.join(self.tmpdir.name, "work")
        os.makedirs(self.bin_dir)
        os.makedirs(self.work_dir)
        self.media = os.path.join(self.tmpdir.name, "0123456789abcdef0123456789abcdef.mp4")
        with open(self.media, "wb") as f:
            f.write(b"not really a video")

    async def asyncTearDown(self):
        self.tmpdir.cleanup()

    def _extractor(self, ffprobe: str, ffmpeg: str, whisper_path: str) -> CaptionExtractor:
        runner = ProcessRunner()
        whisper = WhisperClient(runner, whisper_path=whisper_path, language="en", temp_dir=self.work_dir)
        return CaptionExtractor(runner, FFmpegTranscoder(runner, ffmpeg_path=ffmpeg), whisper,
                                ffprobe_path=ffprobe, temp_dir=self.work_dir)

    async def test_embedded_subtitles_win_over_speech(self):
        ffprobe = fake_ffprobe(self.bin_dir, streams=[
            {"index": 2, "codec_type": "subtitle", "tags": {"language": "spa"}},
            {"index": 3, "codec_type": "subtitle", "tags": {"language": "eng"}},
        ])
        whisper = fake_whisper(self.bin_dir, vtt=WHISPER_VTT)
        ffmpeg = fake_ffmpeg(self.bin_dir, srt=EMBEDDED_SRT)
        extractor = self._extractor(ffprobe, ffmpeg, whisper)

        result = await extractor.extract_captions(self.media)

        self.assertEqual(result.method, METHOD_EMBEDDED)
        self.assertEqual(result.language, "spa")
        self.assertEqual([e.text for e in result.entries], ["Hello world", "Bye"])
        self.assertEqual(result.to_dict()["entryCount"], 2)
        self.assertIn("0:2", calls(ffmpeg)[0])
        self.assertEqual(calls(whisper), [])
        self.assertEqual(os.listdir(self.work_dir), [])

    async def test_no_subtitle_streams_falls_back_to_speech(self):
        ffprobe = fake_ffprobe(self.bin_dir, streams=[])
        ffmpeg = fake_ffmpeg(self.bin_dir)
        whisper = fake_whisper(self.bin_dir, vtt=WHISPER_VTT)
        extractor = self._extractor(ffprobe, ffmpeg, whisper)

        result = await extractor.extract_captions(self.media)

        self.assertEqual(result.method, METHOD_SPEECH)
        self.assertEqual(result.language, "en")
        self.assertEqual([(e.start, e.text) for e in result.entries], [(0.0, "Spoken words"), (2.0, "more words")])
        self.assertEqual(calls(ffmpeg), [])
        transcribe = calls(whisper)[-1]
        self.assertEqual(transcribe[0], self.media)
        self.assertEqual(transcribe[transcribe.index("--output_format") + 1], "vtt")
        self.assertEqual(os.listdir(self.work_dir), [])

    async def test_empty_embedded_track_falls_back_to_speech(self):
        ffprobe = fake_ffprobe(self.bin_dir, streams=[{"index": 2}])
        ffmpeg = fake_ffmpeg(self.bin_dir, srt="")
        whisper = fake_whisper(self.bin_dir, vtt=WHISPER_VTT)

        result = await self._extractor(ffprobe, ffmpeg, whisper).extract_captions(self.media)

        self.assertEqual(result.method, METHOD_SPEECH)

    async def test_failed_probe_is_treated_as_no_streams(self):
        ffprobe = fake_ffprobe(self.bin_dir, exit_code=1)
        whisper = fake_whisper(self.bin_dir, vtt=WHISPER_VTT)

        result = await self._extractor(ffprobe, fake_ffmpeg(self.bin_dir), whisper).extract_captions(self.media)

        self.assertEqual(result.method, METHOD_SPEECH)

    async def test_invalid_probe_output_is_a_parse_failure(self):
        ffprobe = fake_ffprobe(self.bin_dir, raw_output="{not json")
        extractor = self._extractor(ffprobe, fake_ffmpeg(self.bin_dir), fake_whisper(self.bin_dir))

        with self.assertRaises(ParseFailure):
            await extractor.extract_captions(self.media)

    async def test_missing_whisper_is_unsupported(self):
        ffprobe = fake_ffprobe(self.bin_dir, streams=[])
        extractor = self._extractor(ffprobe, fake_ffmpeg(self.bin_dir), os.path.join(self.bin_dir, "no-whisper"))

        with self.assertRaises(UnsupportedOperation):
            await extractor.extract_captions(self.media)

    async def test_silent_media_is_a_parse_failure(self):
        ffprobe = fake_ffprobe(self.bin_dir, streams=[])
        whisper = fake_whisper(self.bin_dir, vtt="WEBVTT\n\n")

        with self.assertRaises(ParseFailure) as ctx:
            await self._extractor(ffprobe, fake_ffmpeg(self.bin_dir), whisper).extract_captions(self.media)
        self.assertIn("audible speech", str(ctx.exception))

    async def test_whisper_crash_surfaces_as_process_exit_failure(self):
        ffprobe = fake_ffprobe(self.bin_dir, streams=[])
        whisper = fake_whisper(self.bin_dir, exit_code=2)

        with self.assertRaises(ProcessExitFailure) as ctx:
            await self._extractor(ffprobe, fake_ffmpeg(self.bin_dir), whisper).extract_captions(self.media)
        self.assertEqual(ctx.exception.command, "whisper")
        self.assertEqual(os.listdir(self.work_dir), [])

    async def test_missing_file_is_not_found(self):
        extractor = self._extractor(fake_ffprobe(self.bin_dir), fake_ffmpeg(self.bin_dir), fake_whisper(self.bin_dir))
        os.remove(self.media)

        with self.assertRaises(NotFound):
            await extractor.extract_captions(self.media)
        self.assertEqual(calls(os.path.join(self.bin_dir, "ffprobe")), [])
