"""Capability adapters: dry-run placeholders, ffmpeg command building and error classification."""

import asyncio
from pathlib import Path

import httpx
import pytest

from reelpipe.capabilities import build_adapters
from reelpipe.capabilities.dry_run import (
    DryRunImageGenerator,
    DryRunSpeechSynthesizer,
    DryRunTranscriptAligner,
    DryRunVideoEncoder,
    estimate_duration,
)
from reelpipe.capabilities.ffmpeg_adapter import (
    FFmpegMusicBuilder,
    FFmpegVideoEncoder,
    escape_filter_path,
    motion_filter,
    parse_silences,
    run_ffmpeg,
    run_process,
)
from reelpipe.capabilities.openai_adapter import OpenAIImageGenerator, classify_http_error
from reelpipe.errors import PermanentAdapterError, TransientAdapterError
from reelpipe.schemas.render import MediaInfo, QaLimits, RenderScene, RenderSpec, StyleConfig, VoiceConfig
from reelpipe.services.qa_validator import evaluate_video


# =============================================================================
# DRY RUN
# =============================================================================


class TestDryRun:
    @pytest.mark.asyncio
    async def test_speech_then_alignment(self, tmp_path):
        clip = tmp_path / "clip.mp3"
        text = "one two three four five"

        result = await DryRunSpeechSynthesizer().synthesize(text, VoiceConfig(voice="alloy"), clip)
        timing = await DryRunTranscriptAligner().align(clip, text)

        assert result.duration_sec == estimate_duration(text) == 2.0
        assert [w.word for w in timing.words] == text.split()
        assert timing.words[0].start == 0.0
        assert timing.words[-1].end == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_short_text_has_minimum_duration(self, tmp_path):
        result = await DryRunSpeechSynthesizer().synthesize("Hi", VoiceConfig(voice="alloy"), tmp_path / "a.mp3")
        assert result.duration_sec == 1.0

    @pytest.mark.asyncio
    async def test_empty_inputs_are_permanent_errors(self, tmp_path):
        with pytest.raises(PermanentAdapterError):
            await DryRunSpeechSynthesizer().synthesize("  ", VoiceConfig(voice="alloy"), tmp_path / "a.mp3")
        with pytest.raises(PermanentAdapterError):
            await DryRunImageGenerator().generate("", StyleConfig(), tmp_path / "i.png")

    @pytest.mark.asyncio
    async def test_aligner_rejects_real_audio(self, tmp_path):
        clip = tmp_path / "real.mp3"
        clip.write_bytes(b"ID3\x00\x00binary")

        with pytest.raises(PermanentAdapterError):
            await DryRunTranscriptAligner().align(clip, "text")

    @pytest.mark.asyncio
    async def test_encoder_output_depends_only_on_content(self, tmp_path):
        outputs = []
        for name in ("a", "b"):
            workdir = tmp_path / name
            workdir.mkdir()
            (workdir / "img.png").write_bytes(b"pixels")
            (workdir / "voice.mp3").write_bytes(b"voice")
            spec = RenderSpec(scenes=[RenderScene(
                scene_idx=0,
                image_path=workdir / "img.png",
                audio_path=workdir / "voice.mp3",
                start_sec=0.0,
                duration_sec=2.5,
            )])
            await DryRunVideoEncoder().encode(spec, workdir / "out.mp4")
            outputs.append((workdir / "out.mp4").read_bytes())

        assert outputs[0] == outputs[1]


# =============================================================================
# FFMPEG
# =============================================================================


class FakeProcess:
    """Stands in for asyncio.subprocess.Process."""

    def __init__(self, returncode: int = 0, stdout: bytes = b"", stderr: bytes = b"", hang: bool = False):
        self.returncode = None
        self._stdout = stdout
        self.killed = False
        self._exit_code = returncode
        self._stderr = stderr
        self._hang = hang

    async def communicate(self):
        if self._hang:
            await asyncio.sleep(3600)
        self.returncode = self._exit_code
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True
        self.returncode = -9

    async def wait(self):
        return self.returncode


def _spawn(*processes: FakeProcess):
    queue = list(processes)

    async def create_subprocess_exec(*args, **kwargs):
        return queue.pop(0)
    return create_subprocess_exec


class TestFFmpeg:
    def test_motion_filters(self):
        zoom = motion_filter("slow_zoom_in", 2.0, 1080, 1920, 30)
        assert zoom.startswith("scale=1080:1920:force_original_aspect_ratio=increase,crop=1080:1920,zoompan=")
        assert ":d=60:" in zoom
        assert "fade=in:0:15" in motion_filter("fade", 2.0, 1080, 1920, 30)
        assert motion_filter("static", 2.0, 1080, 1920, 30) == (
            "scale=1080:1920:force_original_aspect_ratio=increase,crop=1080:1920"
        )
        assert motion_filter("pan_left", 1.0, 720, 1280, 24) != motion_filter("pan_right", 1.0, 720, 1280, 24)

    def test_escape_filter_path(self):
        assert escape_filter_path(Path("C:\\subs\\it's.ass")) == "C\\:/subs/it\\'s.ass"

    def test_composite_mixes_music_and_burns_captions(self, tmp_path):
        spec = RenderSpec(
            scenes=[
                RenderScene(scene_idx=i, image_path=tmp_path / f"{i}.png", audio_path=tmp_path / f"{i}.mp3",
                            start_sec=i * 2.0, duration_sec=2.0)
                for i in range(2)
            ],
            captions_path=tmp_path / "captions.ass",
            music_path=tmp_path / "music.m4a",
            music_volume=0.2,
        )
        args = FFmpegVideoEncoder()._composite_args(tmp_path / "raw.mp4", spec, tmp_path / "out.mp4")
        graph = args[args.index("-filter_complex") + 1]

        assert "[1:a][2:a]concat=n=2:v=0:a=1[vo]" in graph
        assert "[3:a]volume=0.2,atrim=0:4.000[bg]" in graph
        assert "amix=inputs=2" in graph
        assert "subtitles=" in graph
        assert args[-1] == str(tmp_path / "out.mp4")

    def test_composite_without_music_or_captions(self, tmp_path):
        spec = RenderSpec(scenes=[
            RenderScene(scene_idx=0, image_path=tmp_path / "0.png", audio_path=tmp_path / "0.mp3",
                        start_sec=0.0, duration_sec=1.0),
        ])
        args = FFmpegVideoEncoder()._composite_args(tmp_path / "raw.mp4", spec, tmp_path / "out.mp4")
        graph = args[args.index("-filter_complex") + 1]

        assert "[vo]anull[aout]" in graph
        assert "[0:v]null[vout]" in graph

    def test_music_track_selection(self, tmp_path):
        for name in ("b_upbeat.mp3", "a_calm.mp3", "notes.txt"):
            (tmp_path / name).write_bytes(b"x")
        builder = FFmpegMusicBuilder(tmp_path)

        assert builder.pick_track("upbeat").name == "b_upbeat.mp3"
        assert builder.pick_track("epic").name == "a_calm.mp3"
        assert FFmpegMusicBuilder(None).pick_track("calm") is None

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, monkeypatch):
        process = FakeProcess(hang=True)
        monkeypatch.setattr(asyncio, "create_subprocess_exec", _spawn(process))

        with pytest.raises(TransientAdapterError, match="timed out"):
            await run_ffmpeg(["-i", "in.mp4", "out.mp4"], timeout=0.05)
        assert process.killed

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self, monkeypatch):
        process = FakeProcess(hang=True)
        monkeypatch.setattr(asyncio, "create_subprocess_exec", _spawn(process))

        task = asyncio.create_task(run_process(["ffmpeg", "-i", "in.mp4"], None, "encode"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert process.killed

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_permanent(self, monkeypatch):
        process = FakeProcess(returncode=1, stderr=b"Invalid data found when processing input")
        monkeypatch.setattr(asyncio, "create_subprocess_exec", _spawn(process))

        with pytest.raises(PermanentAdapterError, match="Invalid data"):
            await run_ffmpeg(["-i", "in.mp4", "out.mp4"])
        assert not process.killed

    @pytest.mark.asyncio
    async def test_missing_binary_is_permanent(self):
        with pytest.raises(PermanentAdapterError, match="not found"):
            await run_ffmpeg(["-version"], binary="ffmpeg-does-not-exist-on-this-host")


# =============================================================================
# VIDEO QA
# =============================================================================

SILENCEDETECT_LOG = """\
[silencedetect @ 0x55d1] silence_start: 3.2
[silencedetect @ 0x55d1] silence_end: 4.1 | silence_duration: 0.9
[silencedetect @ 0x55d1] silence_start: 10.5
"""


class TestVideoQa:
    def test_parse_silences_closes_trailing_silence(self):
        assert parse_silences(SILENCEDETECT_LOG, 13.0) == pytest.approx([0.9, 2.5])
        assert parse_silences("", 13.0) == []

    def test_passing_video(self):
        info = MediaInfo(width=1080, height=1920, duration_sec=30.0, silences_sec=[0.9])
        report = evaluate_video(info, 40 * 1024 * 1024, QaLimits())

        assert report.passed
        assert report.details == []
        assert report.longest_silence_sec == 0.9

    def test_wrong_resolution(self):
        info = MediaInfo(width=1920, height=1080, duration_sec=30.0)
        report = evaluate_video(info, 1024, QaLimits())

        assert not report.passed
        assert not report.resolution
        assert report.details == ["Resolution 1920x1080 (expected 1080x1920)"]

    def test_missing_video_stream(self):
        report = evaluate_video(MediaInfo(duration_sec=30.0), 1024, QaLimits())

        assert not report.resolution
        assert report.details == ["No video stream found"]

    def test_oversized_file(self):
        info = MediaInfo(width=1080, height=1920, duration_sec=30.0)
        report = evaluate_video(info, 300 * 1024 * 1024, QaLimits())

        assert not report.file_size
        assert report.details == ["File size 300.0 MB exceeds 287 MB"]

    def test_silence_at_limit_fails(self):
        info = MediaInfo(width=1080, height=1920, duration_sec=30.0, silences_sec=[0.5, 2.0])
        report = evaluate_video(info, 1024, QaLimits())

        assert not report.silence
        assert report.details == ["Detected 2.0s of silence (limit 2s)"]

    @pytest.mark.asyncio
    async def test_ffmpeg_inspect(self, monkeypatch, tmp_path):
        ffprobe = FakeProcess(
            stdout=b'{"streams": [{"width": 1080, "height": 1920}], "format": {"duration": "13.0"}}'
        )
        ffmpeg = FakeProcess(stderr=SILENCEDETECT_LOG.encode())
        monkeypatch.setattr(asyncio, "create_subprocess_exec", _spawn(ffprobe, ffmpeg))

        info = await FFmpegVideoEncoder().inspect(tmp_path / "final.mp4", 0.5)

        assert (info.width, info.height, info.duration_sec) == (1080, 1920, 13.0)
        assert info.silences_sec == pytest.approx([0.9, 2.5])

    @pytest.mark.asyncio
    async def test_dry_run_inspect_reads_placeholder(self, tmp_path):
        (tmp_path / "img.png").write_bytes(b"pixels")
        (tmp_path / "voice.mp3").write_bytes(b"voice")
        spec = RenderSpec(scenes=[
            RenderScene(scene_idx=i, image_path=tmp_path / "img.png", audio_path=tmp_path / "voice.mp3",
                        start_sec=i * 2.5, duration_sec=2.5)
            for i in range(2)
        ])
        encoder = DryRunVideoEncoder()
        await encoder.encode(spec, tmp_path / "out.mp4")

        info = await encoder.inspect(tmp_path / "out.mp4", 2.0)

        assert (info.width, info.height) == (1080, 1920)
        assert info.duration_sec == 5.0
        assert info.silences_sec == []

    @pytest.mark.asyncio
    async def test_dry_run_inspect_rejects_real_video(self, tmp_path):
        video = tmp_path / "real.mp4"
        video.write_bytes(b"\x00\x00\x00\x18ftypmp42")

        with pytest.raises(PermanentAdapterError, match="not a dry-run video"):
            await DryRunVideoEncoder().inspect(video, 2.0)


# =============================================================================
# HTTP PROVIDERS
# =============================================================================


def _status_error(code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://provider.test/v1/images/generations")
    response = httpx.Response(code, request=request, text="details")
    return httpx.HTTPStatusError("error", request=request, response=response)


class TestHttpClassification:
    @pytest.mark.parametrize("code", [408, 429, 500, 503])
    def test_retryable_statuses(self, code):
        assert isinstance(classify_http_error(_status_error(code), "image"), TransientAdapterError)

    @pytest.mark.parametrize("code", [400, 401, 403, 422])
    def test_permanent_statuses(self, code):
        error = classify_http_error(_status_error(code), "image")
        assert isinstance(error, PermanentAdapterError)
        assert error.capability == "image"

    def test_network_errors_are_transient(self):
        request = httpx.Request("POST", "https://provider.test/v1/audio/speech")
        assert isinstance(classify_http_error(httpx.ConnectError("refused", request=request), "tts"),
                          TransientAdapterError)
        assert isinstance(classify_http_error(httpx.ReadTimeout("slow", request=request), "tts"),
                          TransientAdapterError)

    @pytest.mark.asyncio
    async def test_missing_api_key_is_permanent(self, tmp_path):
        generator = OpenAIImageGenerator("https://provider.test/v1", None, "dall-e-3")

        with pytest.raises(PermanentAdapterError, match="API key"):
            await generator.generate("a cat", StyleConfig(), tmp_path / "cat.png")


class TestRegistry:
    def test_dry_run_adapters(self, test_settings):
        adapters = build_adapters(test_settings)
        assert isinstance(adapters.speech, DryRunSpeechSynthesizer)
        assert isinstance(adapters.encoder, DryRunVideoEncoder)

    def test_provider_adapters(self, test_settings):
        adapters = build_adapters(test_settings, dry_run=False)
        assert isinstance(adapters.images, OpenAIImageGenerator)
        assert isinstance(adapters.encoder, FFmpegVideoEncoder)
