"""Placeholder adapters for dry-run renders.

No network and no ffmpeg: every adapter writes a small JSON document that
describes what the real capability would have produced. Outputs depend only
on the inputs, so two dry runs of the same plan yield byte-identical files.
"""

import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import List

from reelpipe.capabilities.base import (
    AdapterSet,
    CaptionBuilder,
    ImageGenerator,
    MusicBuilder,
    SpeechSynthesizer,
    TranscriptAligner,
    VideoEncoder,
)
from reelpipe.capabilities.captions import AssCaptionBuilder
from reelpipe.errors import PermanentAdapterError
from reelpipe.schemas.render import (
    EncodeResult,
    ImageResult,
    MediaInfo,
    MoodConfig,
    MusicResult,
    RenderSpec,
    SpeechResult,
    StyleConfig,
    TimingData,
    VoiceConfig,
    WordTiming,
)

logger = logging.getLogger(__name__)

# Average narration pace used to fake clip durations
WORDS_PER_SECOND = 2.5
MIN_CLIP_SEC = 1.0


def _digest(path: Path) -> str:
    return hashlib.sha256(Path(path).read_bytes()).hexdigest()


async def _write_json(path: Path, payload: dict) -> None:
    data = json.dumps(payload, sort_keys=True, indent=2)
    await asyncio.to_thread(Path(path).write_text, data, "utf-8")


def estimate_duration(text: str) -> float:
    words = len(text.split())
    return round(max(words / WORDS_PER_SECOND, MIN_CLIP_SEC), 2)


class DryRunSpeechSynthesizer(SpeechSynthesizer):
    async def synthesize(self, text: str, voice: VoiceConfig, output_path: Path) -> SpeechResult:
        if not text.strip():
            raise PermanentAdapterError("Cannot synthesize empty narration", capability="tts")
        duration = estimate_duration(text)
        await _write_json(output_path, {
            "placeholder": "audio",
            "voice": voice.voice,
            "speed": voice.speed,
            "text": text,
            "duration_sec": duration,
        })
        return SpeechResult(duration_sec=duration)


class DryRunTranscriptAligner(TranscriptAligner):
    """Spreads the narration words evenly over the placeholder clip."""

    async def align(self, audio_path: Path, text: str) -> TimingData:
        try:
            clip = json.loads(await asyncio.to_thread(Path(audio_path).read_text, "utf-8"))
            duration = float(clip["duration_sec"])
        except (ValueError, KeyError, TypeError, UnicodeDecodeError) as e:
            raise PermanentAdapterError(
                f"Not a dry-run audio placeholder: {audio_path}", capability="asr"
            ) from e

        words = text.split()
        step = duration / len(words) if words else 0.0
        timings = [
            WordTiming(word=w, start=round(i * step, 3), end=round((i + 1) * step, 3))
            for i, w in enumerate(words)
        ]
        return TimingData(text=text, words=timings, duration_sec=duration)


class DryRunImageGenerator(ImageGenerator):
    async def generate(self, prompt: str, style: StyleConfig, output_path: Path) -> ImageResult:
        if not prompt.strip():
            raise PermanentAdapterError("Cannot generate an image from an empty prompt", capability="image")
        await _write_json(output_path, {
            "placeholder": "image",
            "prompt": prompt,
            "size": style.size,
            "negative_prompt": style.negative_prompt,
        })
        return ImageResult()


class DryRunMusicBuilder(MusicBuilder):
    async def build(self, duration_sec: float, mood: MoodConfig, output_path: Path) -> MusicResult:
        await _write_json(output_path, {
            "placeholder": "music",
            "mood": mood.mood,
            "duration_sec": round(duration_sec, 3),
        })
        return MusicResult(source=None, duration_sec=duration_sec)


class DryRunVideoEncoder(VideoEncoder):
    """Writes the render layout instead of encoding it.

    Assets are referenced by checksum rather than path so the output does
    not depend on which run produced them.
    """

    async def encode(self, spec: RenderSpec, output_path: Path) -> EncodeResult:
        if not spec.scenes:
            raise PermanentAdapterError("Render spec has no scenes", capability="encode")

        def layout() -> dict:
            scenes: List[dict] = [
                {
                    "scene_idx": s.scene_idx,
                    "start_sec": round(s.start_sec, 3),
                    "duration_sec": round(s.duration_sec, 3),
                    "effect_preset": s.effect_preset,
                    "image": _digest(s.image_path),
                    "audio": _digest(s.audio_path),
                }
                for s in spec.scenes
            ]
            return {
                "placeholder": "video",
                "width": spec.width,
                "height": spec.height,
                "fps": spec.fps,
                "music_volume": spec.music_volume,
                "captions": _digest(spec.captions_path) if spec.captions_path else None,
                "music": _digest(spec.music_path) if spec.music_path else None,
                "scenes": scenes,
            }

        await _write_json(output_path, await asyncio.to_thread(layout))
        return EncodeResult(duration_sec=round(spec.total_duration_sec, 3))

    async def thumbnail(self, video_path: Path, offset_sec: float, output_path: Path) -> None:
        await _write_json(output_path, {
            "placeholder": "thumbnail",
            "video": await asyncio.to_thread(_digest, video_path),
            "offset_sec": offset_sec,
        })

    async def inspect(self, video_path: Path, min_silence_sec: float) -> MediaInfo:
        """Geometry and duration from the placeholder layout; narration has no gaps."""
        try:
            layout = json.loads(await asyncio.to_thread(Path(video_path).read_text, "utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise PermanentAdapterError(f"{video_path} is not a dry-run video", capability="qa") from e
        if not isinstance(layout, dict) or layout.get("placeholder") != "video":
            raise PermanentAdapterError(f"{video_path} is not a dry-run video", capability="qa")
        return MediaInfo(
            width=layout["width"],
            height=layout["height"],
            duration_sec=round(sum(s["duration_sec"] for s in layout["scenes"]), 3),
        )


def dry_run_adapters(width: int = 1080, height: int = 1920) -> AdapterSet:
    """Adapter set for dry runs; captions are real since they need no external tool."""
    logger.debug("Using dry-run capability adapters")
    return AdapterSet(
        speech=DryRunSpeechSynthesizer(),
        aligner=DryRunTranscriptAligner(),
        images=DryRunImageGenerator(),
        captions=AssCaptionBuilder(width, height),
        music=DryRunMusicBuilder(),
        encoder=DryRunVideoEncoder(),
    )
