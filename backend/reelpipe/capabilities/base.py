"""Abstract base classes for capability adapters.

Each adapter wraps one external or local media operation behind a narrow
async interface. Adapters hold configuration only, never run state, so a
single instance can serve concurrent runs. Failures must be raised as
TransientAdapterError or PermanentAdapterError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import List

from reelpipe.schemas.render import (
    CaptionResult,
    CaptionStyle,
    EncodeResult,
    ImageResult,
    MediaInfo,
    MoodConfig,
    MusicResult,
    RenderSpec,
    SceneTiming,
    SpeechResult,
    StyleConfig,
    TimingData,
    VoiceConfig,
)


class SpeechSynthesizer(ABC):
    """Text-to-speech capability."""

    @abstractmethod
    async def synthesize(self, text: str, voice: VoiceConfig, output_path: Path) -> SpeechResult:
        """Synthesize narration audio for text and write it to output_path.

        Args:
            text: Narration text of one scene.
            voice: Voice preset and speed.
            output_path: Staging path the audio must be written to.

        Returns:
            SpeechResult with the measured clip duration.
        """
        ...


class TranscriptAligner(ABC):
    """Forced-alignment capability: word timings for known narration."""

    @abstractmethod
    async def align(self, audio_path: Path, text: str) -> TimingData:
        """Align the narration text against its audio clip.

        Returns:
            TimingData with per-word timings relative to the clip start.
        """
        ...


class ImageGenerator(ABC):
    """Text-to-image capability."""

    @abstractmethod
    async def generate(self, prompt: str, style: StyleConfig, output_path: Path) -> ImageResult:
        """Generate one image for prompt and write it to output_path."""
        ...


class CaptionBuilder(ABC):
    """Subtitle track builder."""

    @abstractmethod
    async def build(
        self, timings: List[SceneTiming], style: CaptionStyle, output_path: Path
    ) -> CaptionResult:
        """Build the caption track for all scenes on the video timeline."""
        ...


class MusicBuilder(ABC):
    """Background music bed builder."""

    @abstractmethod
    async def build(self, duration_sec: float, mood: MoodConfig, output_path: Path) -> MusicResult:
        """Produce a music bed exactly duration_sec long at output_path."""
        ...


class VideoEncoder(ABC):
    """Final media encoder."""

    @abstractmethod
    async def encode(self, spec: RenderSpec, output_path: Path) -> EncodeResult:
        """Render the final video described by spec.

        Frame/timing layout must be a pure function of the spec and the
        bytes of the referenced assets.
        """
        ...

    @abstractmethod
    async def thumbnail(self, video_path: Path, offset_sec: float, output_path: Path) -> None:
        """Extract a single still frame at offset_sec."""
        ...

    @abstractmethod
    async def inspect(self, video_path: Path, min_silence_sec: float) -> MediaInfo:
        """Resolution, duration and every silence of at least min_silence_sec."""
        ...


@dataclass(frozen=True)
class AdapterSet:
    """The capability bindings used by the step handlers."""

    speech: SpeechSynthesizer
    aligner: TranscriptAligner
    images: ImageGenerator
    captions: CaptionBuilder
    music: MusicBuilder
    encoder: VideoEncoder
