"""Typed inputs and outputs of the capability adapters.

Every adapter call takes and returns these models so the orchestrator never
depends on a vendor's request/response shape.
"""

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field


class VoiceConfig(BaseModel):
    """Narration voice settings."""

    voice: str = "alloy"
    speed: float = Field(default=1.0, gt=0.25, le=4.0)
    audio_format: str = "mp3"


class StyleConfig(BaseModel):
    """Image generation settings."""

    size: str = "1024x1792"
    negative_prompt: str = ""


class MoodConfig(BaseModel):
    """Background music selection settings."""

    mood: Optional[str] = None
    volume: float = 0.15


class CaptionStyle(BaseModel):
    """Burned-in caption styling (ASS V4+ style fields)."""

    font_family: str = "Arial Black"
    font_size: int = 48
    primary_color: str = "#FFFFFF"
    outline_color: str = "#000000"
    outline_width: int = 4
    highlight_color: str = "#FFD700"
    margin_bottom: int = 200
    margin_horizontal: int = 40


class WordTiming(BaseModel):
    """A single aligned word, times relative to its audio clip."""

    word: str
    start: float
    end: float


class TimingData(BaseModel):
    """Forced-alignment result for one audio clip."""

    text: str = ""
    words: List[WordTiming] = Field(default_factory=list)
    duration_sec: float = 0.0


class SceneTiming(BaseModel):
    """Alignment of one scene placed on the video timeline."""

    scene_idx: int
    narration_text: str
    start_sec: float
    end_sec: float
    words: List[WordTiming] = Field(default_factory=list)

    @property
    def duration_sec(self) -> float:
        return self.end_sec - self.start_sec


class SpeechResult(BaseModel):
    duration_sec: float


class ImageResult(BaseModel):
    revised_prompt: Optional[str] = None


class CaptionResult(BaseModel):
    event_count: int


class MusicResult(BaseModel):
    source: Optional[str] = None
    duration_sec: float


class EncodeResult(BaseModel):
    duration_sec: float


class RenderScene(BaseModel):
    """One scene segment of the render spec, in timeline order."""

    scene_idx: int
    image_path: Path
    audio_path: Path
    start_sec: float
    duration_sec: float
    effect_preset: str = "static"


class RenderSpec(BaseModel):
    """Deterministic description of the final encode.

    Given byte-identical assets and an identical spec, the encoder must
    produce the same frame/timing layout.
    """

    scenes: List[RenderScene]
    captions_path: Optional[Path] = None
    music_path: Optional[Path] = None
    music_volume: float = 0.15
    width: int = 1080
    height: int = 1920
    fps: int = 30

    @property
    def total_duration_sec(self) -> float:
        return sum(s.duration_sec for s in self.scenes)


class Timeline(BaseModel):
    """Aligned scenes on the video timeline (the timings artifact)."""

    scenes: List[SceneTiming]
    total_duration_sec: float


class MediaInfo(BaseModel):
    """Properties of an encoded video inspected before export."""

    width: Optional[int] = None
    height: Optional[int] = None
    duration_sec: float = 0.0
    silences_sec: List[float] = Field(default_factory=list)


class QaLimits(BaseModel):
    """Upload constraints of vertical short-form platforms."""

    width: int = 1080
    height: int = 1920
    max_file_size_mb: float = 287.0
    max_silence_sec: float = 2.0


class QaReport(BaseModel):
    """Outcome of the checks on the final video, kept in the export record."""

    passed: bool
    resolution: bool
    file_size: bool
    silence: bool
    width: Optional[int] = None
    height: Optional[int] = None
    size_bytes: int
    longest_silence_sec: float
    details: List[str] = Field(default_factory=list)
