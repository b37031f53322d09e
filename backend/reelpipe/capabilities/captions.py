"""ASS subtitle builder with word-by-word highlighting.

Word timings come from forced alignment and are relative to each scene's
clip; they are shifted onto the video timeline by the scene start. Scenes
without word timings fall back to one caption event spanning the scene.
"""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from reelpipe.capabilities.base import CaptionBuilder
from reelpipe.errors import PermanentAdapterError
from reelpipe.schemas.render import CaptionResult, CaptionStyle, SceneTiming, WordTiming

logger = logging.getLogger(__name__)

# Grouping thresholds for caption segments
MAX_WORDS_PER_SEGMENT = 6
PAUSE_BREAK_SEC = 0.5
HIGHLIGHT_CHUNK = 4


@dataclass
class CaptionSegment:
    text: str
    start: float
    end: float
    words: Optional[List[WordTiming]] = None


def format_ass_time(seconds: float) -> str:
    """Seconds -> ASS timestamp H:MM:SS.cc"""
    centis = int(round(max(seconds, 0.0) * 100))
    h, rem = divmod(centis, 360000)
    m, rem = divmod(rem, 6000)
    s, cs = divmod(rem, 100)
    return f"{h}:{m:02d}:{s:02d}.{cs:02d}"


def hex_to_ass(hex_color: str) -> str:
    """#RRGGBB -> &H00BBGGRR& (ASS colours are BGR)."""
    value = hex_color.lstrip("#")
    if len(value) != 6:
        raise ValueError(f"Expected #RRGGBB colour, got {hex_color!r}")
    r, g, b = value[0:2], value[2:4], value[4:6]
    return f"&H00{b}{g}{r}&".upper()


def escape_ass_text(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace("\n", "\\N")
        .replace("{", "\\{")
        .replace("}", "\\}")
    )


def group_words(words: List[WordTiming]) -> List[CaptionSegment]:
    """Split words into segments on long pauses or when a segment gets too long."""
    segments: List[CaptionSegment] = []
    current: List[WordTiming] = []
    for i, word in enumerate(words):
        current.append(word)
        is_last = i == len(words) - 1
        long_pause = not is_last and words[i + 1].start - word.end > PAUSE_BREAK_SEC
        if long_pause or len(current) >= MAX_WORDS_PER_SEGMENT or is_last:
            segments.append(CaptionSegment(
                text=" ".join(w.word for w in current),
                start=current[0].start,
                end=current[-1].end,
                words=current,
            ))
            current = []
    return segments


def segments_for_timeline(timings: List[SceneTiming]) -> List[CaptionSegment]:
    """Caption segments for all scenes, in timeline order."""
    segments: List[CaptionSegment] = []
    for timing in sorted(timings, key=lambda t: t.scene_idx):
        if timing.words:
            shifted = [
                WordTiming(word=w.word, start=w.start + timing.start_sec, end=w.end + timing.start_sec)
                for w in timing.words
            ]
            segments.extend(group_words(shifted))
        elif timing.narration_text.strip():
            segments.append(CaptionSegment(
                text=timing.narration_text.strip(),
                start=timing.start_sec,
                end=timing.end_sec,
            ))
    return segments


def _highlight_events(words: List[WordTiming], highlight: str) -> List[str]:
    events = []
    for offset in range(0, len(words), HIGHLIGHT_CHUNK):
        chunk = words[offset:offset + HIGHLIGHT_CHUNK]
        for i, word in enumerate(chunk):
            parts = [
                f"{{\\c{highlight}}}{escape_ass_text(w.word)}{{\\c}}" if j == i else escape_ass_text(w.word)
                for j, w in enumerate(chunk)
            ]
            events.append(
                f"Dialogue: 0,{format_ass_time(word.start)},{format_ass_time(word.end)},"
                f"Default,,0,0,0,,{' '.join(parts)}"
            )
    return events


def render_ass(segments: List[CaptionSegment], style: CaptionStyle, width: int = 1080, height: int = 1920) -> tuple[str, int]:
    """Render the full ASS document. Returns (content, dialogue event count)."""
    primary = hex_to_ass(style.primary_color)
    outline = hex_to_ass(style.outline_color)
    highlight = hex_to_ass(style.highlight_color)

    lines = [
        "[Script Info]",
        "Title: Reel Captions",
        "ScriptType: v4.00+",
        f"PlayResX: {width}",
        f"PlayResY: {height}",
        "WrapStyle: 0",
        "",
        "[V4+ Styles]",
        "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, "
        "Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, "
        "Shadow, Alignment, MarginL, MarginR, MarginV, Encoding",
        f"Style: Default,{style.font_family},{style.font_size},{primary},{highlight},{outline},"
        f"&H80000000&,1,0,0,0,100,100,0,0,1,{style.outline_width},0,2,"
        f"{style.margin_horizontal},{style.margin_horizontal},{style.margin_bottom},1",
        "",
        "[Events]",
        "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text",
    ]

    events: List[str] = []
    for segment in segments:
        if segment.words:
            events.extend(_highlight_events(segment.words, highlight))
        else:
            events.append(
                f"Dialogue: 0,{format_ass_time(segment.start)},{format_ass_time(segment.end)},"
                f"Default,,0,0,0,,{escape_ass_text(segment.text)}"
            )
    return "\n".join(lines + events) + "\n", len(events)


class AssCaptionBuilder(CaptionBuilder):
    """Pure-Python caption builder; no external service involved."""

    def __init__(self, width: int = 1080, height: int = 1920):
        self._width = width
        self._height = height

    async def build(
        self, timings: List[SceneTiming], style: CaptionStyle, output_path: Path
    ) -> CaptionResult:
        try:
            segments = segments_for_timeline(timings)
            content, count = render_ass(segments, style, self._width, self._height)
        except ValueError as e:
            raise PermanentAdapterError(f"Invalid caption input: {e}", capability="captions") from e

        await asyncio.to_thread(Path(output_path).write_text, content, "utf-8")
        logger.debug(f"Wrote {count} caption events to {output_path}")
        return CaptionResult(event_count=count)
