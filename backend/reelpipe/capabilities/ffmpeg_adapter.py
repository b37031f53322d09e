"""Local ffmpeg-based music bed builder and final video encoder.

ffmpeg/ffprobe run as asyncio subprocesses so the event loop keeps serving
other runs; a call that times out or is cancelled kills its child process.
Error classification:
- binary missing / non-zero exit: permanent (same inputs fail the same way)
- subprocess timeout: transient
"""

import asyncio
import json
import logging
import re
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

from reelpipe.capabilities.base import MusicBuilder, VideoEncoder
from reelpipe.errors import PermanentAdapterError, TransientAdapterError
from reelpipe.schemas.render import EncodeResult, MediaInfo, MoodConfig, MusicResult, RenderScene, RenderSpec

logger = logging.getLogger(__name__)

MUSIC_EXTENSIONS = {".mp3", ".wav", ".m4a", ".aac", ".ogg"}

# Flags that strip encoder version strings and timestamps from the output
BITEXACT_FLAGS = ["-map_metadata", "-1", "-fflags", "+bitexact", "-flags:v", "+bitexact", "-flags:a", "+bitexact"]

# Audio below this level counts as silence
SILENCE_NOISE = "-50dB"
SILENCE_START = re.compile(r"silence_start:\s*(-?[\d.]+)")
SILENCE_DURATION = re.compile(r"silence_duration:\s*([\d.]+)")


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        process.kill()
        await process.wait()


async def run_process(args: List[str], timeout: Optional[float], capability: str,
                      check: bool = True) -> Tuple[bytes, bytes]:
    """Run a subprocess to completion and return (stdout, stderr)."""
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        raise PermanentAdapterError(f"{args[0]} not found on PATH", capability=capability) from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError as e:
        await _kill(process)
        raise TransientAdapterError(f"{args[0]} timed out after {timeout}s", capability=capability) from e
    except asyncio.CancelledError:
        await _kill(process)
        raise

    if check and process.returncode != 0:
        message = stderr.decode(errors="replace") if stderr else "No error output"
        raise PermanentAdapterError(
            f"{args[0]} exited with code {process.returncode}: {message[-500:]}", capability=capability
        )
    return stdout, stderr


async def run_ffmpeg(args: List[str], *, binary: str = "ffmpeg", timeout: Optional[float] = None,
                     capability: str = "encode") -> None:
    """Run ffmpeg with -y prepended; raises classified adapter errors."""
    cmd = [binary, "-y", "-hide_banner", "-loglevel", "error", *args]
    logger.debug(f"Running: {' '.join(cmd)}")
    await run_process(cmd, timeout, capability)


async def probe_duration(path: Path, ffprobe_binary: str = "ffprobe", timeout: float = 60.0) -> float:
    """Media duration in seconds via ffprobe."""
    cmd = [
        ffprobe_binary, "-v", "quiet",
        "-show_entries", "format=duration",
        "-of", "json",
        str(path),
    ]
    stdout, _ = await run_process(cmd, timeout, "probe")
    try:
        return float(json.loads(stdout)["format"]["duration"])
    except (ValueError, KeyError, TypeError) as e:
        raise PermanentAdapterError(f"Could not read duration of {path}", capability="probe") from e


def parse_silences(stderr: str, total_duration: float) -> List[float]:
    """Silence lengths reported by the silencedetect filter.

    A silence still open at the end of the stream has no silence_duration
    line; it runs to total_duration.
    """
    durations = [float(d) for d in SILENCE_DURATION.findall(stderr)]
    starts = [float(s) for s in SILENCE_START.findall(stderr)]
    if len(starts) > len(durations):
        durations.append(max(total_duration - starts[-1], 0.0))
    return durations


def motion_filter(effect: str, duration: float, width: int, height: int, fps: int) -> str:
    """Scale/crop to the output geometry plus the scene's motion preset."""
    scale = f"scale={width}:{height}:force_original_aspect_ratio=increase,crop={width}:{height}"
    frames = max(int(round(duration * fps)), 1)
    size = f"s={width}x{height}:fps={fps}"
    centered_x = "iw/2-(iw/zoom/2)"
    centered_y = "ih/2-(ih/zoom/2)"
    progress = f"(1-on/{frames})"

    if effect == "slow_zoom_in":
        return f"{scale},zoompan=z='min(zoom+0.0005,1.1)':d={frames}:{size}"
    if effect == "slow_zoom_out":
        return f"{scale},zoompan=z='if(eq(on,1),1.1,max(zoom-0.0005,1))':d={frames}:{size}"
    if effect == "pan_left":
        return f"{scale},zoompan=z='1.1':x='{centered_x}+((iw/zoom)*{progress})':y='{centered_y}':d={frames}:{size}"
    if effect == "pan_right":
        return f"{scale},zoompan=z='1.1':x='{centered_x}-((iw/zoom)*{progress})':y='{centered_y}':d={frames}:{size}"
    if effect == "tilt_up":
        return f"{scale},zoompan=z='1.1':x='{centered_x}':y='{centered_y}+((ih/zoom)*{progress})':d={frames}:{size}"
    if effect == "tilt_down":
        return f"{scale},zoompan=z='1.1':x='{centered_x}':y='{centered_y}-((ih/zoom)*{progress})':d={frames}:{size}"
    if effect == "fade":
        fade_frames = min(15, frames // 2)
        return f"{scale},fade=in:0:{fade_frames},fade=out:{max(frames - fade_frames, 0)}:{fade_frames}"
    return scale


def escape_filter_path(path: Path) -> str:
    """Escape a path for use inside an ffmpeg filter argument."""
    return str(path).replace("\\", "/").replace(":", "\\:").replace("'", "\\'")


class FFmpegMusicBuilder(MusicBuilder):
    """Loops/trims a track from the music library; silence when none is available.

    Track choice is deterministic: the first file (sorted by name) whose name
    contains the mood, else the first file overall.
    """

    def __init__(self, library_dir: Optional[Path] = None, ffmpeg_binary: str = "ffmpeg",
                 timeout_sec: float = 300.0):
        self._library_dir = Path(library_dir) if library_dir else None
        self._ffmpeg = ffmpeg_binary
        self._timeout = timeout_sec

    def pick_track(self, mood: Optional[str]) -> Optional[Path]:
        if not self._library_dir or not self._library_dir.is_dir():
            return None
        tracks = sorted(
            p for p in self._library_dir.iterdir()
            if p.is_file() and p.suffix.lower() in MUSIC_EXTENSIONS
        )
        if not tracks:
            return None
        if mood:
            for track in tracks:
                if mood.lower() in track.stem.lower():
                    return track
        return tracks[0]

    async def build(self, duration_sec: float, mood: MoodConfig, output_path: Path) -> MusicResult:
        if duration_sec <= 0:
            raise PermanentAdapterError("Music bed duration must be positive", capability="music")

        track = self.pick_track(mood.mood)
        if track is None:
            logger.info("No music library track found, building a silent bed")
            inputs = ["-f", "lavfi", "-i", "anullsrc=r=44100:cl=stereo"]
        else:
            logger.info(f"Using background music: {track.name}")
            inputs = ["-stream_loop", "-1", "-i", str(track)]

        await run_ffmpeg(
            [*inputs, "-t", f"{duration_sec:.3f}", "-c:a", "aac", "-b:a", "192k",
             *BITEXACT_FLAGS, str(output_path)],
            binary=self._ffmpeg, timeout=self._timeout, capability="music",
        )
        return MusicResult(source=track.name if track else None, duration_sec=duration_sec)


class FFmpegVideoEncoder(VideoEncoder):
    """Renders scene segments, concatenates them and muxes voice, music and captions."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg", ffprobe_binary: str = "ffprobe",
                 timeout_sec: float = 1800.0):
        self._ffmpeg = ffmpeg_binary
        self._ffprobe = ffprobe_binary
        self._timeout = timeout_sec

    async def _render_segment(self, scene: RenderScene, spec: RenderSpec, output: Path) -> None:
        vf = motion_filter(scene.effect_preset, scene.duration_sec, spec.width, spec.height, spec.fps)
        await run_ffmpeg(
            [
                "-loop", "1",
                "-i", str(scene.image_path),
                "-t", f"{scene.duration_sec:.3f}",
                "-vf", vf,
                "-r", str(spec.fps),
                "-c:v", "libx264",
                "-pix_fmt", "yuv420p",
                "-threads", "1",
                *BITEXACT_FLAGS,
                str(output),
            ],
            binary=self._ffmpeg, timeout=self._timeout,
        )

    async def _concat_segments(self, segments: List[Path], output: Path) -> None:
        list_file = output.parent / "concat_list.txt"
        list_file.write_text("".join(f"file '{p.resolve()}'\n" for p in segments))
        # -safe 0: allow absolute paths in the list file
        await run_ffmpeg(
            ["-f", "concat", "-safe", "0", "-i", str(list_file), "-c", "copy", str(output)],
            binary=self._ffmpeg, timeout=self._timeout,
        )

    def _composite_args(self, raw_video: Path, spec: RenderSpec, output: Path) -> List[str]:
        inputs = ["-i", str(raw_video)]
        for scene in spec.scenes:
            inputs.extend(["-i", str(scene.audio_path)])

        n = len(spec.scenes)
        voice_inputs = "".join(f"[{i}:a]" for i in range(1, n + 1))
        filters = [f"{voice_inputs}concat=n={n}:v=0:a=1[vo]"]

        if spec.music_path is not None:
            inputs.extend(["-i", str(spec.music_path)])
            filters.append(
                f"[{n + 1}:a]volume={spec.music_volume},atrim=0:{spec.total_duration_sec:.3f}[bg]"
            )
            filters.append("[vo][bg]amix=inputs=2:duration=first:dropout_transition=2[aout]")
        else:
            filters.append("[vo]anull[aout]")

        if spec.captions_path is not None:
            filters.append(f"[0:v]subtitles='{escape_filter_path(spec.captions_path)}'[vout]")
        else:
            filters.append("[0:v]null[vout]")

        return [
            *inputs,
            "-filter_complex", ";".join(filters),
            "-map", "[vout]",
            "-map", "[aout]",
            "-c:v", "libx264",
            "-crf", "20",
            "-preset", "fast",
            "-pix_fmt", "yuv420p",
            "-threads", "1",
            "-c:a", "aac",
            "-b:a", "192k",
            "-shortest",
            *BITEXACT_FLAGS,
            str(output),
        ]

    async def encode(self, spec: RenderSpec, output_path: Path) -> EncodeResult:
        if not spec.scenes:
            raise PermanentAdapterError("Render spec has no scenes", capability="encode")

        output_path = Path(output_path)
        with tempfile.TemporaryDirectory(dir=output_path.parent, prefix="encode-") as work:
            work_dir = Path(work)
            segments = []
            for scene in spec.scenes:
                segment = work_dir / f"scene_{scene.scene_idx:02d}.mp4"
                logger.debug(f"Rendering segment for scene {scene.scene_idx + 1}/{len(spec.scenes)}")
                await self._render_segment(scene, spec, segment)
                segments.append(segment)

            raw_video = work_dir / "raw.mp4"
            await self._concat_segments(segments, raw_video)
            await run_ffmpeg(
                self._composite_args(raw_video, spec, output_path),
                binary=self._ffmpeg, timeout=self._timeout,
            )

        duration = await probe_duration(output_path, self._ffprobe)
        return EncodeResult(duration_sec=duration)

    async def thumbnail(self, video_path: Path, offset_sec: float, output_path: Path) -> None:
        width, height = 540, 960
        await run_ffmpeg(
            ["-ss", f"{offset_sec:.3f}", "-i", str(video_path),
             "-frames:v", "1", "-vf", f"scale={width}:{height}", str(output_path)],
            binary=self._ffmpeg, timeout=self._timeout, capability="thumbnail",
        )

    async def inspect(self, video_path: Path, min_silence_sec: float) -> MediaInfo:
        stdout, _ = await run_process(
            [self._ffprobe, "-v", "quiet",
             "-select_streams", "v:0",
             "-show_entries", "stream=width,height:format=duration",
             "-of", "json", str(video_path)],
            60.0, "qa",
        )
        try:
            metadata = json.loads(stdout)
            duration = float(metadata["format"]["duration"])
        except (ValueError, KeyError, TypeError) as e:
            raise PermanentAdapterError(f"Could not read metadata of {video_path}", capability="qa") from e
        stream = (metadata.get("streams") or [{}])[0]

        # silencedetect reports at info level, so the default log level is kept
        _, stderr = await run_process(
            [self._ffmpeg, "-hide_banner", "-nostats", "-i", str(video_path),
             "-af", f"silencedetect=n={SILENCE_NOISE}:d={min_silence_sec}",
             "-f", "null", "-"],
            self._timeout, "qa",
        )
        return MediaInfo(
            width=stream.get("width"),
            height=stream.get("height"),
            duration_sec=duration,
            silences_sec=parse_silences(stderr.decode(errors="replace"), duration),
        )
