"""Step handlers, one per StepKind.

A handler receives a StepContext, calls its capability adapter(s), writes
outputs to staging paths obtained from ctx.stage() and records derived scene
fields in ctx.scene_writes. It never touches the database; the executor
publishes the staged files and commits everything in one transaction.
"""

import asyncio
import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from reelpipe.capabilities.base import AdapterSet
from reelpipe.db.models import Artifact, utcnow
from reelpipe.errors import ConsistencyError, PermanentAdapterError
from reelpipe.orchestrator.catalogue import (
    CAPTIONS_ROLE,
    EXPORT_ROLE,
    MUSIC_ROLE,
    THUMBNAIL_ROLE,
    TIMINGS_ROLE,
    VIDEO_ROLE,
    StepKind,
    audio_role,
    image_role,
)
from reelpipe.schemas.render import (
    CaptionStyle,
    MoodConfig,
    QaLimits,
    QaReport,
    RenderScene,
    RenderSpec,
    SceneTiming,
    StyleConfig,
    Timeline,
    VoiceConfig,
)
from reelpipe.services.artifact_store import ArtifactStore, sha256_file
from reelpipe.services.qa_validator import evaluate_video

logger = logging.getLogger(__name__)


@dataclass
class StagedOutput:
    role: str
    kind: str
    path: Path


@dataclass
class StepContext:
    """Everything one attempt of one step may read, plus what it produced."""

    run_id: uuid.UUID
    plan_version_id: uuid.UUID
    step_name: str
    kind: StepKind
    scene_idx: Optional[int]
    scenes: List[dict]
    settings: dict
    inputs: Dict[str, Artifact]
    store: ArtifactStore
    adapters: AdapterSet
    artifacts: List[Artifact] = field(default_factory=list)
    revisions: Dict[str, int] = field(default_factory=dict)
    staged: List[StagedOutput] = field(default_factory=list)
    scene_writes: Dict[str, dict] = field(default_factory=dict)

    @property
    def scene(self) -> dict:
        for scene in self.scenes:
            if scene["idx"] == self.scene_idx:
                return scene
        raise ConsistencyError(f"{self.step_name}: scene {self.scene_idx} missing from run snapshot")

    def input_path(self, role: str) -> Path:
        artifact = self.inputs.get(role)
        if artifact is None:
            raise ConsistencyError(f"{self.step_name}: input artifact '{role}' has not been produced")
        return self.store.resolve(artifact.path)

    def stage(self, role: str, kind: str, suffix: str) -> Path:
        path = self.store.stage(self.run_id, role, suffix)
        self.staged.append(StagedOutput(role=role, kind=kind, path=path))
        return path

    def discard_staged(self) -> None:
        for output in self.staged:
            self.store.discard(output.path)
        self.staged.clear()

    def next_revision(self, role: str) -> int:
        """Revision the repository will assign when this step's output is recorded."""
        if role not in self.revisions:
            raise ConsistencyError(f"{self.step_name}: '{role}' is not a declared output")
        return self.revisions[role]

    async def read_timeline(self) -> Timeline:
        data = await asyncio.to_thread(self.input_path(TIMINGS_ROLE).read_text, "utf-8")
        return Timeline.model_validate_json(data)


def compute_fingerprint(kind: str, scene_idx: Optional[int], payload: dict, input_checksums: Dict[str, str]) -> str:
    """sha256 over the step kind, scene index, relevant settings and input checksums."""
    document = json.dumps(
        {"kind": kind, "scene_idx": scene_idx, "payload": payload, "inputs": input_checksums},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(document.encode("utf-8")).hexdigest()


def build_image_prompt(scene: dict, settings: dict) -> str:
    """Niche style + plan style + scene prompt (falling back to the narration)."""
    parts = [
        settings.get("style_bible_prompt"),
        settings.get("style_prompt"),
        scene.get("image_prompt") or scene.get("narration_text"),
    ]
    return ". ".join(p.strip().rstrip(".") for p in parts if p and p.strip())


def timeline_scene_writes(timeline: Timeline, scenes: List[dict]) -> Dict[str, dict]:
    """Derived timing fields per scene id."""
    ids = {s["idx"]: s["id"] for s in scenes}
    return {
        ids[t.scene_idx]: {
            "audio_duration_sec": round(t.duration_sec, 3),
            "start_time_sec": t.start_sec,
            "end_time_sec": t.end_sec,
        }
        for t in timeline.scenes
        if t.scene_idx in ids
    }


# Handlers

async def generate_speech(ctx: StepContext) -> None:
    scene = ctx.scene
    voice = VoiceConfig(voice=ctx.settings["voice"])
    path = ctx.stage(audio_role(scene["idx"]), "audio", ".mp3")
    result = await ctx.adapters.speech.synthesize(scene["narration_text"], voice, path)
    logger.info(f"Run {ctx.run_id}: narration for scene {scene['idx'] + 1} is {result.duration_sec:.2f}s")


async def align_transcripts(ctx: StepContext) -> None:
    timings: List[SceneTiming] = []
    cursor = 0.0
    for scene in ctx.scenes:
        audio = ctx.input_path(audio_role(scene["idx"]))
        data = await ctx.adapters.aligner.align(audio, scene["narration_text"])
        duration = data.duration_sec or (data.words[-1].end if data.words else 0.0)
        if duration <= 0:
            duration = scene["duration_target_sec"]
        start, end = round(cursor, 3), round(cursor + duration, 3)
        timings.append(SceneTiming(
            scene_idx=scene["idx"],
            narration_text=scene["narration_text"],
            start_sec=start,
            end_sec=end,
            words=data.words,
        ))
        cursor = end

    timeline = Timeline(scenes=timings, total_duration_sec=round(cursor, 3))
    path = ctx.stage(TIMINGS_ROLE, "timing", ".json")
    await asyncio.to_thread(path.write_text, timeline.model_dump_json(indent=2), "utf-8")
    ctx.scene_writes.update(timeline_scene_writes(timeline, ctx.scenes))
    logger.info(f"Run {ctx.run_id}: aligned {len(timings)} scenes, {timeline.total_duration_sec:.2f}s total")


async def restore_alignment(ctx: StepContext, files: Dict[str, Path]) -> None:
    data = await asyncio.to_thread(files[TIMINGS_ROLE].read_text, "utf-8")
    ctx.scene_writes.update(timeline_scene_writes(Timeline.model_validate_json(data), ctx.scenes))


async def generate_image(ctx: StepContext) -> None:
    scene = ctx.scene
    style = StyleConfig(
        size=ctx.settings["image_size"],
        negative_prompt=scene.get("negative_prompt") or ctx.settings.get("niche_negative_prompt", ""),
    )
    path = ctx.stage(image_role(scene["idx"]), "image", ".png")
    await ctx.adapters.images.generate(build_image_prompt(scene, ctx.settings), style, path)


async def build_captions(ctx: StepContext) -> None:
    timeline = await ctx.read_timeline()
    style = CaptionStyle(**ctx.settings["caption_style"])
    path = ctx.stage(CAPTIONS_ROLE, "subtitles", ".ass")
    result = await ctx.adapters.captions.build(timeline.scenes, style, path)
    logger.info(f"Run {ctx.run_id}: {result.event_count} caption events")


async def build_music(ctx: StepContext) -> None:
    timeline = await ctx.read_timeline()
    mood = MoodConfig(mood=ctx.settings.get("music_mood"), volume=ctx.settings["music_volume"])
    path = ctx.stage(MUSIC_ROLE, "music", ".m4a")
    result = await ctx.adapters.music.build(timeline.total_duration_sec, mood, path)
    logger.info(f"Run {ctx.run_id}: music bed from {result.source or 'silence'}")


def build_render_spec(ctx: StepContext, timeline: Timeline) -> RenderSpec:
    effects = {s["idx"]: s["effect_preset"] for s in ctx.scenes}
    return RenderSpec(
        scenes=[
            RenderScene(
                scene_idx=t.scene_idx,
                image_path=ctx.input_path(image_role(t.scene_idx)),
                audio_path=ctx.input_path(audio_role(t.scene_idx)),
                start_sec=t.start_sec,
                duration_sec=round(t.duration_sec, 3),
                effect_preset=effects.get(t.scene_idx, "static"),
            )
            for t in sorted(timeline.scenes, key=lambda t: t.scene_idx)
        ],
        captions_path=ctx.input_path(CAPTIONS_ROLE),
        music_path=ctx.input_path(MUSIC_ROLE),
        music_volume=ctx.settings["music_volume"],
        width=ctx.settings["width"],
        height=ctx.settings["height"],
        fps=ctx.settings["fps"],
    )


async def render_video(ctx: StepContext) -> None:
    spec = build_render_spec(ctx, await ctx.read_timeline())
    path = ctx.stage(VIDEO_ROLE, "video", ".mp4")
    result = await ctx.adapters.encoder.encode(spec, path)
    logger.info(f"Run {ctx.run_id}: encoded {len(spec.scenes)} scenes, {result.duration_sec:.2f}s")


def _artifact_entry(role: str, kind: str, revision: int, path: str, size: int, checksum: str, step: str) -> dict:
    return {
        "role": role,
        "kind": kind,
        "revision": revision,
        "path": path,
        "size_bytes": size,
        "checksum": checksum,
        "producing_step": step,
    }


async def check_video(ctx: StepContext, limits: QaLimits) -> QaReport:
    """Inspect the final video and fail the step if it breaks a platform limit."""
    video = ctx.inputs[VIDEO_ROLE]
    info = await ctx.adapters.encoder.inspect(ctx.input_path(VIDEO_ROLE), limits.max_silence_sec)
    report = evaluate_video(info, video.size_bytes, limits)
    if not report.passed:
        raise PermanentAdapterError(f"Final video failed QA: {'; '.join(report.details)}", capability="qa")
    return report


async def finalize_artifacts(ctx: StepContext) -> None:
    """Thumbnail plus the export record listing every artifact of the run."""
    timeline = await ctx.read_timeline()
    qa = ctx.settings.get("qa")
    report = await check_video(ctx, QaLimits(**qa)) if qa else None

    thumb = ctx.stage(THUMBNAIL_ROLE, "thumbnail", ".jpg")
    await ctx.adapters.encoder.thumbnail(ctx.input_path(VIDEO_ROLE), ctx.settings["thumbnail_offset_sec"], thumb)

    thumb_checksum = await asyncio.to_thread(sha256_file, thumb)
    entries = [
        _artifact_entry(a.role, a.kind, a.revision, a.path, a.size_bytes, a.checksum, a.producing_step)
        for a in sorted(ctx.artifacts, key=lambda a: (a.created_at, a.role, a.revision))
    ]
    entries.append(_artifact_entry(
        THUMBNAIL_ROLE,
        "thumbnail",
        ctx.next_revision(THUMBNAIL_ROLE),
        ctx.store.published_path(ctx.run_id, THUMBNAIL_ROLE, "thumbnail", thumb_checksum, thumb.suffix),
        thumb.stat().st_size,
        thumb_checksum,
        ctx.step_name,
    ))

    timing_by_idx = {t.scene_idx: t for t in timeline.scenes}
    record = {
        "project": ctx.settings.get("project", {}),
        "plan": {
            "plan_version_id": str(ctx.plan_version_id),
            "niche_pack_id": ctx.settings.get("niche_pack_id"),
            "hook": ctx.settings.get("hook", ""),
            "scenes": [
                {
                    "idx": s["idx"],
                    "narration_text": s["narration_text"],
                    "on_screen_text": s["on_screen_text"],
                    "effect_preset": s["effect_preset"],
                    "start_time_sec": timing_by_idx[s["idx"]].start_sec if s["idx"] in timing_by_idx else None,
                    "end_time_sec": timing_by_idx[s["idx"]].end_sec if s["idx"] in timing_by_idx else None,
                }
                for s in ctx.scenes
            ],
        },
        "render": {
            "run_id": str(ctx.run_id),
            "completed_at": utcnow().isoformat(),
            "dry_run": ctx.settings.get("dry_run", False),
            "duration_sec": timeline.total_duration_sec,
            "width": ctx.settings["width"],
            "height": ctx.settings["height"],
            "fps": ctx.settings["fps"],
        },
        "qa": report.model_dump() if report else None,
        "artifacts": entries,
    }
    path = ctx.stage(EXPORT_ROLE, "export", ".json")
    await asyncio.to_thread(path.write_text, json.dumps(record, indent=2), "utf-8")


# Fingerprint payloads: the settings and scene fields that determine each step's output.
# Inputs' checksums are added by the executor. None means the step is never reused.

def _tts_payload(ctx: StepContext) -> Optional[dict]:
    return {"text": ctx.scene["narration_text"], "voice": ctx.settings["voice"], "dry_run": ctx.settings.get("dry_run")}


def _asr_payload(ctx: StepContext) -> Optional[dict]:
    return {"texts": [s["narration_text"] for s in ctx.scenes], "dry_run": ctx.settings.get("dry_run")}


def _image_payload(ctx: StepContext) -> Optional[dict]:
    scene = ctx.scene
    return {
        "prompt": build_image_prompt(scene, ctx.settings),
        "negative_prompt": scene.get("negative_prompt") or ctx.settings.get("niche_negative_prompt", ""),
        "size": ctx.settings["image_size"],
        "dry_run": ctx.settings.get("dry_run"),
    }


def _captions_payload(ctx: StepContext) -> Optional[dict]:
    return {"style": ctx.settings["caption_style"], "width": ctx.settings["width"], "height": ctx.settings["height"]}


def _music_payload(ctx: StepContext) -> Optional[dict]:
    return {"mood": ctx.settings.get("music_mood"), "dry_run": ctx.settings.get("dry_run")}


def _encode_payload(ctx: StepContext) -> Optional[dict]:
    return {
        "effects": [[s["idx"], s["effect_preset"]] for s in ctx.scenes],
        "width": ctx.settings["width"],
        "height": ctx.settings["height"],
        "fps": ctx.settings["fps"],
        "music_volume": ctx.settings["music_volume"],
        "dry_run": ctx.settings.get("dry_run"),
    }


def _never_reused(ctx: StepContext) -> Optional[dict]:
    return None


@dataclass(frozen=True)
class StepHandler:
    run: Callable[[StepContext], Awaitable[None]]
    fingerprint: Callable[[StepContext], Optional[dict]]
    restore: Optional[Callable[[StepContext, Dict[str, Path]], Awaitable[None]]] = None
    long_running: bool = False


HANDLERS: Dict[StepKind, StepHandler] = {
    StepKind.TTS: StepHandler(generate_speech, _tts_payload),
    StepKind.ASR: StepHandler(align_transcripts, _asr_payload, restore=restore_alignment),
    StepKind.IMAGE: StepHandler(generate_image, _image_payload),
    StepKind.CAPTIONS: StepHandler(build_captions, _captions_payload),
    StepKind.MUSIC: StepHandler(build_music, _music_payload),
    StepKind.ENCODE: StepHandler(render_video, _encode_payload, long_running=True),
    StepKind.FINALIZE: StepHandler(finalize_artifacts, _never_reused),
}


def get_handler(kind: str) -> StepHandler:
    try:
        return HANDLERS[StepKind(kind)]
    except (ValueError, KeyError) as e:
        raise ConsistencyError(f"No handler registered for step kind '{kind}'") from e
