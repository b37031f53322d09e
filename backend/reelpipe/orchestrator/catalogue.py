"""Static step catalogue.

A plan version with N scenes renders through 2N + 5 steps:

    tts_generate[scene=1..N]      narration clip per scene
    asr_align                     word timings for every clip, scene offsets
    images_generate[scene=1..N]   one image per scene
    captions_build                ASS subtitle track
    music_build                   background bed
    ffmpeg_render                 final video
    finalize_artifacts            thumbnail + export record

Each entry declares the scenes and artifact roles it consumes and the roles
it produces. Adding a step means adding a StepKind, a catalogue entry and a
handler in reelpipe.orchestrator.steps.
"""

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Sequence, Tuple


class StepKind(str, Enum):
    TTS = "tts"
    ASR = "asr"
    IMAGE = "image"
    CAPTIONS = "captions"
    MUSIC = "music"
    ENCODE = "encode"
    FINALIZE = "finalize"


# Artifact roles produced by the whole-plan steps
TIMINGS_ROLE = "timings"
CAPTIONS_ROLE = "captions"
MUSIC_ROLE = "music"
VIDEO_ROLE = "final-video"
THUMBNAIL_ROLE = "thumbnail"
EXPORT_ROLE = "export"


def audio_role(scene_idx: int) -> str:
    return f"scene-{scene_idx + 1}-audio"


def image_role(scene_idx: int) -> str:
    return f"scene-{scene_idx + 1}-image"


class SceneRef(Protocol):
    id: uuid.UUID
    idx: int


@dataclass(frozen=True)
class StepDefinition:
    """One catalogue entry bound to a concrete plan version."""

    name: str
    kind: StepKind
    scene_id: Optional[uuid.UUID] = None
    scene_idx: Optional[int] = None
    scene_ids: Tuple[uuid.UUID, ...] = ()
    inputs: Tuple[str, ...] = ()
    outputs: Tuple[str, ...] = ()

    def input_refs(self) -> dict:
        return {
            "scenes": [str(s) for s in self.scene_ids],
            "artifacts": list(self.inputs),
            "outputs": list(self.outputs),
        }


def build_step_plan(scenes: Sequence[SceneRef]) -> List[StepDefinition]:
    """Turn the ordered scenes of a plan version into the concrete step list."""
    ordered = sorted(scenes, key=lambda s: s.idx)
    if not ordered:
        raise ValueError("A plan version needs at least one scene to render")

    all_ids = tuple(s.id for s in ordered)
    audio_roles = tuple(audio_role(s.idx) for s in ordered)
    image_roles = tuple(image_role(s.idx) for s in ordered)

    steps: List[StepDefinition] = [
        StepDefinition(
            name=f"tts_generate[scene={s.idx + 1}]",
            kind=StepKind.TTS,
            scene_id=s.id,
            scene_idx=s.idx,
            scene_ids=(s.id,),
            outputs=(audio_role(s.idx),),
        )
        for s in ordered
    ]
    steps.append(StepDefinition(
        name="asr_align",
        kind=StepKind.ASR,
        scene_ids=all_ids,
        inputs=audio_roles,
        outputs=(TIMINGS_ROLE,),
    ))
    steps.extend(
        StepDefinition(
            name=f"images_generate[scene={s.idx + 1}]",
            kind=StepKind.IMAGE,
            scene_id=s.id,
            scene_idx=s.idx,
            scene_ids=(s.id,),
            outputs=(image_role(s.idx),),
        )
        for s in ordered
    )
    steps.extend([
        StepDefinition(
            name="captions_build",
            kind=StepKind.CAPTIONS,
            inputs=(TIMINGS_ROLE,),
            outputs=(CAPTIONS_ROLE,),
        ),
        StepDefinition(
            name="music_build",
            kind=StepKind.MUSIC,
            inputs=(TIMINGS_ROLE,),
            outputs=(MUSIC_ROLE,),
        ),
        StepDefinition(
            name="ffmpeg_render",
            kind=StepKind.ENCODE,
            scene_ids=all_ids,
            inputs=(TIMINGS_ROLE, *audio_roles, *image_roles, CAPTIONS_ROLE, MUSIC_ROLE),
            outputs=(VIDEO_ROLE,),
        ),
        StepDefinition(
            name="finalize_artifacts",
            kind=StepKind.FINALIZE,
            inputs=(TIMINGS_ROLE, VIDEO_ROLE),
            outputs=(THUMBNAIL_ROLE, EXPORT_ROLE),
        ),
    ])
    return steps
