"""Pydantic schemas for plan import, scene patches and run status views."""

import uuid
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

EffectPreset = Literal[
    "slow_zoom_in",
    "slow_zoom_out",
    "pan_left",
    "pan_right",
    "tilt_up",
    "tilt_down",
    "fade",
    "static",
]

# Scene fields a user may edit
CONTENT_FIELDS = frozenset({
    "narration_text",
    "on_screen_text",
    "image_prompt",
    "negative_prompt",
    "effect_preset",
    "duration_target_sec",
})

# Scene fields only the pipeline may write
DERIVED_FIELDS = frozenset({
    "start_time_sec",
    "end_time_sec",
    "audio_duration_sec",
})

# Scene fields a patch may set to null
NULLABLE_FIELDS = DERIVED_FIELDS | {"image_prompt"}


class SceneInput(BaseModel):
    """One scene of an imported plan."""

    narration_text: str
    on_screen_text: str = ""
    image_prompt: Optional[str] = None
    negative_prompt: str = ""
    effect_preset: EffectPreset = "slow_zoom_in"
    duration_target_sec: float = Field(default=5.0, gt=0)


class PlanInput(BaseModel):
    """A plan file as produced by plan generation (external)."""

    project_title: str
    topic: str = ""
    niche_pack_id: str = "facts"
    language: str = "en"
    target_duration_sec: int = 60
    voice: Optional[str] = None
    style_prompt: str = ""
    music_mood: Optional[str] = None
    hook: str = ""
    outline: str = ""
    scenes: List[SceneInput] = Field(min_length=1)


class ScenePatch(BaseModel):
    """Partial update of a scene, always addressed by (plan version, scene).

    Unset fields are left untouched.
    """

    model_config = ConfigDict(extra="forbid")

    scene_id: uuid.UUID
    narration_text: Optional[str] = None
    on_screen_text: Optional[str] = None
    image_prompt: Optional[str] = None
    negative_prompt: Optional[str] = None
    effect_preset: Optional[EffectPreset] = None
    duration_target_sec: Optional[float] = Field(default=None, gt=0)
    locked: Optional[bool] = None
    start_time_sec: Optional[float] = None
    end_time_sec: Optional[float] = None
    audio_duration_sec: Optional[float] = None

    def changes(self) -> dict:
        """Fields explicitly set on this patch, excluding the scene id."""
        data = self.model_dump(exclude_unset=True)
        data.pop("scene_id", None)
        return data


class StepErrorInfo(BaseModel):
    """Classified failure persisted on a step and on its failed run."""

    step: str
    kind: str
    message: str
    attempts: int


class StepView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order_index: int
    name: str
    kind: str
    status: str
    attempts: int
    last_error: Optional[dict] = None
    output_refs: List[str] = Field(default_factory=list)


class RunStatusView(BaseModel):
    """Snapshot returned by get_run_status."""

    run_id: uuid.UUID
    plan_version_id: uuid.UUID
    status: str
    cancel_requested: bool
    error: Optional[StepErrorInfo] = None
    steps: List[StepView]
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def current_step(self) -> Optional[StepView]:
        for step in self.steps:
            if step.status in ("running", "pending", "failed"):
                return step
        return None


class ArtifactView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    role: str
    kind: str
    revision: int
    path: str
    size_bytes: int
    checksum: str
    producing_step: str
    reused_from_id: Optional[uuid.UUID] = None
