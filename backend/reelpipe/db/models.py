"""SQLAlchemy 2.0 ORM models for the render orchestrator."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import String, Text, JSON, Integer, Float, Boolean, ForeignKey, Index, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Project(Base):
    """Named unit of work; top-level owner of plan versions.

    Never mutated by the pipeline. Deleting a project cascades to its
    plan versions, their scenes and runs.
    """
    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(200))
    topic: Mapped[str] = mapped_column(Text, default="")
    niche_pack_id: Mapped[str] = mapped_column(String(50), default="facts")
    language: Mapped[str] = mapped_column(String(10), default="en")
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class PlanVersion(Base):
    """Versioned script for one video: ordered scenes plus global render settings.

    status: 'draft' -> 'approved' (user gated) -> 'locked' (while a run is
    active) -> 'approved' (when that run ends). active_run_id is set exactly
    while the version is locked.
    """
    __tablename__ = "plan_versions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    status: Mapped[str] = mapped_column(String(20), default="draft")
    niche_pack_id: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    target_duration_sec: Mapped[int] = mapped_column(Integer, default=60)
    voice: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    style_prompt: Mapped[str] = mapped_column(Text, default="")
    music_mood: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    hook: Mapped[str] = mapped_column(Text, default="")
    outline: Mapped[str] = mapped_column(Text, default="")
    active_run_id: Mapped[Optional[uuid.UUID]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class Scene(Base):
    """One narrative beat belonging to exactly one plan version.

    start_time_sec / end_time_sec / audio_duration_sec are derived fields
    written by the pipeline; everything else is user content.
    """
    __tablename__ = "scenes"
    __table_args__ = (
        UniqueConstraint("plan_version_id", "idx", name="uq_scenes_plan_idx"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    plan_version_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("plan_versions.id", ondelete="CASCADE"), index=True
    )
    idx: Mapped[int] = mapped_column(Integer)
    narration_text: Mapped[str] = mapped_column(Text, default="")
    on_screen_text: Mapped[str] = mapped_column(Text, default="")
    image_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    negative_prompt: Mapped[str] = mapped_column(Text, default="")
    effect_preset: Mapped[str] = mapped_column(String(30), default="slow_zoom_in")
    duration_target_sec: Mapped[float] = mapped_column(Float, default=5.0)
    locked: Mapped[bool] = mapped_column(Boolean, default=False)

    # Derived by the pipeline (asr_align)
    start_time_sec: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    end_time_sec: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    audio_duration_sec: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class Run(Base):
    """One execution attempt of the pipeline against a plan version snapshot."""
    __tablename__ = "runs"
    __table_args__ = (
        Index("idx_runs_plan_status", "plan_version_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), index=True
    )
    plan_version_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("plan_versions.id", ondelete="CASCADE")
    )
    status: Mapped[str] = mapped_column(String(20), default="pending")
    cancel_requested: Mapped[bool] = mapped_column(Boolean, default=False)
    scene_snapshot: Mapped[list] = mapped_column(JSON, default=list)
    settings_snapshot: Mapped[dict] = mapped_column(JSON, default=dict)
    artifact_root: Mapped[str] = mapped_column(String(500))
    error: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)


class Step(Base):
    """One named stage of a run; created with the run, mutated only by the executor."""
    __tablename__ = "steps"
    __table_args__ = (
        UniqueConstraint("run_id", "order_index", name="uq_steps_run_order"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    run_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("runs.id", ondelete="CASCADE"), index=True
    )
    order_index: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(100))
    kind: Mapped[str] = mapped_column(String(20))
    scene_id: Mapped[Optional[uuid.UUID]] = mapped_column(nullable=True)
    scene_idx: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    input_refs: Mapped[dict] = mapped_column(JSON, default=dict)
    output_refs: Mapped[list] = mapped_column(JSON, default=list)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class Artifact(Base):
    """Immutable, checksum-verified output file produced by a step.

    A retried step produces a new revision row instead of mutating an
    existing one.
    """
    __tablename__ = "artifacts"
    __table_args__ = (
        UniqueConstraint("run_id", "role", "revision", name="uq_artifacts_role_revision"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    run_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("runs.id", ondelete="CASCADE"), index=True
    )
    step_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("steps.id", ondelete="CASCADE"))
    role: Mapped[str] = mapped_column(String(100))
    kind: Mapped[str] = mapped_column(String(20))
    revision: Mapped[int] = mapped_column(Integer, default=1)
    path: Mapped[str] = mapped_column(String(500))
    size_bytes: Mapped[int] = mapped_column(Integer)
    checksum: Mapped[str] = mapped_column(String(64))
    producing_step: Mapped[str] = mapped_column(String(100))
    reused_from_id: Mapped[Optional[uuid.UUID]] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
