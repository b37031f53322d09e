"""Ownership-checked access to projects, plan versions, scenes, runs, steps and artifacts.

The repository never commits; callers own the transaction so that a step's
artifact rows and its status change land together.
"""

import logging
import uuid
from datetime import datetime
from typing import Dict, Iterable, List, Literal, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.db.models import Artifact, PlanVersion, Project, Run, Scene, Step, utcnow
from reelpipe.errors import (
    AlreadyLockedError,
    AlreadyTerminalError,
    ConsistencyError,
    NotFoundError,
    OwnershipError,
    PlanLockedError,
    PlanValidationError,
    SceneLockedError,
)
from reelpipe.orchestrator.catalogue import build_step_plan
from reelpipe.orchestrator.state import (
    ACTIVE_RUN_STATES,
    TERMINAL_RUN_STATES,
    can_transition_run,
    can_transition_step,
)
from reelpipe.schemas.plan import CONTENT_FIELDS, DERIVED_FIELDS, NULLABLE_FIELDS, SceneInput, ScenePatch
from reelpipe.services.artifact_store import StoredFile

logger = logging.getLogger(__name__)

Actor = Literal["user", "pipeline"]


def scene_snapshot(scene: Scene) -> dict:
    """JSON-safe copy of a scene's content as it was when a run was created."""
    return {
        "id": str(scene.id),
        "idx": scene.idx,
        "narration_text": scene.narration_text,
        "on_screen_text": scene.on_screen_text,
        "image_prompt": scene.image_prompt,
        "negative_prompt": scene.negative_prompt,
        "effect_preset": scene.effect_preset,
        "duration_target_sec": scene.duration_target_sec,
        "locked": scene.locked,
    }


class PlanRepository:
    """Repository over one AsyncSession."""

    def __init__(self, session: AsyncSession):
        self.session = session

    # Projects and plan versions

    async def get_project(self, project_id: uuid.UUID) -> Project:
        project = await self.session.get(Project, project_id)
        if project is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return project

    async def create_project(
        self, title: str, topic: str = "", niche_pack_id: str = "facts", language: str = "en"
    ) -> Project:
        project = Project(title=title, topic=topic, niche_pack_id=niche_pack_id, language=language)
        self.session.add(project)
        await self.session.flush()
        return project

    async def create_plan_version(
        self, project_id: uuid.UUID, scenes: Sequence[SceneInput], **fields
    ) -> PlanVersion:
        """Create a draft plan version with its ordered scenes."""
        await self.get_project(project_id)
        if not scenes:
            raise PlanValidationError("A plan version needs at least one scene")

        plan = PlanVersion(project_id=project_id, status="draft", **fields)
        self.session.add(plan)
        await self.session.flush()

        for idx, scene in enumerate(scenes):
            self.session.add(Scene(plan_version_id=plan.id, idx=idx, **scene.model_dump()))
        await self.session.flush()
        logger.info(f"Created plan version {plan.id} with {len(scenes)} scenes")
        return plan

    async def get_plan_version(self, plan_version_id: uuid.UUID) -> PlanVersion:
        plan = await self.session.get(PlanVersion, plan_version_id)
        if plan is None:
            raise NotFoundError(f"Plan version not found: {plan_version_id}")
        return plan

    async def list_scenes(self, plan_version_id: uuid.UUID) -> List[Scene]:
        result = await self.session.execute(
            select(Scene).where(Scene.plan_version_id == plan_version_id).order_by(Scene.idx)
        )
        return list(result.scalars().all())

    async def approve_plan_version(self, plan_version_id: uuid.UUID) -> PlanVersion:
        """Validate and approve a draft plan version. Approving twice is a no-op."""
        plan = await self.get_plan_version(plan_version_id)
        if plan.status == "approved":
            return plan
        if plan.status == "locked":
            raise PlanLockedError(f"Plan version {plan.id} is locked by run {plan.active_run_id}")

        scenes = await self.list_scenes(plan.id)
        if not scenes:
            raise PlanValidationError(f"Plan version {plan.id} has no scenes")
        empty = [s.idx + 1 for s in scenes if not s.narration_text.strip()]
        if empty:
            raise PlanValidationError(
                f"Plan version {plan.id}: scenes without narration: {', '.join(map(str, empty))}"
            )

        plan.status = "approved"
        await self.session.flush()
        logger.info(f"Approved plan version {plan.id}")
        return plan

    # Scene writes

    async def _check_patch(
        self, plan: PlanVersion, patch: ScenePatch, actor: Actor, run_id: Optional[uuid.UUID]
    ) -> Tuple[Scene, dict]:
        scene = await self.session.get(Scene, patch.scene_id)
        if scene is None or scene.plan_version_id != plan.id:
            raise OwnershipError(
                f"Scene {patch.scene_id} does not belong to plan version {plan.id}"
            )

        changes = patch.changes()
        cleared = sorted(name for name, value in changes.items() if value is None and name not in NULLABLE_FIELDS)
        if cleared:
            raise PlanValidationError(f"Scene {scene.idx + 1}: {', '.join(cleared)} cannot be null")
        if actor == "user":
            if plan.status == "locked":
                raise PlanLockedError(f"Plan version {plan.id} is locked by run {plan.active_run_id}")
            if plan.status != "draft":
                raise PlanValidationError(f"Plan version {plan.id} is {plan.status}; only drafts are editable")
            if set(changes) & DERIVED_FIELDS:
                raise PlanValidationError("Timing fields are written by the pipeline only")
            if scene.locked and set(changes) & CONTENT_FIELDS:
                raise SceneLockedError(f"Scene {scene.idx + 1} is locked; unlock it before editing")
        else:
            if set(changes) - DERIVED_FIELDS:
                raise PlanValidationError(
                    f"Pipeline may only write {', '.join(sorted(DERIVED_FIELDS))}"
                )
            if plan.status == "locked" and plan.active_run_id != run_id:
                raise PlanLockedError(
                    f"Plan version {plan.id} is locked by run {plan.active_run_id}, not {run_id}"
                )
        return scene, changes

    async def update_scene(
        self,
        plan_version_id: uuid.UUID,
        patch: ScenePatch,
        *,
        actor: Actor = "user",
        run_id: Optional[uuid.UUID] = None,
    ) -> Scene:
        """Apply one scene patch addressed by (plan version, scene)."""
        scenes = await self.update_plan_scenes(plan_version_id, [patch], actor=actor, run_id=run_id)
        return scenes[0]

    async def update_plan_scenes(
        self,
        plan_version_id: uuid.UUID,
        patches: Iterable[ScenePatch],
        *,
        actor: Actor = "user",
        run_id: Optional[uuid.UUID] = None,
    ) -> List[Scene]:
        """Apply several patches; all are validated before any is applied."""
        plan = await self.get_plan_version(plan_version_id)
        checked = [await self._check_patch(plan, p, actor, run_id) for p in patches]

        for scene, changes in checked:
            for field_name, value in changes.items():
                setattr(scene, field_name, value)
        await self.session.flush()
        return [scene for scene, _ in checked]

    # Runs

    async def create_run(
        self,
        plan_version_id: uuid.UUID,
        *,
        settings_snapshot: dict,
        artifact_root: str,
        run_id: Optional[uuid.UUID] = None,
    ) -> Run:
        """Lock the plan version and insert the run with its steps.

        The compare-and-set UPDATE is the first statement of the transaction
        so concurrent callers queue on the SQLite write lock instead of racing
        on a stale read.
        """
        run_id = run_id or uuid.uuid4()
        result = await self.session.execute(
            update(PlanVersion)
            .where(PlanVersion.id == plan_version_id, PlanVersion.status == "approved")
            .values(status="locked", active_run_id=run_id)
            .execution_options(synchronize_session=False)
        )
        plan = await self.get_plan_version(plan_version_id)
        await self.session.refresh(plan)
        if result.rowcount != 1:
            if plan.status == "locked":
                raise AlreadyLockedError(
                    f"Plan version {plan_version_id} already has an active run: {plan.active_run_id}"
                )
            raise PlanValidationError(f"Plan version {plan_version_id} is {plan.status}, not approved")

        scenes = await self.list_scenes(plan_version_id)
        definitions = build_step_plan(scenes)

        run = Run(
            id=run_id,
            project_id=plan.project_id,
            plan_version_id=plan_version_id,
            status="pending",
            scene_snapshot=[scene_snapshot(s) for s in scenes],
            settings_snapshot=settings_snapshot,
            artifact_root=artifact_root,
        )
        self.session.add(run)
        for order, definition in enumerate(definitions):
            self.session.add(Step(
                run_id=run_id,
                order_index=order,
                name=definition.name,
                kind=definition.kind.value,
                scene_id=definition.scene_id,
                scene_idx=definition.scene_idx,
                status="pending",
                input_refs=definition.input_refs(),
                output_refs=[],
            ))
        await self.session.flush()
        logger.info(f"Run {run_id}: created with {len(definitions)} steps for plan version {plan_version_id}")
        return run

    async def get_run(self, run_id: uuid.UUID) -> Run:
        run = await self.session.get(Run, run_id)
        if run is None:
            raise NotFoundError(f"Run not found: {run_id}")
        return run

    async def mark_run_started(self, run_id: uuid.UUID) -> bool:
        """pending -> running. Returns False if the run was not pending."""
        result = await self.session.execute(
            update(Run)
            .where(Run.id == run_id, Run.status == "pending")
            .values(status="running", started_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def finish_run(self, run_id: uuid.UUID, status: str, error: Optional[dict] = None) -> Run:
        """Move a run to a terminal state and release its plan version lock."""
        if status not in TERMINAL_RUN_STATES:
            raise ValueError(f"Not a terminal run status: {status}")
        run = await self.get_run(run_id)
        if not can_transition_run(run.status, status):
            raise ConsistencyError(f"Run {run_id} cannot move from {run.status} to {status}")
        run.status = status
        run.error = error
        run.finished_at = utcnow()
        await self.release_plan_lock(run.plan_version_id, run_id)
        await self.session.flush()
        return run

    async def release_plan_lock(self, plan_version_id: uuid.UUID, run_id: uuid.UUID) -> bool:
        """locked -> approved, only if run_id holds the lock."""
        result = await self.session.execute(
            update(PlanVersion)
            .where(
                PlanVersion.id == plan_version_id,
                PlanVersion.status == "locked",
                PlanVersion.active_run_id == run_id,
            )
            .values(status="approved", active_run_id=None)
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
        if released:
            logger.debug(f"Run {run_id}: released lock on plan version {plan_version_id}")
        return released

    async def request_cancel(self, run_id: uuid.UUID) -> str:
        """Cancel a pending run outright, or flag a running one.

        Returns the run status after the call.
        """
        result = await self.session.execute(
            update(Run)
            .where(Run.id == run_id, Run.status == "pending")
            .values(status="cancelled", cancel_requested=True, finished_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        run = await self.get_run(run_id)
        await self.session.refresh(run)
        if result.rowcount == 1:
            await self.release_plan_lock(run.plan_version_id, run_id)
            return "cancelled"

        if run.status in TERMINAL_RUN_STATES:
            raise AlreadyTerminalError(f"Run {run_id} is already {run.status}")
        run.cancel_requested = True
        await self.session.flush()
        return run.status

    async def list_active_runs(self) -> List[Run]:
        result = await self.session.execute(
            select(Run).where(Run.status.in_(ACTIVE_RUN_STATES)).order_by(Run.created_at)
        )
        return list(result.scalars().all())

    async def list_expired_runs(self, cutoff: datetime) -> List[Run]:
        """Failed or cancelled runs that finished before cutoff."""
        result = await self.session.execute(
            select(Run)
            .where(Run.status.in_(("failed", "cancelled")), Run.finished_at < cutoff)
            .order_by(Run.finished_at)
        )
        return list(result.scalars().all())

    # Steps

    async def list_steps(self, run_id: uuid.UUID) -> List[Step]:
        result = await self.session.execute(
            select(Step).where(Step.run_id == run_id).order_by(Step.order_index)
        )
        return list(result.scalars().all())

    async def get_step(self, step_id: uuid.UUID) -> Step:
        step = await self.session.get(Step, step_id)
        if step is None:
            raise NotFoundError(f"Step not found: {step_id}")
        return step

    async def update_step(self, step_id: uuid.UUID, **fields) -> Step:
        """Update step columns; a status change must follow the step state machine."""
        step = await self.get_step(step_id)
        target = fields.get("status", step.status)
        if target != step.status and not can_transition_step(step.status, target):
            raise ConsistencyError(f"Step {step.name} cannot move from {step.status} to {target}")
        for name, value in fields.items():
            setattr(step, name, value)
        await self.session.flush()
        return step

    async def find_reusable_step(
        self, plan_version_id: uuid.UUID, kind: str, fingerprint: str, exclude_run_id: uuid.UUID
    ) -> Optional[Tuple[Step, List[Artifact]]]:
        """Latest done step with this fingerprint in another succeeded run of the plan version."""
        result = await self.session.execute(
            select(Step)
            .join(Run, Run.id == Step.run_id)
            .where(
                Run.plan_version_id == plan_version_id,
                Run.status == "succeeded",
                Run.id != exclude_run_id,
                Step.kind == kind,
                Step.fingerprint == fingerprint,
                Step.status.in_(("succeeded", "skipped")),
            )
            .order_by(Step.finished_at.desc())
            .limit(1)
        )
        step = result.scalar_one_or_none()
        if step is None:
            return None
        artifact_ids = [uuid.UUID(ref) for ref in step.output_refs]
        if not artifact_ids:
            return None
        artifacts = await self.session.execute(select(Artifact).where(Artifact.id.in_(artifact_ids)))
        found = list(artifacts.scalars().all())
        if len(found) != len(artifact_ids):
            return None
        return step, found

    # Artifacts

    async def next_revision(self, run_id: uuid.UUID, role: str) -> int:
        result = await self.session.execute(
            select(func.max(Artifact.revision)).where(Artifact.run_id == run_id, Artifact.role == role)
        )
        return (result.scalar() or 0) + 1

    async def record_artifact(
        self,
        run_id: uuid.UUID,
        step: Step,
        role: str,
        kind: str,
        stored: StoredFile,
        reused_from_id: Optional[uuid.UUID] = None,
    ) -> Artifact:
        """Insert the next revision of (run, role)."""
        revision = await self.next_revision(run_id, role)
        artifact = Artifact(
            run_id=run_id,
            step_id=step.id,
            role=role,
            kind=kind,
            revision=revision,
            path=stored.path,
            size_bytes=stored.size_bytes,
            checksum=stored.checksum,
            producing_step=step.name,
            reused_from_id=reused_from_id,
        )
        self.session.add(artifact)
        await self.session.flush()
        return artifact

    async def list_artifacts(self, run_id: uuid.UUID) -> List[Artifact]:
        result = await self.session.execute(
            select(Artifact)
            .where(Artifact.run_id == run_id)
            .order_by(Artifact.created_at, Artifact.role, Artifact.revision)
        )
        return list(result.scalars().all())

    async def latest_artifacts(self, run_id: uuid.UUID, roles: Optional[Iterable[str]] = None) -> Dict[str, Artifact]:
        """Highest revision per role for the run, optionally limited to roles."""
        query = select(Artifact).where(Artifact.run_id == run_id)
        if roles is not None:
            query = query.where(Artifact.role.in_(list(roles)))
        result = await self.session.execute(query.order_by(Artifact.revision))
        latest: Dict[str, Artifact] = {}
        for artifact in result.scalars().all():
            latest[artifact.role] = artifact
        return latest

    async def delete_artifacts(self, run_id: uuid.UUID) -> int:
        result = await self.session.execute(delete(Artifact).where(Artifact.run_id == run_id))
        return result.rowcount or 0
