"""Run lifecycle service and bounded worker pool.

RunService is the single entry point used by the CLI (and by any outer
surface): it creates runs under the plan version lock, schedules them on
asyncio tasks bounded by a semaphore, and exposes status, cancellation,
artifact listing, resume and garbage collection.
"""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelpipe.capabilities import AdapterSet, build_adapters
from reelpipe.config import Settings
from reelpipe.db.models import PlanVersion, Project, Scene, utcnow
from reelpipe.db.repository import PlanRepository
from reelpipe.errors import AlreadyTerminalError, OwnershipError
from reelpipe.orchestrator.executor import RunExecutor
from reelpipe.orchestrator.state import TERMINAL_RUN_STATES
from reelpipe.schemas.plan import ArtifactView, PlanInput, RunStatusView, ScenePatch, StepErrorInfo, StepView
from reelpipe.schemas.render import QaLimits
from reelpipe.services.artifact_store import ArtifactStore
from reelpipe.services.niche_packs import get_niche_pack

logger = logging.getLogger(__name__)


def qa_limits(settings: Settings) -> Optional[dict]:
    if not settings.qa.enabled:
        return None
    return QaLimits(
        width=settings.qa.width,
        height=settings.qa.height,
        max_file_size_mb=settings.qa.max_file_size_mb,
        max_silence_sec=settings.qa.max_silence_sec,
    ).model_dump()


def build_settings_snapshot(project: Project, plan: PlanVersion, settings: Settings, dry_run: bool) -> dict:
    """Everything the steps need besides the scenes, frozen at run creation."""
    pack = get_niche_pack(plan.niche_pack_id or project.niche_pack_id or settings.pipeline.default_niche_pack)
    render = settings.render
    return {
        "project": {
            "id": str(project.id),
            "title": project.title,
            "topic": project.topic,
            "language": project.language,
        },
        "niche_pack_id": pack.id,
        "style_bible_prompt": pack.style_bible_prompt,
        "niche_negative_prompt": pack.negative_prompt,
        "caption_style": pack.caption_style.model_dump(),
        "voice": plan.voice or settings.pipeline.default_voice,
        "style_prompt": plan.style_prompt,
        "music_mood": plan.music_mood or pack.music_mood,
        "hook": plan.hook,
        "image_size": settings.providers.image_size,
        "width": render.width,
        "height": render.height,
        "fps": render.fps,
        "music_volume": render.music_volume,
        "thumbnail_offset_sec": render.thumbnail_offset_sec,
        "qa": qa_limits(settings),
        "dry_run": dry_run,
    }


class RunService:
    """Run lifecycle API.

    Runs created in one process execute as asyncio tasks of that process;
    runs left pending/running by a crashed process are picked up again by
    resume_interrupted_runs().
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        store: Optional[ArtifactStore] = None,
        adapters: Optional[AdapterSet] = None,
    ):
        self._session_factory = session_factory
        self._settings = settings
        self._store = store or ArtifactStore(settings.storage.artifacts_dir)
        self._adapters = adapters
        self._built: Dict[bool, AdapterSet] = {}
        self._semaphore = asyncio.Semaphore(settings.runner.max_concurrent_runs)
        self._tasks: Dict[uuid.UUID, asyncio.Task] = {}

    @property
    def store(self) -> ArtifactStore:
        return self._store

    def _adapters_for(self, dry_run: bool) -> AdapterSet:
        if self._adapters is not None:
            return self._adapters
        if dry_run not in self._built:
            self._built[dry_run] = build_adapters(self._settings, dry_run=dry_run)
        return self._built[dry_run]

    # Plan import and approval

    async def import_plan(self, plan: PlanInput) -> uuid.UUID:
        """Create a project and a draft plan version from a plan document."""
        async with self._session_factory() as session:
            repo = PlanRepository(session)
            project = await repo.create_project(
                title=plan.project_title,
                topic=plan.topic,
                niche_pack_id=plan.niche_pack_id,
                language=plan.language,
            )
            version = await repo.create_plan_version(
                project.id,
                plan.scenes,
                niche_pack_id=plan.niche_pack_id,
                target_duration_sec=plan.target_duration_sec,
                voice=plan.voice,
                style_prompt=plan.style_prompt,
                music_mood=plan.music_mood,
                hook=plan.hook,
                outline=plan.outline,
            )
            await session.commit()
            return version.id

    async def approve_plan(self, plan_version_id: uuid.UUID) -> None:
        async with self._session_factory() as session:
            await PlanRepository(session).approve_plan_version(plan_version_id)
            await session.commit()

    async def get_plan(self, plan_version_id: uuid.UUID) -> Tuple[PlanVersion, List[Scene]]:
        async with self._session_factory() as session:
            repo = PlanRepository(session)
            plan = await repo.get_plan_version(plan_version_id)
            return plan, await repo.list_scenes(plan_version_id)

    async def edit_scenes(self, plan_version_id: uuid.UUID, patches: List[ScenePatch]) -> List[Scene]:
        """User edits of a draft plan version; all-or-nothing."""
        async with self._session_factory() as session:
            scenes = await PlanRepository(session).update_plan_scenes(plan_version_id, patches, actor="user")
            await session.commit()
            return scenes

    # Run lifecycle

    async def start_run(
        self,
        plan_version_id: uuid.UUID,
        project_id: Optional[uuid.UUID] = None,
        *,
        dry_run: Optional[bool] = None,
    ) -> uuid.UUID:
        """Lock the plan version, create the run and schedule it.

        Raises:
            NotFoundError: Unknown plan version.
            OwnershipError: project_id given and the plan belongs to another project.
            AlreadyLockedError: Another run is active for this plan version.
            PlanValidationError: The plan version is not approved.
        """
        if dry_run is None:
            dry_run = self._settings.render.dry_run

        async with self._session_factory() as session:
            repo = PlanRepository(session)
            plan = await repo.get_plan_version(plan_version_id)
            if project_id is not None and plan.project_id != project_id:
                raise OwnershipError(
                    f"Plan version {plan_version_id} does not belong to project {project_id}"
                )
            project = await repo.get_project(plan.project_id)
            snapshot = build_settings_snapshot(project, plan, self._settings, dry_run)

        run_id = uuid.uuid4()
        artifact_root = str(self._store.base_dir / str(run_id))
        async with self._session_factory() as session:
            await PlanRepository(session).create_run(
                plan_version_id,
                settings_snapshot=snapshot,
                artifact_root=artifact_root,
                run_id=run_id,
            )
            await session.commit()

        self._store.run_dir(run_id)
        self._schedule(run_id, dry_run)
        return run_id

    def _schedule(self, run_id: uuid.UUID, dry_run: bool) -> None:
        existing = self._tasks.get(run_id)
        if existing is not None and not existing.done():
            return
        executor = RunExecutor(self._session_factory, self._store, self._adapters_for(dry_run), self._settings)
        self._tasks[run_id] = asyncio.create_task(self._run_bounded(executor, run_id), name=f"run-{run_id}")

    async def _run_bounded(self, executor: RunExecutor, run_id: uuid.UUID) -> Optional[str]:
        async with self._semaphore:
            try:
                return await executor.execute(run_id)
            except Exception:
                # Left as-is in the database; resume_interrupted_runs() picks it up
                logger.exception(f"Run {run_id}: executor crashed")
                return None

    async def get_run_status(self, run_id: uuid.UUID) -> RunStatusView:
        async with self._session_factory() as session:
            repo = PlanRepository(session)
            run = await repo.get_run(run_id)
            steps = await repo.list_steps(run_id)
            return RunStatusView(
                run_id=run.id,
                plan_version_id=run.plan_version_id,
                status=run.status,
                cancel_requested=run.cancel_requested,
                error=StepErrorInfo(**run.error) if run.error else None,
                steps=[StepView.model_validate(s) for s in steps],
                created_at=run.created_at,
                started_at=run.started_at,
                finished_at=run.finished_at,
            )

    async def cancel_run(self, run_id: uuid.UUID) -> str:
        """Cancel a pending run or request cancellation of a running one.

        Returns:
            "cancelled" if the run was cancelled outright, else its current status
            (cancellation is then observed at the next step boundary).

        Raises:
            AlreadyTerminalError: The run already finished.
        """
        async with self._session_factory() as session:
            status = await PlanRepository(session).request_cancel(run_id)
            await session.commit()
        logger.info(f"Run {run_id}: cancellation requested ({status})")
        return status

    async def list_artifacts(self, run_id: uuid.UUID) -> List[ArtifactView]:
        async with self._session_factory() as session:
            repo = PlanRepository(session)
            await repo.get_run(run_id)
            return [ArtifactView.model_validate(a) for a in await repo.list_artifacts(run_id)]

    async def resume_run(self, run_id: uuid.UUID) -> None:
        """Continue a pending or running run from its first unfinished step."""
        async with self._session_factory() as session:
            run = await PlanRepository(session).get_run(run_id)
        if run.status in TERMINAL_RUN_STATES:
            raise AlreadyTerminalError(f"Run {run_id} is already {run.status}")
        self._schedule(run_id, bool(run.settings_snapshot.get("dry_run", False)))

    async def resume_interrupted_runs(self) -> List[uuid.UUID]:
        """Schedule every run left pending/running, e.g. after a process restart."""
        async with self._session_factory() as session:
            runs = await PlanRepository(session).list_active_runs()
        for run in runs:
            logger.info(f"Resuming interrupted run {run.id} ({run.status})")
            self._schedule(run.id, bool(run.settings_snapshot.get("dry_run", False)))
        return [run.id for run in runs]

    async def wait_for(self, run_id: uuid.UUID) -> RunStatusView:
        """Wait until the run's task in this process finishes, then return its status."""
        task = self._tasks.get(run_id)
        if task is not None:
            await task
        return await self.get_run_status(run_id)

    async def wait_all(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks)

    async def collect_garbage(self, older_than_days: Optional[int] = None) -> List[uuid.UUID]:
        """Delete artifacts of failed/cancelled runs that finished before the cutoff."""
        if older_than_days is None:
            older_than_days = self._settings.runner.garbage_retention_days
        cutoff = utcnow() - timedelta(days=older_than_days)

        purged = []
        async with self._session_factory() as session:
            repo = PlanRepository(session)
            for run in await repo.list_expired_runs(cutoff):
                await asyncio.to_thread(self._store.purge_run, run.id)
                removed = await repo.delete_artifacts(run.id)
                logger.info(f"Garbage collected run {run.id} ({run.status}, {removed} artifact rows)")
                purged.append(run.id)
            await session.commit()
        return purged
