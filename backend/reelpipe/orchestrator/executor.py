"""Run executor: drives one run through its ordered steps.

Coordinates each step with:
- Consistency and cancellation checks at every step boundary
- Fingerprint-based reuse of identical outputs from earlier runs
- Per-attempt timeout, tenacity retry on transient adapter errors
- Atomic commit of artifact rows, derived scene fields and step status
- Halt on the first fatal step, releasing the plan version lock

All progress lives in the database, so an interrupted run resumes by calling
execute() again.
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt, wait_exponential

from reelpipe.capabilities.base import AdapterSet
from reelpipe.config import Settings
from reelpipe.db.models import Artifact, Run, Step, utcnow
from reelpipe.db.repository import PlanRepository
from reelpipe.errors import AdapterError, ConsistencyError, ReelpipeError, TransientAdapterError
from reelpipe.orchestrator.state import TERMINAL_RUN_STATES, first_pending_index, is_consistent
from reelpipe.orchestrator.steps import StepContext, StepHandler, compute_fingerprint, get_handler
from reelpipe.orchestrator.catalogue import StepKind
from reelpipe.schemas.plan import ScenePatch, StepErrorInfo
from reelpipe.services.artifact_store import ArtifactStore, ChecksumMismatchError, StoredFile

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, AdapterError) and exc.transient


def _error_kind(exc: BaseException) -> str:
    if isinstance(exc, AdapterError):
        return exc.kind
    if isinstance(exc, ConsistencyError):
        return "consistency"
    return "permanent"


class RunExecutor:
    """Executes runs against a session factory, an artifact store and an adapter set."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: ArtifactStore,
        adapters: AdapterSet,
        settings: Settings,
    ):
        self._session_factory = session_factory
        self._store = store
        self._adapters = adapters
        self._settings = settings

    async def execute(self, run_id: uuid.UUID) -> str:
        """Run (or resume) a run until it reaches a terminal state.

        Returns:
            The final run status.
        """
        run = await self._begin(run_id)
        if run.status in TERMINAL_RUN_STATES:
            return run.status

        while True:
            async with self._session_factory() as session:
                repo = PlanRepository(session)
                run = await repo.get_run(run_id)
                steps = await repo.list_steps(run_id)

                if run.status in TERMINAL_RUN_STATES:
                    return run.status

                statuses = [s.status for s in steps]
                position = first_pending_index(statuses)
                if position is None:
                    await repo.finish_run(run_id, "succeeded")
                    await session.commit()
                    logger.info(f"Run {run_id}: succeeded ({len(steps)} steps)")
                    return "succeeded"

                step = steps[position]
                if not is_consistent(statuses, position):
                    error = ConsistencyError(
                        f"Step {step.name} cannot start: earlier steps are not all done "
                        f"or later steps already started ({statuses})"
                    )
                    logger.error(f"Run {run_id}: {error}")
                    await self._fail(session, run, step, error)
                    return "failed"

                if run.cancel_requested:
                    await repo.finish_run(run_id, "cancelled")
                    await session.commit()
                    logger.info(f"Run {run_id}: cancelled before {step.name}")
                    return "cancelled"

            if not await self._execute_step(run, step):
                return "failed"

    async def _begin(self, run_id: uuid.UUID) -> Run:
        """Mark the run running, recovering steps left mid-attempt by a crash."""
        async with self._session_factory() as session:
            repo = PlanRepository(session)
            started = await repo.mark_run_started(run_id)
            run = await repo.get_run(run_id)
            await session.refresh(run)
            if run.status in TERMINAL_RUN_STATES:
                return run

            if not started:
                for step in await repo.list_steps(run_id):
                    if step.status == "running":
                        logger.warning(f"Run {run_id}: resetting interrupted step {step.name}")
                        await repo.update_step(step.id, status="pending", started_at=None)
            await session.commit()

        await asyncio.to_thread(self._store.clear_staging, run_id)
        if started:
            logger.info(f"Run {run_id}: started")
        else:
            logger.info(f"Run {run_id}: resuming")
        return run

    async def _build_context(self, session: AsyncSession, run: Run, step: Step) -> StepContext:
        repo = PlanRepository(session)
        roles = step.input_refs.get("artifacts", [])
        inputs = await repo.latest_artifacts(run.id, roles)
        missing = [role for role in roles if role not in inputs]
        if missing:
            raise ConsistencyError(f"Step {step.name}: missing input artifacts {missing}")
        for artifact in inputs.values():
            if not await asyncio.to_thread(self._store.is_intact, artifact.path, artifact.checksum):
                raise ConsistencyError(
                    f"Step {step.name}: input artifact {artifact.role} failed checksum verification"
                )

        all_artifacts = list((await repo.latest_artifacts(run.id)).values())
        revisions = {
            role: await repo.next_revision(run.id, role) for role in step.input_refs.get("outputs", [])
        }
        return StepContext(
            run_id=run.id,
            plan_version_id=run.plan_version_id,
            step_name=step.name,
            kind=StepKind(step.kind),
            scene_idx=step.scene_idx,
            scenes=sorted(run.scene_snapshot, key=lambda s: s["idx"]),
            settings=run.settings_snapshot,
            inputs=inputs,
            store=self._store,
            adapters=self._adapters,
            artifacts=all_artifacts,
            revisions=revisions,
        )

    def _fresh_context(self, ctx: StepContext) -> StepContext:
        return StepContext(
            run_id=ctx.run_id,
            plan_version_id=ctx.plan_version_id,
            step_name=ctx.step_name,
            kind=ctx.kind,
            scene_idx=ctx.scene_idx,
            scenes=ctx.scenes,
            settings=ctx.settings,
            inputs=ctx.inputs,
            store=ctx.store,
            adapters=ctx.adapters,
            artifacts=ctx.artifacts,
            revisions=ctx.revisions,
        )

    async def _execute_step(self, run: Run, step: Step) -> bool:
        """Run one step to success, reuse or final failure. Returns False if the run halted."""
        try:
            handler = get_handler(step.kind)
            async with self._session_factory() as session:
                ctx = await self._build_context(session, run, step)

            fingerprint = self._fingerprint(handler, ctx, step)
            if fingerprint and self._settings.pipeline.reuse_artifacts:
                if await self._try_reuse(run, step, handler, ctx, fingerprint):
                    return True

            max_attempts = self._settings.retry.max_attempts
            if step.attempts >= max_attempts:
                # Interrupted during its last allowed attempt
                raise TransientAdapterError(
                    f"{step.name} exhausted {step.attempts}/{max_attempts} attempts before the run was interrupted",
                    capability=step.kind,
                )
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_attempts - step.attempts),
                wait=wait_exponential(
                    multiplier=self._settings.retry.base_delay_sec,
                    max=self._settings.retry.max_delay_sec,
                ),
                retry=retry_if_exception(_is_transient),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            )
            async for attempt in retrying:
                with attempt:
                    await self._attempt(run, step, handler, self._fresh_context(ctx), fingerprint)
            return True

        except Exception as e:
            async with self._session_factory() as session:
                await self._fail(session, run, step, e)
            return False

    def _fingerprint(self, handler: StepHandler, ctx: StepContext, step: Step) -> Optional[str]:
        payload = handler.fingerprint(ctx)
        if payload is None:
            return None
        checksums = {role: artifact.checksum for role, artifact in sorted(ctx.inputs.items())}
        return compute_fingerprint(step.kind, step.scene_idx, payload, checksums)

    async def _try_reuse(
        self, run: Run, step: Step, handler: StepHandler, ctx: StepContext, fingerprint: str
    ) -> bool:
        async with self._session_factory() as session:
            match = await PlanRepository(session).find_reusable_step(
                run.plan_version_id, step.kind, fingerprint, run.id
            )
        if match is None:
            return False

        source_step, sources = match
        adopted: List[tuple[Artifact, StoredFile]] = []
        try:
            for source in sources:
                stored = await asyncio.to_thread(
                    self._store.adopt, run.id, source.role, source.kind, source.path, source.checksum
                )
                adopted.append((source, stored))
        except (OSError, ValueError) as e:
            logger.info(f"Run {run.id}: cannot reuse outputs of {source_step.name} ({e}), executing")
            return False

        if handler.restore is not None:
            await handler.restore(ctx, {source.role: self._store.resolve(stored.path) for source, stored in adopted})

        async with self._session_factory() as session:
            repo = PlanRepository(session)
            current = await repo.get_run(run.id)
            if current.status in TERMINAL_RUN_STATES:
                raise ConsistencyError(f"Run {run.id} became {current.status} while step {step.name} ran")
            refs = []
            for source, stored in adopted:
                artifact = await repo.record_artifact(
                    run.id, step, source.role, source.kind, stored, reused_from_id=source.id
                )
                refs.append(str(artifact.id))
            await self._apply_scene_writes(repo, run, ctx.scene_writes)
            await repo.update_step(
                step.id,
                status="skipped",
                fingerprint=fingerprint,
                output_refs=refs,
                last_error=None,
                finished_at=utcnow(),
            )
            await session.commit()

        logger.info(f"Run {run.id}: {step.name} skipped, reused outputs of run {source_step.run_id}")
        return True

    async def _attempt(
        self, run: Run, step: Step, handler: StepHandler, ctx: StepContext, fingerprint: Optional[str]
    ) -> None:
        async with self._session_factory() as session:
            updated = await PlanRepository(session).update_step(
                step.id,
                status="running",
                attempts=step.attempts + 1,
                started_at=utcnow(),
                fingerprint=fingerprint,
            )
            await session.commit()
        step.attempts = updated.attempts
        logger.info(
            f"Run {run.id}: {step.name} attempt {step.attempts}/{self._settings.retry.max_attempts}"
        )

        timeout = (
            self._settings.runner.encode_timeout_sec
            if handler.long_running
            else self._settings.runner.adapter_timeout_sec
        )
        try:
            try:
                await asyncio.wait_for(handler.run(ctx), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise TransientAdapterError(
                    f"{step.name} timed out after {timeout:.0f}s", capability=step.kind
                ) from e
            published = await self._publish(run, ctx)
        except BaseException:
            ctx.discard_staged()
            raise

        async with self._session_factory() as session:
            repo = PlanRepository(session)
            current = await repo.get_run(run.id)
            if current.status in TERMINAL_RUN_STATES:
                raise ConsistencyError(f"Run {run.id} became {current.status} while step {step.name} ran")
            refs = []
            for output, stored in published:
                artifact = await repo.record_artifact(run.id, step, output.role, output.kind, stored)
                refs.append(str(artifact.id))
            await self._apply_scene_writes(repo, run, ctx.scene_writes)
            await repo.update_step(
                step.id,
                status="succeeded",
                output_refs=refs,
                last_error=None,
                finished_at=utcnow(),
            )
            await session.commit()
        logger.info(f"Run {run.id}: {step.name} succeeded ({len(published)} artifact(s))")

    async def _publish(self, run: Run, ctx: StepContext) -> list:
        published = []
        for output in list(ctx.staged):
            try:
                stored = await asyncio.to_thread(
                    self._store.publish, run.id, output.role, output.kind, output.path
                )
            except FileNotFoundError as e:
                raise ConsistencyError(f"{ctx.step_name} did not write its '{output.role}' output") from e
            except (ChecksumMismatchError, OSError) as e:
                raise TransientAdapterError(f"Publishing {output.role} failed: {e}", capability="store") from e
            ctx.staged.remove(output)
            published.append((output, stored))
        return published

    async def _apply_scene_writes(self, repo: PlanRepository, run: Run, writes: Dict[str, dict]) -> None:
        if not writes:
            return
        patches = [ScenePatch(scene_id=uuid.UUID(scene_id), **fields) for scene_id, fields in writes.items()]
        await repo.update_plan_scenes(run.plan_version_id, patches, actor="pipeline", run_id=run.id)

    async def _fail(self, session: AsyncSession, run: Run, step: Step, exc: BaseException) -> None:
        """Persist the classified failure on the step and the run, then release the lock."""
        repo = PlanRepository(session)
        attempts = (await repo.get_step(step.id)).attempts
        info = StepErrorInfo(step=step.name, kind=_error_kind(exc), message=str(exc), attempts=attempts)

        if isinstance(exc, ReelpipeError):
            logger.error(f"Run {run.id}: {step.name} failed ({info.kind}) after {attempts} attempt(s): {exc}")
        else:
            logger.exception(f"Run {run.id}: {step.name} raised an unclassified error, treating as permanent")

        await repo.update_step(
            step.id,
            status="failed",
            last_error=info.model_dump(),
            finished_at=utcnow(),
        )
        fresh = await repo.get_run(run.id)
        await session.refresh(fresh)
        if fresh.status not in TERMINAL_RUN_STATES:
            await repo.finish_run(run.id, "failed", error=info.model_dump())
        await session.commit()
