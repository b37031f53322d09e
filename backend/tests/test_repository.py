"""Plan repository: ownership checks, edit rules and the plan version lock."""

import uuid

import pytest

from reelpipe.db.repository import PlanRepository
from reelpipe.errors import (
    AlreadyLockedError,
    ConsistencyError,
    NotFoundError,
    OwnershipError,
    PlanLockedError,
    PlanValidationError,
    SceneLockedError,
)
from reelpipe.schemas.plan import SceneInput, ScenePatch

from conftest import SCENE_TEXTS, create_plan


async def _narrations(session_factory, plan_version_id):
    async with session_factory() as session:
        scenes = await PlanRepository(session).list_scenes(plan_version_id)
        return [s.narration_text for s in scenes]


async def _lock(session_factory, plan_version_id) -> uuid.UUID:
    run_id = uuid.uuid4()
    async with session_factory() as session:
        await PlanRepository(session).create_run(
            plan_version_id, settings_snapshot={}, artifact_root="unused", run_id=run_id
        )
        await session.commit()
    return run_id


class TestPlanVersions:
    @pytest.mark.asyncio
    async def test_scenes_are_ordered(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory, approve=False)

        async with session_factory() as session:
            repo = PlanRepository(session)
            plan = await repo.get_plan_version(plan_id)
            scenes = await repo.list_scenes(plan_id)

        assert plan.status == "draft"
        assert [s.idx for s in scenes] == [0, 1, 2]
        assert [s.narration_text for s in scenes] == SCENE_TEXTS
        assert [s.id for s in scenes] == scene_ids

    @pytest.mark.asyncio
    async def test_plan_without_scenes_rejected(self, session_factory):
        async with session_factory() as session:
            repo = PlanRepository(session)
            project = await repo.create_project("Empty")
            with pytest.raises(PlanValidationError):
                await repo.create_plan_version(project.id, [])

    @pytest.mark.asyncio
    async def test_unknown_plan_version(self, session_factory):
        async with session_factory() as session:
            with pytest.raises(NotFoundError):
                await PlanRepository(session).get_plan_version(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_approve_requires_narration(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory, texts=["Fine.", "   "], approve=False)

        async with session_factory() as session:
            with pytest.raises(PlanValidationError, match="without narration"):
                await PlanRepository(session).approve_plan_version(plan_id)

    @pytest.mark.asyncio
    async def test_approve_twice_is_noop(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory)

        async with session_factory() as session:
            plan = await PlanRepository(session).approve_plan_version(plan_id)
            assert plan.status == "approved"


class TestSceneOwnership:
    @pytest.mark.asyncio
    async def test_scene_of_other_plan_rejected(self, session_factory):
        _, plan_a, _ = await create_plan(session_factory, approve=False)
        _, plan_b, scenes_b = await create_plan(session_factory, approve=False)

        async with session_factory() as session:
            with pytest.raises(OwnershipError):
                await PlanRepository(session).update_scene(
                    plan_a, ScenePatch(scene_id=scenes_b[0], narration_text="hijacked")
                )
            await session.commit()

        assert await _narrations(session_factory, plan_a) == SCENE_TEXTS
        assert await _narrations(session_factory, plan_b) == SCENE_TEXTS

    @pytest.mark.asyncio
    async def test_unknown_scene_rejected(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory, approve=False)

        async with session_factory() as session:
            with pytest.raises(OwnershipError):
                await PlanRepository(session).update_scene(
                    plan_id, ScenePatch(scene_id=uuid.uuid4(), narration_text="x")
                )

    @pytest.mark.asyncio
    async def test_batch_with_one_foreign_scene_writes_nothing(self, session_factory):
        _, plan_a, scenes_a = await create_plan(session_factory, approve=False)
        _, _, scenes_b = await create_plan(session_factory, approve=False)

        async with session_factory() as session:
            with pytest.raises(OwnershipError):
                await PlanRepository(session).update_plan_scenes(
                    plan_a,
                    [
                        ScenePatch(scene_id=scenes_a[0], narration_text="edited"),
                        ScenePatch(scene_id=scenes_b[1], narration_text="foreign"),
                    ],
                )
            await session.commit()

        assert await _narrations(session_factory, plan_a) == SCENE_TEXTS


class TestUserEdits:
    @pytest.mark.asyncio
    async def test_draft_edit_applies(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory, approve=False)

        async with session_factory() as session:
            scene = await PlanRepository(session).update_scene(
                plan_id, ScenePatch(scene_id=scene_ids[1], narration_text="Edited.", effect_preset="pan_left")
            )
            await session.commit()

        assert scene.narration_text == "Edited."
        assert scene.effect_preset == "pan_left"
        assert (await _narrations(session_factory, plan_id))[1] == "Edited."

    @pytest.mark.asyncio
    async def test_approved_plan_not_editable(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory)

        async with session_factory() as session:
            with pytest.raises(PlanValidationError):
                await PlanRepository(session).update_scene(
                    plan_id, ScenePatch(scene_id=scene_ids[0], narration_text="late edit")
                )

    @pytest.mark.asyncio
    async def test_locked_plan_not_editable(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory)
        await _lock(session_factory, plan_id)

        async with session_factory() as session:
            with pytest.raises(PlanLockedError):
                await PlanRepository(session).update_scene(
                    plan_id, ScenePatch(scene_id=scene_ids[0], narration_text="late edit")
                )

    @pytest.mark.asyncio
    async def test_user_cannot_write_timings(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory, approve=False)

        async with session_factory() as session:
            with pytest.raises(PlanValidationError):
                await PlanRepository(session).update_scene(
                    plan_id, ScenePatch(scene_id=scene_ids[0], start_time_sec=1.0)
                )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "field_name",
        ["narration_text", "on_screen_text", "negative_prompt", "effect_preset", "duration_target_sec", "locked"],
    )
    async def test_required_fields_cannot_be_cleared(self, session_factory, field_name):
        _, plan_id, scene_ids = await create_plan(session_factory, approve=False)

        async with session_factory() as session:
            with pytest.raises(PlanValidationError, match=field_name):
                await PlanRepository(session).update_scene(
                    plan_id, ScenePatch(scene_id=scene_ids[0], **{field_name: None})
                )

        assert (await _narrations(session_factory, plan_id))[0] == SCENE_TEXTS[0]

    @pytest.mark.asyncio
    async def test_image_prompt_can_be_cleared(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory, approve=False)

        async with session_factory() as session:
            scene = await PlanRepository(session).update_scene(
                plan_id, ScenePatch(scene_id=scene_ids[0], image_prompt=None)
            )
            await session.commit()

        assert scene.image_prompt is None

    @pytest.mark.asyncio
    async def test_locked_scene_needs_unlock(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory, approve=False)

        async with session_factory() as session:
            repo = PlanRepository(session)
            await repo.update_scene(plan_id, ScenePatch(scene_id=scene_ids[0], locked=True))
            with pytest.raises(SceneLockedError):
                await repo.update_scene(plan_id, ScenePatch(scene_id=scene_ids[0], narration_text="x"))

            # Unlock and edit in one patch is still an edit of a locked scene
            with pytest.raises(SceneLockedError):
                await repo.update_scene(
                    plan_id, ScenePatch(scene_id=scene_ids[0], locked=False, narration_text="x")
                )

            await repo.update_scene(plan_id, ScenePatch(scene_id=scene_ids[0], locked=False))
            scene = await repo.update_scene(plan_id, ScenePatch(scene_id=scene_ids[0], narration_text="x"))
            assert scene.narration_text == "x"


class TestPipelineWrites:
    @pytest.mark.asyncio
    async def test_lock_holder_writes_timings(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory)
        run_id = await _lock(session_factory, plan_id)

        async with session_factory() as session:
            scene = await PlanRepository(session).update_scene(
                plan_id,
                ScenePatch(scene_id=scene_ids[0], start_time_sec=0.0, end_time_sec=2.5, audio_duration_sec=2.5),
                actor="pipeline",
                run_id=run_id,
            )
            await session.commit()

        assert scene.end_time_sec == 2.5

    @pytest.mark.asyncio
    async def test_other_run_cannot_write(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory)
        await _lock(session_factory, plan_id)

        async with session_factory() as session:
            with pytest.raises(PlanLockedError):
                await PlanRepository(session).update_scene(
                    plan_id,
                    ScenePatch(scene_id=scene_ids[0], start_time_sec=0.0),
                    actor="pipeline",
                    run_id=uuid.uuid4(),
                )

    @pytest.mark.asyncio
    async def test_pipeline_cannot_write_content(self, session_factory):
        _, plan_id, scene_ids = await create_plan(session_factory)
        run_id = await _lock(session_factory, plan_id)

        async with session_factory() as session:
            with pytest.raises(PlanValidationError):
                await PlanRepository(session).update_scene(
                    plan_id,
                    ScenePatch(scene_id=scene_ids[0], narration_text="rewritten"),
                    actor="pipeline",
                    run_id=run_id,
                )


class TestPlanLock:
    @pytest.mark.asyncio
    async def test_create_run_locks_plan(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory)
        run_id = await _lock(session_factory, plan_id)

        async with session_factory() as session:
            repo = PlanRepository(session)
            plan = await repo.get_plan_version(plan_id)
            steps = await repo.list_steps(run_id)
            run = await repo.get_run(run_id)

        assert plan.status == "locked"
        assert plan.active_run_id == run_id
        assert run.status == "pending"
        assert len(steps) == 11
        assert [s["narration_text"] for s in run.scene_snapshot] == SCENE_TEXTS

    @pytest.mark.asyncio
    async def test_second_run_rejected_while_locked(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory)
        await _lock(session_factory, plan_id)

        with pytest.raises(AlreadyLockedError):
            await _lock(session_factory, plan_id)

    @pytest.mark.asyncio
    async def test_draft_cannot_be_rendered(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory, approve=False)

        with pytest.raises(PlanValidationError):
            await _lock(session_factory, plan_id)

    @pytest.mark.asyncio
    async def test_finish_releases_lock(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory)
        run_id = await _lock(session_factory, plan_id)

        async with session_factory() as session:
            repo = PlanRepository(session)
            await repo.mark_run_started(run_id)
            await repo.finish_run(run_id, "failed", error=None)
            await session.commit()

        async with session_factory() as session:
            plan = await PlanRepository(session).get_plan_version(plan_id)
        assert plan.status == "approved"
        assert plan.active_run_id is None

        # Lock can be taken again
        await _lock(session_factory, plan_id)

    @pytest.mark.asyncio
    async def test_release_by_non_holder_is_ignored(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory)
        run_id = await _lock(session_factory, plan_id)

        async with session_factory() as session:
            released = await PlanRepository(session).release_plan_lock(plan_id, uuid.uuid4())
            await session.commit()
        assert released is False

        async with session_factory() as session:
            plan = await PlanRepository(session).get_plan_version(plan_id)
        assert plan.active_run_id == run_id

    @pytest.mark.asyncio
    async def test_single_scene_step_list(self, session_factory):
        async with session_factory() as session:
            repo = PlanRepository(session)
            project = await repo.create_project("One scene")
            plan = await repo.create_plan_version(project.id, [SceneInput(narration_text="Only one.")])
            await repo.approve_plan_version(plan.id)
            await session.commit()

        run_id = await _lock(session_factory, plan.id)
        async with session_factory() as session:
            steps = await PlanRepository(session).list_steps(run_id)
        assert [s.name for s in steps] == [
            "tts_generate[scene=1]",
            "asr_align",
            "images_generate[scene=1]",
            "captions_build",
            "music_build",
            "ffmpeg_render",
            "finalize_artifacts",
        ]


class TestStateTransitions:
    @pytest.mark.asyncio
    async def test_finished_step_cannot_restart(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory)
        run_id = await _lock(session_factory, plan_id)

        async with session_factory() as session:
            repo = PlanRepository(session)
            step = (await repo.list_steps(run_id))[0]
            await repo.update_step(step.id, status="running", attempts=1)
            await repo.update_step(step.id, status="succeeded")

            with pytest.raises(ConsistencyError):
                await repo.update_step(step.id, status="running")
            with pytest.raises(ConsistencyError):
                await repo.update_step(step.id, status="pending")
            assert (await repo.get_step(step.id)).status == "succeeded"

    @pytest.mark.asyncio
    async def test_pending_step_cannot_succeed_directly(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory)
        run_id = await _lock(session_factory, plan_id)

        async with session_factory() as session:
            repo = PlanRepository(session)
            step = (await repo.list_steps(run_id))[0]
            with pytest.raises(ConsistencyError):
                await repo.update_step(step.id, status="succeeded")

    @pytest.mark.asyncio
    async def test_terminal_run_cannot_finish_again(self, session_factory):
        _, plan_id, _ = await create_plan(session_factory)
        run_id = await _lock(session_factory, plan_id)

        async with session_factory() as session:
            repo = PlanRepository(session)
            with pytest.raises(ConsistencyError):
                await repo.finish_run(run_id, "succeeded")

            await repo.mark_run_started(run_id)
            await repo.finish_run(run_id, "succeeded")
            with pytest.raises(ConsistencyError):
                await repo.finish_run(run_id, "failed")
