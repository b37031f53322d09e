"""Shared fixtures: temporary database and artifact store, fault-injecting dry-run adapters.

No network and no ffmpeg: every run uses the dry-run adapters, optionally
wrapped so a test can make a specific call fail, hang or block.
"""

import asyncio
import uuid
from collections import Counter, defaultdict
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from reelpipe.capabilities.base import AdapterSet
from reelpipe.capabilities.captions import AssCaptionBuilder
from reelpipe.capabilities.dry_run import (
    DryRunImageGenerator,
    DryRunMusicBuilder,
    DryRunSpeechSynthesizer,
    DryRunTranscriptAligner,
    DryRunVideoEncoder,
)
from reelpipe.config import RenderConfig, RetryConfig, RunnerConfig, Settings, StorageConfig
from reelpipe.db import build_engine, build_session_factory, init_database
from reelpipe.db.repository import PlanRepository
from reelpipe.orchestrator.service import RunService
from reelpipe.schemas.plan import SceneInput
from reelpipe.services.artifact_store import ArtifactStore

SCENE_TEXTS = [
    "Octopuses have three hearts and blue blood.",
    "Honey never spoils, even after thousands of years.",
    "A day on Venus is longer than its year.",
]


class Faults:
    """Scripted failures for the test adapters.

    Keys are matched as substrings of the call's text/prompt, so a fault can
    target one scene.
    """

    def __init__(self):
        self.errors: Dict[Tuple[str, str], List[BaseException]] = defaultdict(list)
        self.delays: Dict[Tuple[str, str], List[float]] = defaultdict(list)
        self.gates: Dict[Tuple[str, str], asyncio.Event] = {}
        self.entered: Dict[Tuple[str, str], asyncio.Event] = {}
        self.calls: Counter = Counter()
        self.keys: List[Tuple[str, str]] = []

    def fail(self, capability: str, key: str, *errors: BaseException) -> None:
        self.errors[(capability, key)].extend(errors)

    def delay(self, capability: str, key: str, seconds: float) -> None:
        self.delays[(capability, key)].append(seconds)

    def gate(self, capability: str, key: str) -> Tuple[asyncio.Event, asyncio.Event]:
        """Block matching calls until the returned release event is set.

        Returns (entered, release).
        """
        entered, release = asyncio.Event(), asyncio.Event()
        self.entered[(capability, key)] = entered
        self.gates[(capability, key)] = release
        return entered, release

    async def hit(self, capability: str, text: str) -> None:
        self.calls[capability] += 1
        self.keys.append((capability, text))
        for (cap, key), release in list(self.gates.items()):
            if cap == capability and key in text and not release.is_set():
                self.entered[(cap, key)].set()
                await release.wait()
        for (cap, key), delays in self.delays.items():
            if cap == capability and key in text and delays:
                await asyncio.sleep(delays.pop(0))
        for (cap, key), errors in self.errors.items():
            if cap == capability and key in text and errors:
                raise errors.pop(0)


class FaultySpeech(DryRunSpeechSynthesizer):
    def __init__(self, faults: Faults):
        self.faults = faults

    async def synthesize(self, text, voice, output_path):
        # Leave a partial file behind so failed attempts have something to discard
        Path(output_path).write_bytes(b"partial")
        await self.faults.hit("tts", text)
        return await super().synthesize(text, voice, output_path)


class FaultyImages(DryRunImageGenerator):
    def __init__(self, faults: Faults):
        self.faults = faults

    async def generate(self, prompt, style, output_path):
        await self.faults.hit("image", prompt)
        return await super().generate(prompt, style, output_path)


class FaultyEncoder(DryRunVideoEncoder):
    def __init__(self, faults: Faults):
        self.faults = faults

    async def encode(self, spec, output_path):
        await self.faults.hit("encode", "render")
        return await super().encode(spec, output_path)


def make_adapters(faults: Faults) -> AdapterSet:
    return AdapterSet(
        speech=FaultySpeech(faults),
        aligner=DryRunTranscriptAligner(),
        images=FaultyImages(faults),
        captions=AssCaptionBuilder(),
        music=DryRunMusicBuilder(),
        encoder=FaultyEncoder(faults),
    )


async def wait_until(predicate: Callable, timeout: float = 10.0, interval: float = 0.02):
    """Poll an async predicate until it returns a truthy value."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = await predicate()
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


async def create_plan(
    session_factory,
    texts: Optional[List[str]] = None,
    approve: bool = True,
) -> Tuple[uuid.UUID, uuid.UUID, List[uuid.UUID]]:
    """Create a project with one plan version. Returns (project_id, plan_version_id, scene_ids)."""
    texts = texts if texts is not None else SCENE_TEXTS
    async with session_factory() as session:
        repo = PlanRepository(session)
        project = await repo.create_project("Weird facts", topic="facts", niche_pack_id="facts")
        plan = await repo.create_plan_version(
            project.id,
            [
                SceneInput(narration_text=text, image_prompt=f"illustration for scene {i + 1}")
                for i, text in enumerate(texts)
            ],
            niche_pack_id="facts",
            hook="Three facts you did not know",
        )
        if approve:
            await repo.approve_plan_version(plan.id)
        scenes = await repo.list_scenes(plan.id)
        await session.commit()
        return project.id, plan.id, [s.id for s in scenes]


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        storage=StorageConfig(
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
            artifacts_dir=tmp_path / "artifacts",
        ),
        retry=RetryConfig(max_attempts=3, base_delay_sec=0, max_delay_sec=0),
        runner=RunnerConfig(max_concurrent_runs=2, adapter_timeout_sec=5),
        render=RenderConfig(dry_run=True),
    )


@pytest_asyncio.fixture
async def engine(test_settings):
    engine = build_engine(test_settings.storage.database_url)
    await init_database(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def store(test_settings) -> ArtifactStore:
    return ArtifactStore(test_settings.storage.artifacts_dir)


@pytest.fixture
def faults() -> Faults:
    return Faults()


@pytest.fixture
def adapters(faults) -> AdapterSet:
    return make_adapters(faults)


@pytest_asyncio.fixture
async def service(session_factory, test_settings, store, adapters):
    service = RunService(session_factory, test_settings, store=store, adapters=adapters)
    yield service
    await service.wait_all()


@pytest_asyncio.fixture
async def approved_plan(session_factory):
    """(project_id, plan_version_id, scene_ids) of an approved three-scene plan."""
    return await create_plan(session_factory)
