"""Shared builders, fake collaborators and a throwaway SQLite store."""

from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from shotweave.db import init_database
from shotweave.db.engine import build_session_factory, create_engine_for_url
from shotweave.orchestrator.shot_generator import ContinuityShotGenerator
from shotweave.schemas.continuity import (
    ContinuitySession,
    ContinuityShot,
    FrameBridge,
    Resolution,
    SessionSettings,
    StyleReference,
)
from shotweave.services.continuity.base import (
    FrameExtractionClient,
    StyleSynthesisClient,
    VideoGenerationClient,
    VideoGenerationResult,
)
from shotweave.services.continuity.post_processing import ContinuityPostProcessingService
from shotweave.services.continuity.quality_gate import QualityGateResult
from shotweave.services.continuity.session_service import ContinuitySessionService
from shotweave.services.continuity.session_store import ContinuitySessionStore

USER_ID = "user_1"
FIXED_TIME = datetime(2024, 5, 1, 12, 30, 15, 123000, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_style_reference(ref_id: str = "style_primary", **overrides) -> StyleReference:
    data = dict(
        id=ref_id,
        source_image_url="https://cdn.test/source.png",
        frame_url=f"https://cdn.test/frames/{ref_id}.png",
        resolution=Resolution(width=1280, height=720),
        extracted_at=FIXED_TIME,
    )
    data.update(overrides)
    return StyleReference(**data)


def make_frame_bridge(source_shot_id: str, video_id: str = "video_prev", **overrides) -> FrameBridge:
    data = dict(
        id=f"bridge_{source_shot_id}",
        source_video_id=video_id,
        source_shot_id=source_shot_id,
        frame_url=f"https://cdn.test/frames/{source_shot_id}_last.png",
        frame_timestamp=7.96,
        resolution=Resolution(width=1280, height=720),
        extracted_at=FIXED_TIME,
    )
    data.update(overrides)
    return FrameBridge(**data)


def make_shot(shot_id: str = "shot_1", sequence_index: int = 0, **overrides) -> ContinuityShot:
    data = dict(
        id=shot_id,
        session_id="session_1",
        sequence_index=sequence_index,
        user_prompt=f"Prompt for {shot_id}",
        model_id="veo-3.1-generate-001",
        created_at=FIXED_TIME,
    )
    data.update(overrides)
    return ContinuityShot(**data)


def make_session(shots: Optional[list] = None, **overrides) -> ContinuitySession:
    settings_overrides = overrides.pop("settings", {})
    data = dict(
        id="session_1",
        user_id=USER_ID,
        name="Rainy city",
        primary_style_reference=make_style_reference(),
        shots=shots or [],
        default_settings=SessionSettings(**settings_overrides),
        created_at=FIXED_TIME,
        updated_at=FIXED_TIME,
    )
    data.update(overrides)
    return ContinuitySession(**data)


def gate(style_score: float, passed: bool, identity_score: Optional[float] = None) -> QualityGateResult:
    return QualityGateResult(
        style_score=style_score,
        identity_score=identity_score,
        passed=passed,
        style_method="clip",
    )


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeVideoClient(VideoGenerationClient):
    """Records generate_video calls; returns queued results or numbered assets."""

    def __init__(
        self,
        results: Optional[list[VideoGenerationResult]] = None,
        error: Optional[Exception] = None,
        on_generate: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.calls: list[tuple[str, dict]] = []
        self.results = list(results or [])
        self.error = error
        self.on_generate = on_generate

    async def generate_video(self, prompt, options):
        self.calls.append((prompt, dict(options)))
        if self.on_generate is not None:
            await self.on_generate()
        if self.error is not None:
            raise self.error
        if self.results:
            return self.results.pop(0)
        n = len(self.calls)
        return VideoGenerationResult(asset_id=f"video_{n}", video_url=f"https://cdn.test/video_{n}.mp4")

    async def get_video_url(self, asset_id, user_id=None):
        return f"https://cdn.test/{asset_id}.mp4"

    async def get_character_reference_url(self, user_id, asset_id):
        return f"https://cdn.test/characters/{asset_id}.png"


class FakeFrameExtraction(FrameExtractionClient):

    def __init__(self, error: Optional[Exception] = None):
        self.bridge_calls: list[tuple] = []
        self.representative_calls: list[tuple] = []
        self.error = error

    async def extract_bridge_frame(self, user_id, video_id, video_url, shot_id, position="last"):
        self.bridge_calls.append((user_id, video_id, video_url, shot_id, position))
        if self.error is not None:
            raise self.error
        return make_frame_bridge(shot_id, video_id=video_id)

    async def extract_representative_frame(self, user_id, video_id, video_url, shot_id):
        self.representative_calls.append((user_id, video_id, video_url, shot_id))
        if self.error is not None:
            raise self.error
        return make_style_reference(f"style_{shot_id}", source_video_id=video_id, source_image_url=None)


class FakeStyleSynthesis(StyleSynthesisClient):

    def __init__(self, keyframe_error: Optional[Exception] = None):
        self.keyframe_calls: list[dict] = []
        self.keyframe_error = keyframe_error

    async def create_from_video(self, user_id, video_id, video_url):
        return make_style_reference(f"style_{video_id}", source_video_id=video_id, source_image_url=None)

    async def create_from_image(self, user_id, image_url):
        return make_style_reference("style_image", source_image_url=image_url)

    async def generate_styled_keyframe(self, user_id, prompt, style_reference_url, strength, aspect_ratio=None):
        self.keyframe_calls.append(
            dict(prompt=prompt, style_reference_url=style_reference_url, strength=strength)
        )
        if self.keyframe_error is not None:
            raise self.keyframe_error
        return f"https://cdn.test/keyframes/kf_{len(self.keyframe_calls)}.png"


def make_post_processing(*quality_results: QualityGateResult) -> MagicMock:
    post_processing = MagicMock(spec=ContinuityPostProcessingService)
    post_processing.evaluate_quality = AsyncMock(
        side_effect=list(quality_results) if quality_results else None,
        return_value=gate(0.9, True),
    )
    post_processing.match_palette = AsyncMock()
    post_processing.render_scene_proxy = AsyncMock()
    post_processing.create_scene_proxy_from_video = AsyncMock()
    return post_processing


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'shotweave-test.db'}")
    await init_database(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return ContinuitySessionStore(session_factory, dual_write=True, read_fallback=True)


@pytest.fixture
def video_client():
    return FakeVideoClient()


@pytest.fixture
def frame_extraction():
    return FakeFrameExtraction()


@pytest.fixture
def style_synthesis():
    return FakeStyleSynthesis()


@pytest.fixture
def post_processing():
    return make_post_processing()


@pytest.fixture
def generator(store, video_client, frame_extraction, style_synthesis, post_processing):
    return ContinuityShotGenerator(
        store,
        video_client,
        frame_extraction,
        style_synthesis,
        post_processing,
        style_strength_step=0.1,
    )


@pytest.fixture
def service(store, generator, video_client, frame_extraction, style_synthesis, post_processing):
    return ContinuitySessionService(
        store,
        generator,
        video_client,
        frame_extraction,
        style_synthesis,
        post_processing,
    )
