"""ContinuitySessionService: session and shot lifecycle over a real store."""

import pytest
from pydantic import ValidationError

from conftest import FakeFrameExtraction, USER_ID, make_frame_bridge, make_session, make_shot
from shotweave.schemas.continuity import CameraPose, SceneProxy
from shotweave.services.continuity.errors import (
    ContinuitySessionNotFoundError,
    ShotNotFoundError,
    UnsupportedProviderError,
)
from shotweave.services.continuity.session_service import (
    ContinuitySessionService,
    default_session_settings,
)


@pytest.mark.asyncio
async def test_create_session_requires_a_source(service):
    with pytest.raises(ValueError):
        await service.create_session(USER_ID, "No source")


@pytest.mark.asyncio
async def test_create_session_from_image(service, store):
    session = await service.create_session(
        USER_ID, "From image", source_image_url="https://cdn.test/look.png"
    )

    assert session.version == 1
    assert session.primary_style_reference.source_image_url == "https://cdn.test/look.png"
    assert session.default_settings == default_session_settings()
    assert (await store.get(session.id)).name == "From image"


@pytest.mark.asyncio
async def test_create_session_from_video(service):
    session = await service.create_session(USER_ID, "From video", source_video_id="video_src")

    assert session.primary_style_reference.source_video_id == "video_src"


@pytest.mark.asyncio
async def test_create_session_is_idempotent_on_id(service):
    first = await service.create_session(
        USER_ID, "Once", source_image_url="https://cdn.test/a.png", session_id="session_fixed"
    )
    second = await service.create_session(
        USER_ID, "Twice", source_image_url="https://cdn.test/b.png", session_id="session_fixed"
    )

    assert second.name == "Once"
    assert second.version == first.version


@pytest.mark.asyncio
async def test_create_session_applies_settings_overrides(service):
    session = await service.create_session(
        USER_ID,
        "Tuned",
        source_image_url="https://cdn.test/a.png",
        settings_overrides={"max_retries": 3, "quality_thresholds": {"style": 0.5}},
    )

    assert session.default_settings.max_retries == 3
    assert session.default_settings.quality_thresholds.style == 0.5
    assert session.default_settings.quality_thresholds.identity == 0.6


@pytest.mark.asyncio
async def test_create_session_with_initial_prompt_generates_first_shot(service, video_client):
    session = await service.create_session(
        USER_ID,
        "Kickoff",
        source_image_url="https://cdn.test/a.png",
        initial_prompt="Wide shot of a neon street",
        settings_overrides={"default_continuity_mode": "style-match"},
    )

    assert len(session.shots) == 1
    assert session.shots[0].status == "completed"
    assert len(video_client.calls) == 1


@pytest.mark.asyncio
async def test_add_shot_inherits_previous_anchors(service, store):
    previous = make_shot(
        "shot_prev", 0, status="completed", video_asset_id="video_prev",
        frame_bridge=make_frame_bridge("shot_prev"),
    )
    await store.save_with_version(make_session(shots=[previous]), 0)

    shot = await service.add_shot("session_1", "Close-up on the hero")

    assert shot.sequence_index == 1
    assert shot.style_reference_id == "shot_prev"
    assert shot.frame_bridge.source_shot_id == "shot_prev"
    assert shot.model_id == "veo-3.1-generate-001"
    assert shot.status == "draft"
    stored = await store.get("session_1")
    assert [s.id for s in stored.shots] == ["shot_prev", shot.id]


@pytest.mark.asyncio
async def test_add_shot_extracts_missing_bridge(service, store, frame_extraction):
    previous = make_shot("shot_prev", 0, status="completed", video_asset_id="video_prev")
    await store.save_with_version(make_session(shots=[previous]), 0)

    shot = await service.add_shot("session_1", "Next beat", continuity_mode="frame-bridge")

    assert shot.frame_bridge is not None
    assert frame_extraction.bridge_calls[0][3] == "shot_prev"


@pytest.mark.asyncio
async def test_add_shot_tolerates_extraction_failure(store, generator, video_client, style_synthesis, post_processing):
    service = ContinuitySessionService(
        store, generator, video_client,
        FakeFrameExtraction(error=RuntimeError("ffmpeg exploded")),
        style_synthesis, post_processing,
    )
    previous = make_shot("shot_prev", 0, status="completed", video_asset_id="video_prev")
    await store.save_with_version(make_session(shots=[previous]), 0)

    shot = await service.add_shot("session_1", "Next beat")

    assert shot.frame_bridge is None


@pytest.mark.asyncio
async def test_add_shot_rejects_unsupported_continuity_provider(service, store):
    await store.save_with_version(make_session(), 0)

    with pytest.raises(UnsupportedProviderError) as exc_info:
        await service.add_shot("session_1", "Anything", model_id="mystery-video-1")
    assert exc_info.value.provider == "unknown"

    shot = await service.add_shot(
        "session_1", "Anything", model_id="mystery-video-1", generation_mode="standard"
    )
    assert shot.generation_mode == "standard"


@pytest.mark.asyncio
async def test_add_shot_imports_existing_video(service, store):
    await store.save_with_version(make_session(), 0)

    shot = await service.add_shot("session_1", "Imported", source_video_id="video_external")

    assert shot.status == "completed"
    assert shot.video_asset_id == "video_external"
    assert shot.generated_at is not None


@pytest.mark.asyncio
async def test_add_shot_to_missing_session(service):
    with pytest.raises(ContinuitySessionNotFoundError):
        await service.add_shot("missing", "Prompt")


@pytest.mark.asyncio
async def test_update_shot_partial_fields(service, store):
    shot = make_shot("shot_1", 0, character_asset_id="char_1", camera=CameraPose(yaw=0.2))
    await store.save_with_version(make_session(shots=[shot]), 0)

    updated = await service.update_shot(
        "session_1",
        "shot_1",
        {"prompt": "New prompt", "character_asset_id": None, "camera": {"pitch": -0.1}},
    )

    assert updated.user_prompt == "New prompt"
    assert updated.character_asset_id is None
    assert updated.camera == CameraPose(yaw=0.2, pitch=-0.1)
    assert updated.model_id == "veo-3.1-generate-001"


@pytest.mark.asyncio
async def test_update_missing_shot(service, store):
    await store.save_with_version(make_session(), 0)

    with pytest.raises(ShotNotFoundError):
        await service.update_shot("session_1", "nope", {"prompt": "x"})


@pytest.mark.asyncio
async def test_update_shot_style_reference(service, store):
    shots = [make_shot("shot_1", 0), make_shot("shot_2", 1, style_reference_id="shot_1")]
    await store.save_with_version(make_session(shots=shots), 0)

    cleared = await service.update_shot_style_reference("session_1", "shot_2", "primary")
    assert cleared.style_reference_id is None

    pointed = await service.update_shot_style_reference("session_1", "shot_2", "shot_1")
    assert pointed.style_reference_id == "shot_1"

    with pytest.raises(ShotNotFoundError):
        await service.update_shot_style_reference("session_1", "shot_2", "ghost")


@pytest.mark.asyncio
async def test_update_primary_style_reference(service, store):
    await store.save_with_version(make_session(), 0)

    session = await service.update_primary_style_reference(
        "session_1", source_image_url="https://cdn.test/new-look.png"
    )

    assert session.primary_style_reference.source_image_url == "https://cdn.test/new-look.png"
    with pytest.raises(ValueError):
        await service.update_primary_style_reference("session_1")


@pytest.mark.asyncio
async def test_update_session_settings_merges_and_ignores_unknown(service, store):
    await store.save_with_version(make_session(), 0)

    session = await service.update_session_settings(
        "session_1",
        {"max_retries": 2, "quality_thresholds": {"identity": 0.8}, "version": 99},
    )

    assert session.default_settings.max_retries == 2
    assert session.default_settings.quality_thresholds.identity == 0.8
    assert session.default_settings.quality_thresholds.style == 0.75
    assert session.version == 2


@pytest.mark.asyncio
async def test_update_session_settings_rejects_invalid_values(service, store):
    await store.save_with_version(make_session(), 0)

    with pytest.raises(ValidationError):
        await service.update_session_settings("session_1", {"default_style_strength": 3})


@pytest.mark.asyncio
async def test_create_scene_proxy_enables_proxy_when_ready(service, store, post_processing):
    shot = make_shot("shot_1", 0, status="completed", video_asset_id="video_1")
    await store.save_with_version(make_session(shots=[shot]), 0)
    post_processing.create_scene_proxy_from_video.return_value = SceneProxy(
        id="proxy_1",
        source_video_id="video_1",
        reference_frame_url="https://cdn.test/ref.png",
        depth_map_url="https://cdn.test/depth.png",
        status="ready",
    )

    session = await service.create_scene_proxy("session_1", source_shot_id="shot_1")

    assert session.scene_proxy.id == "proxy_1"
    assert session.default_settings.use_scene_proxy is True
    post_processing.create_scene_proxy_from_video.assert_awaited_once_with(
        USER_ID, "video_1", "https://cdn.test/video_1.mp4"
    )


@pytest.mark.asyncio
async def test_failed_scene_proxy_leaves_flag_off(service, store, post_processing):
    await store.save_with_version(make_session(), 0)
    post_processing.create_scene_proxy_from_video.return_value = SceneProxy(
        id="proxy_2",
        source_video_id="video_src",
        reference_frame_url="https://cdn.test/ref.png",
        status="failed",
        error="Insufficient parallax depth for scene proxy.",
    )

    session = await service.create_scene_proxy("session_1", source_video_id="video_src")

    assert session.scene_proxy.status == "failed"
    assert session.default_settings.use_scene_proxy is False


@pytest.mark.asyncio
async def test_scene_proxy_needs_a_video(service, store):
    await store.save_with_version(make_session(shots=[make_shot("shot_1", 0)]), 0)

    with pytest.raises(ValueError):
        await service.create_scene_proxy("session_1", source_shot_id="shot_1")
    with pytest.raises(ValueError):
        await service.create_scene_proxy("session_1")


@pytest.mark.asyncio
async def test_archive_and_delete(service, store):
    await store.save_with_version(make_session(), 0)

    archived = await service.archive_session("session_1")
    assert archived.status == "archived"

    await service.delete_session("session_1")
    with pytest.raises(ContinuitySessionNotFoundError):
        await service.get_session("session_1")
    with pytest.raises(ContinuitySessionNotFoundError):
        await service.delete_session("session_1")


@pytest.mark.asyncio
async def test_get_user_sessions(service, store):
    await store.save_with_version(make_session(id="a"), 0)
    await store.save_with_version(make_session(id="b", user_id="other"), 0)

    sessions = await service.get_user_sessions(USER_ID)

    assert [s.id for s in sessions] == ["a"]


@pytest.mark.asyncio
async def test_estimate_shot_cost(service, store):
    await store.save_with_version(make_session(shots=[make_shot("shot_1", 0)]), 0)

    cost = await service.estimate_shot_cost("session_1", "shot_1")

    assert cost.max_attempts == 2
    assert cost.total_cost == cost.per_attempt_cost * 2


@pytest.mark.asyncio
async def test_shots_queued_before_generation_bridge_from_their_own_predecessor(service, store, video_client):
    first = make_shot(
        "shot_1", 0, status="completed", video_asset_id="video_first",
        frame_bridge=make_frame_bridge("shot_1", video_id="video_first"),
    )
    await store.save_with_version(make_session(shots=[first]), 0)

    second = await service.add_shot("session_1", "Second beat", continuity_mode="frame-bridge")
    third = await service.add_shot("session_1", "Third beat", continuity_mode="frame-bridge")
    assert second.frame_bridge.source_shot_id == "shot_1"
    assert third.frame_bridge is None

    await service.generate_shot("session_1", second.id)
    generated = await service.generate_shot("session_1", third.id)

    assert generated.status == "completed"
    start_images = [options["start_image"] for _, options in video_client.calls]
    assert start_images[0] == make_frame_bridge("shot_1").frame_url
    assert start_images[1] == make_frame_bridge(second.id).frame_url
