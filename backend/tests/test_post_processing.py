"""Post-processing: scene proxies, parallax rendering and palette transfer."""

from unittest.mock import AsyncMock, MagicMock

import numpy as np
import pytest

from conftest import make_style_reference
from shotweave.config import settings
from shotweave.schemas.continuity import CameraPose, SceneProxy, SceneProxyRender
from shotweave.services.continuity.base import StoredObject
from shotweave.services.continuity.palette_matching import PaletteMatcher, transfer_palette
from shotweave.services.continuity.post_processing import ContinuityPostProcessingService
from shotweave.services.continuity.scene_proxy import (
    MIN_DEPTH_VARIANCE,
    SceneProxyService,
    depth_variance,
    luminance_depth,
    render_parallax,
)


def _gradient(height=64, width=64):
    ramp = np.linspace(0, 255, width, dtype=np.uint8)
    grey = np.tile(ramp, (height, 1))
    return np.stack([grey, grey, grey], axis=-1)


def _proxy(**overrides):
    data = dict(
        id="proxy_1",
        source_video_id="video_src",
        reference_frame_url="https://cdn.test/ref.png",
        depth_map_url="https://cdn.test/depth.png",
        status="ready",
    )
    data.update(overrides)
    return SceneProxy(**data)


def _storage():
    storage = MagicMock()
    storage.save_from_buffer = AsyncMock(
        return_value=StoredObject(view_url="https://cdn.test/stored.png", storage_path="u/stored.png")
    )
    return storage


def test_render_parallax_identity_without_camera():
    rgb = _gradient()
    depth = luminance_depth(rgb)

    assert np.array_equal(render_parallax(rgb, depth, None), rgb)
    assert np.array_equal(render_parallax(rgb, depth, CameraPose()), rgb)


def test_render_parallax_shifts_with_yaw():
    rgb = _gradient()
    depth = luminance_depth(rgb)

    rendered = render_parallax(rgb, depth, CameraPose(yaw=1.0))

    assert rendered.shape == rgb.shape
    assert not np.array_equal(rendered, rgb)


def test_render_parallax_roll_rotates_about_centre():
    rgb = _gradient()
    flat = np.full((64, 64), 128, dtype=np.uint8)

    rendered = render_parallax(rgb, flat, CameraPose(roll=180.0))

    assert rendered[32, 0, 0] > 200
    assert rendered[32, 63, 0] < 50


def test_render_parallax_dolly_zooms_in():
    rgb = _gradient()
    flat = np.full((64, 64), 128, dtype=np.uint8)

    rendered = render_parallax(rgb, flat, CameraPose(dolly=1.0))

    assert rendered[32, 0, 0] > 40
    assert rendered[32, 63, 0] < 215
    assert abs(int(rendered[32, 31, 0]) - int(rgb[32, 31, 0])) <= 3


def test_flat_depth_has_no_variance():
    flat = np.full((64, 64), 128, dtype=np.uint8)

    assert depth_variance(flat) < MIN_DEPTH_VARIANCE
    assert depth_variance(luminance_depth(_gradient())) > MIN_DEPTH_VARIANCE


def test_transfer_palette_moves_toward_reference():
    source = np.full((16, 16, 3), (40, 40, 40), dtype=np.uint8)
    reference = np.full((16, 16, 3), (200, 200, 200), dtype=np.uint8)

    graded = transfer_palette(source, reference)

    assert graded.mean() > source.mean() + 100


@pytest.mark.asyncio
async def test_scene_proxy_rejects_flat_scene():
    frame_extraction = MagicMock()
    frame_extraction.extract_representative_frame = AsyncMock(return_value=make_style_reference())
    fetcher = MagicMock()
    fetcher.fetch_image = AsyncMock(return_value=np.full((64, 64, 3), 90, dtype=np.uint8))
    service = SceneProxyService(_storage(), frame_extraction, fetcher)

    proxy = await service.create_proxy_from_video("user_1", "video_src", "https://cdn.test/v.mp4")

    assert proxy.status == "failed"
    assert proxy.error == "Insufficient parallax depth for scene proxy."


@pytest.mark.asyncio
async def test_scene_proxy_ready_for_deep_scene():
    frame_extraction = MagicMock()
    frame_extraction.extract_representative_frame = AsyncMock(return_value=make_style_reference())
    fetcher = MagicMock()
    fetcher.fetch_image = AsyncMock(return_value=_gradient())
    service = SceneProxyService(_storage(), frame_extraction, fetcher)

    proxy = await service.create_proxy_from_video("user_1", "video_src", "https://cdn.test/v.mp4")

    assert proxy.status == "ready"
    assert proxy.depth_map_url == "https://cdn.test/stored.png"


@pytest.mark.asyncio
async def test_scene_proxy_failure_is_reported_not_raised():
    frame_extraction = MagicMock()
    frame_extraction.extract_representative_frame = AsyncMock(side_effect=RuntimeError("decode error"))
    service = SceneProxyService(_storage(), frame_extraction, MagicMock())

    proxy = await service.create_proxy_from_video("user_1", "video_src", "https://cdn.test/v.mp4")

    assert proxy.status == "failed"
    assert proxy.error == "decode error"


@pytest.mark.asyncio
async def test_render_scene_proxy_requires_proxy():
    post_processing = ContinuityPostProcessingService(MagicMock(), MagicMock(), MagicMock())

    with pytest.raises(ValueError):
        await post_processing.render_scene_proxy("user_1", None, "shot_1")


@pytest.mark.asyncio
async def test_render_scene_proxy_drops_unset_camera_fields():
    scene_proxy = MagicMock()
    scene_proxy.render_from_proxy = AsyncMock(
        return_value=SceneProxyRender(id="r", proxy_id="proxy_1", shot_id="shot_1", render_url="u")
    )
    post_processing = ContinuityPostProcessingService(MagicMock(), MagicMock(), scene_proxy)
    proxy = _proxy()

    await post_processing.render_scene_proxy("user_1", proxy, "shot_1", CameraPose(yaw=0.2))
    assert scene_proxy.render_from_proxy.await_args.args[3] == CameraPose(yaw=0.2)

    await post_processing.render_scene_proxy("user_1", proxy, "shot_1", CameraPose())
    assert scene_proxy.render_from_proxy.await_args.args[3] is None


@pytest.mark.asyncio
async def test_palette_match_failure_reports_not_applied():
    video_client = MagicMock()
    video_client.get_video_url = AsyncMock(return_value=None)
    matcher = PaletteMatcher(_storage(), video_client, MagicMock())

    result = await matcher.match_video("video_1", "https://cdn.test/ref.png", "user_1")

    assert result.applied is False
    assert result.reason


@pytest.mark.asyncio
async def test_image_palette_match_stores_graded_png():
    rng = np.random.default_rng(7)
    source = rng.integers(0, 120, size=(16, 16, 3), dtype=np.uint8)
    reference = rng.integers(120, 255, size=(16, 16, 3), dtype=np.uint8)
    fetcher = MagicMock()
    fetcher.fetch_image = AsyncMock(side_effect=[source, reference])
    storage = _storage()
    matcher = PaletteMatcher(storage, MagicMock(), fetcher)

    result = await matcher.match_image("user_1", "https://cdn.test/src.png", "https://cdn.test/ref.png")

    assert result.applied is True
    assert result.image_url == "https://cdn.test/stored.png"
    args = storage.save_from_buffer.await_args.args
    assert args[0] == "user_1"
    assert args[3] == "image/png"
    assert args[1].startswith(b"\x89PNG")


@pytest.mark.asyncio
async def test_image_palette_fetch_failure_is_not_applied():
    fetcher = MagicMock()
    fetcher.fetch_image = AsyncMock(side_effect=RuntimeError("404"))
    matcher = PaletteMatcher(_storage(), MagicMock(), fetcher)

    result = await matcher.match_image("user_1", "https://cdn.test/src.png", "https://cdn.test/ref.png")

    assert result.applied is False
    assert "404" in result.reason


def test_scene_proxy_depth_model_comes_from_settings(monkeypatch):
    monkeypatch.setattr(settings.quality, "depth_model", "Intel/dpt-hybrid-midas")

    assert SceneProxyService(_storage(), MagicMock()).depth_model == "Intel/dpt-hybrid-midas"
    assert SceneProxyService(_storage(), MagicMock(), depth_model="other/depth").depth_model == "other/depth"


def test_scene_proxy_depth_model_failure_falls_back_to_luminance(monkeypatch):
    service = SceneProxyService(_storage(), MagicMock(), depth_model="broken/depth")
    monkeypatch.setattr(service, "_model_depth", MagicMock(side_effect=RuntimeError("no weights")))
    rgb = _gradient()

    assert np.array_equal(service._estimate_depth(rgb), luminance_depth(rgb))
