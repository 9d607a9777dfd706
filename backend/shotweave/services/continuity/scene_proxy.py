"""Depth-parallax scene proxies.

A proxy is a representative frame plus a depth map. Rendering shifts each
depth layer proportionally to the camera yaw/pitch deltas, letting a shot
reuse the scene geometry from a different viewpoint as its start image.
"""

import asyncio
import logging
import uuid
from typing import Optional

import numpy as np

from shotweave.config import settings
from shotweave.schemas.continuity import CameraPose, SceneProxy, SceneProxyRender
from shotweave.services.continuity.base import FrameExtractionClient, StorageClient
from shotweave.services.media_fetcher import MediaFetcher, encode_png

logger = logging.getLogger(__name__)

PARALLAX_SCALE = 0.05
MIN_DOLLY_ZOOM = 0.1
MIN_DEPTH_VARIANCE = 0.005


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def luminance_depth(rgb: np.ndarray) -> np.ndarray:
    """Greyscale luminance as a stand-in depth map (bright = near)."""
    import cv2

    return cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)


def normalize_depth(depth: np.ndarray) -> np.ndarray:
    depth = depth.astype(np.float32)
    span = float(depth.max() - depth.min()) or 1.0
    return np.clip((depth - depth.min()) / span * 255.0, 0, 255).astype(np.uint8)


def depth_variance(depth: np.ndarray) -> float:
    """Variance of a depth map on a 128x128 thumbnail, values scaled to [0, 1]."""
    import cv2

    thumb = cv2.resize(depth, (128, 128), interpolation=cv2.INTER_AREA).astype(np.float64) / 255.0
    return float(thumb.var())


def render_parallax(rgb: np.ndarray, depth: np.ndarray, camera: Optional[CameraPose] = None) -> np.ndarray:
    """Re-project an RGB frame by depth layer for a camera change.

    Layers are painted far to near so nearer pixels win collisions; pixels
    left uncovered keep the source frame's colour.

    Roll and dolly are applied afterwards as a rotation and zoom about the
    frame centre.
    """
    import cv2

    height, width = rgb.shape[:2]
    if depth.shape[:2] != (height, width):
        depth = cv2.resize(depth, (width, height), interpolation=cv2.INTER_LINEAR)

    yaw = (camera.yaw if camera and camera.yaw is not None else 0.0)
    pitch = (camera.pitch if camera and camera.pitch is not None else 0.0)

    depth_norm = depth.astype(np.float32) / 255.0
    ys, xs = np.indices((height, width))
    nx = np.rint(xs + (0.5 - depth_norm) * yaw * width * PARALLAX_SCALE).astype(np.int64)
    ny = np.rint(ys + (0.5 - depth_norm) * pitch * height * PARALLAX_SCALE).astype(np.int64)
    valid = (nx >= 0) & (nx < width) & (ny >= 0) & (ny < height)

    order = np.argsort(depth[valid], kind="stable")
    src_y, src_x = ys[valid][order], xs[valid][order]
    dst_y, dst_x = ny[valid][order], nx[valid][order]

    output = rgb.copy()
    covered = np.zeros((height, width), dtype=bool)
    painted = np.zeros_like(rgb)
    painted[dst_y, dst_x] = rgb[src_y, src_x]
    covered[dst_y, dst_x] = True
    output[covered] = painted[covered]

    roll = (camera.roll if camera and camera.roll is not None else 0.0)
    dolly = (camera.dolly if camera and camera.dolly is not None else 0.0)
    if roll or dolly:
        # roll in degrees (counter-clockwise), dolly as a zoom fraction
        zoom = max(MIN_DOLLY_ZOOM, 1.0 + dolly)
        matrix = cv2.getRotationMatrix2D(((width - 1) / 2.0, (height - 1) / 2.0), roll, zoom)
        output = cv2.warpAffine(
            output, matrix, (width, height),
            flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REFLECT,
        )
    return output


class SceneProxyService:
    """Builds depth-parallax proxies and renders camera-adjusted frames."""

    def __init__(
        self,
        storage: StorageClient,
        frame_extraction: FrameExtractionClient,
        fetcher: Optional[MediaFetcher] = None,
        depth_model: Optional[str] = None,
    ):
        self.storage = storage
        self.frame_extraction = frame_extraction
        self.fetcher = fetcher or MediaFetcher()
        self.depth_model = depth_model if depth_model is not None else settings.quality.depth_model
        self._depth_pipeline = None

    async def create_proxy_from_video(self, user_id: str, video_id: str, video_url: str) -> SceneProxy:
        """Build a proxy; failures come back as a proxy with status "failed"."""
        reference_frame_url = ""
        try:
            representative = await self.frame_extraction.extract_representative_frame(
                user_id, video_id, video_url, "scene-proxy"
            )
            reference_frame_url = representative.frame_url
            rgb = await self.fetcher.fetch_image(reference_frame_url)
            depth = await asyncio.to_thread(self._estimate_depth, rgb)

            stored = await self.storage.save_from_buffer(
                user_id,
                encode_png(depth),
                "scene-proxy-depth",
                "image/png",
                {"source": "scene-proxy-depth", "video_id": video_id},
            )

            variance = depth_variance(depth)
            if variance < MIN_DEPTH_VARIANCE:
                logger.warning(f"Scene proxy for {video_id} rejected: depth variance {variance:.4f}")
                return SceneProxy(
                    id=_new_id("proxy"),
                    source_video_id=video_id,
                    reference_frame_url=reference_frame_url,
                    depth_map_url=stored.view_url,
                    status="failed",
                    error="Insufficient parallax depth for scene proxy.",
                )

            return SceneProxy(
                id=_new_id("proxy"),
                source_video_id=video_id,
                reference_frame_url=reference_frame_url,
                depth_map_url=stored.view_url,
                status="ready",
            )
        except Exception as e:
            logger.error(f"Scene proxy creation failed for video {video_id}: {e}")
            return SceneProxy(
                id=_new_id("proxy"),
                source_video_id=video_id,
                reference_frame_url=reference_frame_url,
                status="failed",
                error=str(e),
            )

    async def render_from_proxy(
        self,
        user_id: str,
        proxy: SceneProxy,
        shot_id: str,
        camera: Optional[CameraPose] = None,
    ) -> SceneProxyRender:
        if not proxy.reference_frame_url or not proxy.depth_map_url:
            raise ValueError("Scene proxy is missing reference assets")

        rgb, depth_rgb = await asyncio.gather(
            self.fetcher.fetch_image(proxy.reference_frame_url),
            self.fetcher.fetch_image(proxy.depth_map_url),
        )
        depth = depth_rgb[..., 0] if depth_rgb.ndim == 3 else depth_rgb
        rendered = await asyncio.to_thread(render_parallax, rgb, depth, camera)

        stored = await self.storage.save_from_buffer(
            user_id,
            encode_png(rendered),
            "scene-proxy-render",
            "image/png",
            {"source": "scene-proxy-render", "proxy_id": proxy.id, "shot_id": shot_id},
        )
        return SceneProxyRender(
            id=_new_id("render"),
            proxy_id=proxy.id,
            shot_id=shot_id,
            render_url=stored.view_url,
            camera_pose=camera,
        )

    def _estimate_depth(self, rgb: np.ndarray) -> np.ndarray:
        if self.depth_model:
            try:
                return self._model_depth(rgb)
            except Exception as e:
                logger.warning(f"Depth model failed, using luminance fallback: {e}")
        return luminance_depth(rgb)

    def _model_depth(self, rgb: np.ndarray) -> np.ndarray:
        import cv2
        from PIL import Image

        if self._depth_pipeline is None:
            from transformers import pipeline

            logger.info(f"Loading depth model {self.depth_model}...")
            self._depth_pipeline = pipeline("depth-estimation", model=self.depth_model)

        result = self._depth_pipeline(Image.fromarray(rgb))
        depth = normalize_depth(np.asarray(result["depth"]))
        return cv2.resize(depth, (rgb.shape[1], rgb.shape[0]), interpolation=cv2.INTER_LINEAR)
