"""Post-generation steps for continuity shots: grading, scoring, proxies."""

import logging
from typing import Optional

from shotweave.schemas.continuity import CameraPose, SceneProxy, SceneProxyRender
from shotweave.services.continuity.palette_matching import (
    ImagePaletteResult,
    PaletteMatcher,
    PaletteMatchResult,
)
from shotweave.services.continuity.quality_gate import (
    QualityGateRequest,
    QualityGateResult,
    QualityGateService,
)
from shotweave.services.continuity.scene_proxy import SceneProxyService

logger = logging.getLogger(__name__)


class ContinuityPostProcessingService:

    def __init__(
        self,
        palette_matcher: PaletteMatcher,
        quality_gate: QualityGateService,
        scene_proxy: SceneProxyService,
    ):
        self.palette_matcher = palette_matcher
        self.quality_gate = quality_gate
        self.scene_proxy = scene_proxy

    async def match_palette(
        self, asset_id: str, reference_url: str, *, user_id: Optional[str] = None
    ) -> PaletteMatchResult:
        return await self.palette_matcher.match_video(asset_id, reference_url, user_id)

    async def match_image_palette(
        self, user_id: str, source_url: str, reference_url: str
    ) -> ImagePaletteResult:
        return await self.palette_matcher.match_image(user_id, source_url, reference_url)

    async def evaluate_quality(self, request: QualityGateRequest) -> QualityGateResult:
        return await self.quality_gate.evaluate(request)

    async def render_scene_proxy(
        self,
        user_id: str,
        proxy: Optional[SceneProxy],
        shot_id: str,
        camera: Optional[CameraPose] = None,
    ) -> SceneProxyRender:
        """Render a start frame from a ready proxy.

        Raises:
            ValueError: If no proxy is supplied.
        """
        if proxy is None:
            raise ValueError("Scene proxy is required to render")

        pose = None
        if camera is not None:
            deltas = camera.model_dump(exclude_none=True)
            pose = CameraPose(**deltas) if deltas else None

        return await self.scene_proxy.render_from_proxy(user_id, proxy, shot_id, pose)

    async def create_scene_proxy_from_video(
        self, user_id: str, video_id: str, video_url: str
    ) -> SceneProxy:
        return await self.scene_proxy.create_proxy_from_video(user_id, video_id, video_url)
