"""Style and identity quality gate for generated shots.

The gate always produces a style score: CLIP similarity when available,
an RGB histogram intersection otherwise, and 0.0 when the media itself
cannot be fetched. Identity scoring is best-effort and is omitted on any
face-embedding failure.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Literal, Optional

import numpy as np
from pydantic import BaseModel

from shotweave.config import settings
from shotweave.services.clip_embedding_service import CLIPEmbeddingService
from shotweave.services.face_matching import FaceMatchingService
from shotweave.services.media_fetcher import MediaFetcher

logger = logging.getLogger(__name__)


class QualityGateRequest(BaseModel):
    reference_image_url: str
    generated_video_url: str
    character_reference_url: Optional[str] = None
    style_threshold: float = 0.75
    identity_threshold: float = 0.6
    user_id: Optional[str] = None


class QualityGateResult(BaseModel):
    style_score: float
    identity_score: Optional[float] = None
    passed: bool
    style_method: Literal["clip", "histogram", "unavailable"]


def histogram_similarity(first: np.ndarray, second: np.ndarray, bins: int = 8) -> float:
    """Mean per-channel histogram intersection of two RGB images, in [0, 1]."""
    scores = []
    for channel in range(3):
        h1, _ = np.histogram(first[..., channel], bins=bins, range=(0, 256))
        h2, _ = np.histogram(second[..., channel], bins=bins, range=(0, 256))
        h1 = h1 / max(h1.sum(), 1)
        h2 = h2 / max(h2.sum(), 1)
        scores.append(float(np.minimum(h1, h2).sum()))
    return float(np.clip(np.mean(scores), 0.0, 1.0))


class QualityGateService:
    """Scores a generated video's representative frame against references."""

    def __init__(
        self,
        fetcher: Optional[MediaFetcher] = None,
        clip_service: Optional[CLIPEmbeddingService] = None,
        face_service: Optional[FaceMatchingService] = None,
        disable_clip: Optional[bool] = None,
        enable_face_embedding: Optional[bool] = None,
        histogram_bins: Optional[int] = None,
    ):
        self.fetcher = fetcher or MediaFetcher()
        self.clip_service = clip_service or CLIPEmbeddingService(settings.quality.clip_model)
        self.face_service = face_service or FaceMatchingService()
        self.disable_clip = (
            settings.quality.disable_clip if disable_clip is None else disable_clip
        )
        self.enable_face_embedding = (
            settings.quality.enable_face_embedding
            if enable_face_embedding is None
            else enable_face_embedding
        )
        self.histogram_bins = histogram_bins or settings.quality.histogram_bins

    async def evaluate(self, request: QualityGateRequest) -> QualityGateResult:
        frame = await self._load(self.fetcher.fetch_video_frame, request.generated_video_url)
        reference = await self._load(self.fetcher.fetch_image, request.reference_image_url)

        if frame is None or reference is None:
            style_score, method = 0.0, "unavailable"
        else:
            style_score, method = await self._style_score(frame, reference)

        identity_score = None
        if request.character_reference_url and frame is not None and self.enable_face_embedding:
            identity_score = await self._identity_score(frame, request.character_reference_url)

        passed = style_score >= request.style_threshold and (
            identity_score is None or identity_score >= request.identity_threshold
        )
        logger.info(
            f"Quality gate: style={style_score:.3f} ({method}) "
            f"identity={identity_score} passed={passed}"
        )
        return QualityGateResult(
            style_score=style_score,
            identity_score=identity_score,
            passed=passed,
            style_method=method,
        )

    async def _load(
        self, loader: Callable[[str], Awaitable[np.ndarray]], url: str
    ) -> Optional[np.ndarray]:
        try:
            return await loader(url)
        except Exception as e:
            logger.warning(f"Quality gate could not load {url}: {e}")
            return None

    async def _style_score(self, frame: np.ndarray, reference: np.ndarray) -> tuple[float, str]:
        if not self.disable_clip:
            try:
                score = await asyncio.to_thread(self.clip_service.image_similarity, frame, reference)
                return round(score, 4), "clip"
            except Exception as e:
                logger.warning(f"CLIP scoring unavailable, using histogram fallback: {e}")

        score = histogram_similarity(frame, reference, self.histogram_bins)
        return round(score, 4), "histogram"

    async def _identity_score(self, frame: np.ndarray, character_reference_url: str) -> Optional[float]:
        try:
            reference = await self.fetcher.fetch_image(character_reference_url)
            score = await asyncio.to_thread(self.face_service.identity_similarity, frame, reference)
        except Exception as e:
            logger.warning(f"Identity scoring skipped: {e}")
            return None
        return round(max(0.0, min(1.0, score)), 4)
