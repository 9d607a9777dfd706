"""Colour grading toward a reference palette (Reinhard transfer in LAB space).

Matching is optional post-processing: every public method reports
``applied=False`` instead of raising when grading cannot be done.
"""

import asyncio
import logging
import tempfile
from pathlib import Path
from typing import Optional

import numpy as np
from pydantic import BaseModel

from shotweave.services.continuity.base import StorageClient, VideoGenerationClient
from shotweave.services.media_fetcher import MediaFetcher, encode_png

logger = logging.getLogger(__name__)


class PaletteMatchResult(BaseModel):
    applied: bool
    asset_id: Optional[str] = None
    video_url: Optional[str] = None
    reason: Optional[str] = None


class ImagePaletteResult(BaseModel):
    applied: bool
    image_url: Optional[str] = None
    reason: Optional[str] = None


def _lab_stats(lab: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    flat = lab.reshape(-1, 3)
    return flat.mean(axis=0), flat.std(axis=0)


def transfer_palette(source: np.ndarray, reference: np.ndarray) -> np.ndarray:
    """Shift source LAB channel statistics onto the reference (both RGB uint8)."""
    import cv2

    ref_mean, ref_std = _lab_stats(cv2.cvtColor(reference, cv2.COLOR_RGB2LAB).astype(np.float32))
    return _apply_transfer(source, ref_mean, ref_std)


def _apply_transfer(source: np.ndarray, ref_mean: np.ndarray, ref_std: np.ndarray) -> np.ndarray:
    import cv2

    src_lab = cv2.cvtColor(source, cv2.COLOR_RGB2LAB).astype(np.float32)
    src_mean, src_std = _lab_stats(src_lab)
    scale = np.where(src_std > 1e-6, ref_std / np.maximum(src_std, 1e-6), 1.0)
    graded = (src_lab - src_mean) * scale + ref_mean
    graded = np.clip(graded, 0, 255).astype(np.uint8)
    return cv2.cvtColor(graded, cv2.COLOR_LAB2RGB)


class PaletteMatcher:

    def __init__(
        self,
        storage: StorageClient,
        video_client: VideoGenerationClient,
        fetcher: Optional[MediaFetcher] = None,
    ):
        self.storage = storage
        self.video_client = video_client
        self.fetcher = fetcher or MediaFetcher()

    async def match_image(self, user_id: str, source_url: str, reference_url: str) -> ImagePaletteResult:
        try:
            source, reference = await asyncio.gather(
                self.fetcher.fetch_image(source_url),
                self.fetcher.fetch_image(reference_url),
            )
            graded = await asyncio.to_thread(transfer_palette, source, reference)
            png = await asyncio.to_thread(encode_png, graded)
            stored = await self.storage.save_from_buffer(
                user_id, png, "palette-matched-image", "image/png", {"source": "palette-match"}
            )
        except Exception as e:
            logger.warning(f"Image palette match skipped: {e}")
            return ImagePaletteResult(applied=False, reason=str(e))
        return ImagePaletteResult(applied=True, image_url=stored.view_url)

    async def match_video(
        self, asset_id: str, reference_url: str, user_id: Optional[str] = None
    ) -> PaletteMatchResult:
        try:
            video_url = await self.video_client.get_video_url(asset_id, user_id)
            if not video_url:
                return PaletteMatchResult(applied=False, reason="video url unavailable")

            reference = await self.fetcher.fetch_image(reference_url)
            source_path = await self.fetcher.fetch_video(video_url)
            try:
                data = await asyncio.to_thread(_grade_video_file, source_path, reference)
            finally:
                source_path.unlink(missing_ok=True)

            stored = await self.storage.save_from_buffer(
                user_id or "",
                data,
                "palette-matched-video",
                "video/mp4",
                {"source": "palette-match", "original_asset_id": asset_id},
            )
        except Exception as e:
            logger.warning(f"Video palette match skipped for {asset_id}: {e}")
            return PaletteMatchResult(applied=False, reason=str(e))

        return PaletteMatchResult(
            applied=True,
            asset_id=stored.storage_path or stored.view_url,
            video_url=stored.view_url,
        )


def _grade_video_file(source_path: Path, reference: np.ndarray) -> bytes:
    """Grade every frame of a video file and return the re-encoded mp4 bytes."""
    import cv2

    ref_mean, ref_std = _lab_stats(cv2.cvtColor(reference, cv2.COLOR_RGB2LAB).astype(np.float32))

    cap = cv2.VideoCapture(str(source_path))
    if not cap.isOpened():
        raise ValueError(f"Cannot open video: {source_path}")

    fps = cap.get(cv2.CAP_PROP_FPS) or 24.0
    width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
    height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))

    with tempfile.NamedTemporaryFile(suffix=".mp4", dir=source_path.parent, delete=False) as fh:
        out_path = Path(fh.name)

    writer = cv2.VideoWriter(str(out_path), cv2.VideoWriter_fourcc(*"mp4v"), fps, (width, height))
    try:
        frames = 0
        while True:
            ok, frame = cap.read()
            if not ok:
                break
            rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
            graded = _apply_transfer(rgb, ref_mean, ref_std)
            writer.write(cv2.cvtColor(graded, cv2.COLOR_RGB2BGR))
            frames += 1
    finally:
        cap.release()
        writer.release()

    try:
        if frames == 0:
            raise ValueError("Video contained no decodable frames")
        return out_path.read_bytes()
    finally:
        out_path.unlink(missing_ok=True)
