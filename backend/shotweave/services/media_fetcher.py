"""Download reference images and generated videos for scoring and grading.

Remote URLs are fetched with httpx and retried on transport errors and 5xx
responses; anything without an http(s) scheme is read as a local path.
"""

import asyncio
import io
import logging
import tempfile
from pathlib import Path
from typing import Optional

import httpx
import numpy as np
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from shotweave.config import settings

logger = logging.getLogger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return False


class MediaFetcher:
    """Fetch images and single video frames as RGB numpy arrays."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        tmp_dir: Optional[Path] = None,
    ):
        self.timeout = timeout or settings.media.download_timeout
        self.max_attempts = max_attempts or settings.media.max_download_attempts
        self.tmp_dir = tmp_dir or settings.media.tmp_dir

    async def fetch_bytes(self, url: str) -> bytes:
        if not url.startswith(("http://", "https://")):
            path = Path(url.removeprefix("file://"))
            return await asyncio.to_thread(path.read_bytes)

        @retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda retry_state: logger.warning(
                f"Media download retry {retry_state.attempt_number}/{self.max_attempts} "
                f"for {url}: {retry_state.outcome.exception()}"
            ),
            reraise=True,
        )
        async def _download() -> bytes:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.content

        return await _download()

    async def fetch_image(self, url: str) -> np.ndarray:
        """Download an image and decode it to an RGB uint8 array."""
        from PIL import Image

        data = await self.fetch_bytes(url)
        with Image.open(io.BytesIO(data)) as img:
            return np.asarray(img.convert("RGB"))

    async def fetch_video_frame(self, url: str, position: float = 0.5) -> np.ndarray:
        """Download a video and decode the frame at ``position`` (0..1) as RGB."""
        data = await self.fetch_bytes(url)
        return await asyncio.to_thread(self._decode_frame, data, position)

    async def fetch_video(self, url: str) -> Path:
        """Download a video into the tmp dir and return its path."""
        data = await self.fetch_bytes(url)
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(suffix=".mp4", dir=self.tmp_dir, delete=False) as fh:
            fh.write(data)
        return Path(fh.name)

    def _decode_frame(self, data: bytes, position: float) -> np.ndarray:
        import cv2

        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(suffix=".mp4", dir=self.tmp_dir) as fh:
            fh.write(data)
            fh.flush()
            cap = cv2.VideoCapture(fh.name)
            try:
                if not cap.isOpened():
                    raise ValueError("Cannot open downloaded video")
                frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
                target = max(0, min(frame_count - 1, int(frame_count * position)))
                cap.set(cv2.CAP_PROP_POS_FRAMES, target)
                ok, frame = cap.read()
                if not ok or frame is None:
                    raise ValueError(f"Cannot read frame {target} of {frame_count}")
            finally:
                cap.release()

        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)


def encode_png(image: np.ndarray) -> bytes:
    """Encode an RGB (or single-channel) uint8 array as PNG bytes."""
    import cv2

    if image.ndim == 3:
        image = cv2.cvtColor(image, cv2.COLOR_RGB2BGR)
    ok, buffer = cv2.imencode(".png", image)
    if not ok:
        raise ValueError("PNG encoding failed")
    return buffer.tobytes()
