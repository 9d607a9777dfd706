"""Abstract collaborator interfaces consumed by the continuity core.

Concrete provider clients, frame extraction and blob storage live outside
this package; the orchestrator only depends on these async contracts.
"""

from abc import ABC, abstractmethod
from typing import Any, Optional

from pydantic import BaseModel, Field

from shotweave.schemas.continuity import FramePosition, FrameBridge, StyleReference


class VideoGenerationResult(BaseModel):
    """Outcome of a single provider generation call.

    ``raw`` keeps the provider's response so seeds and metrics can be read
    from provider-specific locations.
    """

    asset_id: str
    video_url: str
    metrics: Optional[dict[str, Any]] = None
    raw: dict[str, Any] = Field(default_factory=dict)


class StoredObject(BaseModel):
    view_url: str
    storage_path: Optional[str] = None


class VideoGenerationClient(ABC):
    """Video-generation provider facade."""

    @abstractmethod
    async def generate_video(self, prompt: str, options: dict[str, Any]) -> VideoGenerationResult:
        """Render a video.

        Args:
            prompt: User prompt for the shot.
            options: Provider options (model, start_image, seed fragment,
                native style fragment, character_reference_url, ...).

        Returns:
            VideoGenerationResult for the rendered asset.
        """
        ...

    @abstractmethod
    async def get_video_url(self, asset_id: str, user_id: Optional[str] = None) -> Optional[str]:
        """Resolve a playable URL for an asset id or storage path, or None."""
        ...

    @abstractmethod
    async def get_character_reference_url(self, user_id: str, asset_id: str) -> str:
        ...


class FrameExtractionClient(ABC):

    @abstractmethod
    async def extract_bridge_frame(
        self,
        user_id: str,
        video_id: str,
        video_url: str,
        shot_id: str,
        position: FramePosition = "last",
    ) -> FrameBridge:
        ...

    @abstractmethod
    async def extract_representative_frame(
        self,
        user_id: str,
        video_id: str,
        video_url: str,
        shot_id: str,
    ) -> StyleReference:
        """Pick the best-scoring frame among several sampled timestamps."""
        ...


class StyleSynthesisClient(ABC):

    @abstractmethod
    async def create_from_video(self, user_id: str, video_id: str, video_url: str) -> StyleReference:
        ...

    @abstractmethod
    async def create_from_image(self, user_id: str, image_url: str) -> StyleReference:
        ...

    @abstractmethod
    async def generate_styled_keyframe(
        self,
        user_id: str,
        prompt: str,
        style_reference_url: str,
        strength: float,
        aspect_ratio: Optional[str] = None,
    ) -> str:
        """Synthesize an image-conditioned keyframe and return its URL.

        Raises:
            RuntimeError: If the keyframe model returned no output.
        """
        ...


class StorageClient(ABC):

    @abstractmethod
    async def save_from_buffer(
        self,
        user_id: str,
        data: bytes,
        label: str,
        content_type: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> StoredObject:
        ...

    @abstractmethod
    async def get_view_url(self, user_id: str, storage_path: str) -> StoredObject:
        ...
