"""Pydantic models for continuity sessions and shots.

A session is an ordered list of shots that should read as one continuous
piece of footage. Each shot carries the anchor it was generated from
(frame bridge, style reference, seed) so the next shot can inherit it.
"""

from datetime import datetime, timezone
from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

GenerationMode = Literal["continuity", "standard"]
ContinuityMode = Literal["frame-bridge", "style-match", "native", "none"]
ShotStatus = Literal["draft", "generating", "completed", "failed"]
SessionStatus = Literal["active", "archived"]
FramePosition = Literal["first", "last", "representative"]
ContinuityMechanism = Literal[
    "scene-proxy",
    "native-style-ref",
    "frame-bridge",
    "ip-adapter",
    "seed-only",
    "none",
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Resolution(BaseModel):
    width: int
    height: int


class StyleReference(BaseModel):
    """Loose stylistic anchor extracted from an earlier video or an image.

    Representative frames are picked by the frame-extraction collaborator
    (best-scoring sampled timestamp), not necessarily the last frame.
    """

    id: str
    source_video_id: Optional[str] = None
    source_image_url: Optional[str] = None
    frame_url: str
    frame_timestamp: float = 0.0
    resolution: Resolution
    aspect_ratio: str = "16:9"
    extracted_at: datetime = Field(default_factory=utcnow)


class FrameBridge(BaseModel):
    """Literal start-image anchor taken from the previous shot's video."""

    id: str
    source_video_id: str
    source_shot_id: str
    frame_url: str
    frame_position: FramePosition = "last"
    frame_timestamp: float = 0.0
    resolution: Resolution
    aspect_ratio: str = "16:9"
    extracted_at: datetime = Field(default_factory=utcnow)


class CameraPose(BaseModel):
    """Camera adjustment deltas relative to the proxy's reference frame."""

    yaw: Optional[float] = None
    pitch: Optional[float] = None
    roll: Optional[float] = None
    dolly: Optional[float] = None


class SceneProxy(BaseModel):
    """Depth-parallax proxy of a source video, re-rendered for camera changes."""

    id: str
    source_video_id: str
    proxy_type: Literal["depth-parallax"] = "depth-parallax"
    reference_frame_url: str
    depth_map_url: Optional[str] = None
    status: Literal["building", "ready", "failed"] = "building"
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class SceneProxyRender(BaseModel):
    id: str
    proxy_id: str
    shot_id: str
    render_url: str
    camera_pose: Optional[CameraPose] = None
    created_at: datetime = Field(default_factory=utcnow)


class SeedInfo(BaseModel):
    """Provider seed of a finished shot. Only portable within one provider."""

    seed: int
    provider: str
    model_id: str
    extracted_at: datetime = Field(default_factory=utcnow)


class QualityThresholds(BaseModel):
    style: float = Field(default=0.75, ge=0.0, le=1.0)
    identity: float = Field(default=0.6, ge=0.0, le=1.0)


class SessionSettings(BaseModel):
    """Per-session defaults applied to new shots and to the retry loop."""

    generation_mode: GenerationMode = "continuity"
    default_continuity_mode: ContinuityMode = "frame-bridge"
    default_style_strength: float = Field(default=0.6, ge=0.0, le=1.0)
    default_model: str = "veo-3.1-generate-001"
    auto_extract_frame_bridge: bool = True
    use_character_consistency: bool = False
    use_scene_proxy: bool = False
    auto_retry_on_failure: bool = True
    max_retries: int = Field(default=1, ge=0)
    quality_thresholds: QualityThresholds = Field(default_factory=QualityThresholds)
    enable_palette_matching: bool = False


class ContinuityShot(BaseModel):
    id: str
    session_id: str
    sequence_index: int
    user_prompt: str
    generation_mode: GenerationMode = "continuity"
    continuity_mode: ContinuityMode = "frame-bridge"
    style_strength: float = Field(default=0.6, ge=0.0, le=1.0)
    style_reference_id: Optional[str] = None
    model_id: str
    character_asset_id: Optional[str] = None
    camera: Optional[CameraPose] = None
    use_scene_proxy: Optional[bool] = None

    status: ShotStatus = "draft"
    video_asset_id: Optional[str] = None
    video_url: Optional[str] = None
    generated_keyframe_url: Optional[str] = None
    scene_proxy_render_url: Optional[str] = None
    frame_bridge: Optional[FrameBridge] = None
    style_reference: Optional[StyleReference] = None
    seed_info: Optional[SeedInfo] = None
    inherited_seed: Optional[int] = None
    quality_score: Optional[float] = None
    style_score: Optional[float] = None
    identity_score: Optional[float] = None
    retry_count: int = 0
    continuity_mechanism_used: Optional[ContinuityMechanism] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    generated_at: Optional[datetime] = None


class ContinuitySession(BaseModel):
    """Ordered shot list plus the shared anchors and defaults.

    ``version`` is the optimistic-concurrency counter; 0 means the session
    has never been persisted.
    """

    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    primary_style_reference: Optional[StyleReference] = None
    scene_proxy: Optional[SceneProxy] = None
    shots: list[ContinuityShot] = Field(default_factory=list)
    default_settings: SessionSettings = Field(default_factory=SessionSettings)
    status: SessionStatus = "active"
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _check_shot_order(self) -> "ContinuitySession":
        indexes = [shot.sequence_index for shot in self.shots]
        if any(b <= a for a, b in zip(indexes, indexes[1:])):
            raise ValueError(
                f"shots must have strictly increasing sequence_index, got {indexes}"
            )
        return self

    def get_shot(self, shot_id: str) -> Optional[ContinuityShot]:
        return next((s for s in self.shots if s.id == shot_id), None)

    def previous_shot(self, shot: ContinuityShot) -> Optional[ContinuityShot]:
        """Nearest shot before ``shot`` in sequence order."""
        earlier = [s for s in self.shots if s.sequence_index < shot.sequence_index]
        return earlier[-1] if earlier else None

    def next_sequence_index(self) -> int:
        return self.shots[-1].sequence_index + 1 if self.shots else 0

    def replace_shot(self, shot: ContinuityShot) -> None:
        """Replace the shot with the same id, or insert it in sequence order.

        Raises:
            ValueError: If an inserted shot collides with an existing index.
        """
        for i, existing in enumerate(self.shots):
            if existing.id == shot.id:
                self.shots[i] = shot
                return

        if any(s.sequence_index == shot.sequence_index for s in self.shots):
            raise ValueError(
                f"sequence_index {shot.sequence_index} already used in session {self.id}"
            )
        self.shots.append(shot)
        self.shots.sort(key=lambda s: s.sequence_index)
