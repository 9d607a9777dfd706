"""Continuity session management.

Creates sessions and shots, edits their settings, and hands shot generation
to ContinuityShotGenerator. Every edit goes through
ContinuitySessionStore.update(), so concurrent edits are version-checked
and reloaded at most once.
"""

import logging
import uuid
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shotweave.config import settings
from shotweave.orchestrator.shot_generator import ContinuityShotGenerator
from shotweave.schemas.continuity import (
    CameraPose,
    ContinuityMode,
    ContinuitySession,
    ContinuityShot,
    GenerationMode,
    QualityThresholds,
    SessionSettings,
    StyleReference,
    utcnow,
)
from shotweave.services.continuity.anchor_service import AnchorService
from shotweave.services.continuity.base import (
    FrameExtractionClient,
    StorageClient,
    StyleSynthesisClient,
    VideoGenerationClient,
)
from shotweave.services.continuity.cost_calculator import CreditCostCalculator, ShotCost
from shotweave.services.continuity.errors import (
    ContinuitySessionNotFoundError,
    ShotNotFoundError,
)
from shotweave.services.continuity.palette_matching import PaletteMatcher
from shotweave.services.continuity.post_processing import ContinuityPostProcessingService
from shotweave.services.continuity.provider_registry import get_provider_from_model
from shotweave.services.continuity.quality_gate import QualityGateService
from shotweave.services.continuity.scene_proxy import SceneProxyService
from shotweave.services.continuity.session_store import ContinuitySessionStore
from shotweave.services.media_fetcher import MediaFetcher

logger = logging.getLogger(__name__)

# Settings a client may change after creation
UPDATABLE_SETTINGS = (
    "generation_mode",
    "default_continuity_mode",
    "default_style_strength",
    "default_model",
    "auto_extract_frame_bridge",
    "use_character_consistency",
    "use_scene_proxy",
    "auto_retry_on_failure",
    "max_retries",
    "quality_thresholds",
    "enable_palette_matching",
)


def default_session_settings() -> SessionSettings:
    cfg = settings.continuity
    return SessionSettings(
        default_style_strength=cfg.default_style_strength,
        default_model=cfg.default_model,
        max_retries=cfg.max_retries,
        quality_thresholds=QualityThresholds(
            style=cfg.style_threshold,
            identity=cfg.identity_threshold,
        ),
    )


def _merge_settings(current: SessionSettings, updates: dict[str, Any]) -> SessionSettings:
    """Apply whitelisted keys; nested thresholds merge instead of replacing."""
    merged = current.model_dump()
    for key in UPDATABLE_SETTINGS:
        if key not in updates or updates[key] is None:
            continue
        value = updates[key]
        if key == "quality_thresholds" and isinstance(value, dict):
            merged[key] = {**merged[key], **{k: v for k, v in value.items() if v is not None}}
        else:
            merged[key] = value
    return SessionSettings.model_validate(merged)


class ContinuitySessionService:

    def __init__(
        self,
        store: ContinuitySessionStore,
        shot_generator: ContinuityShotGenerator,
        video_client: VideoGenerationClient,
        frame_extraction: FrameExtractionClient,
        style_synthesis: StyleSynthesisClient,
        post_processing: ContinuityPostProcessingService,
        anchor_service: Optional[AnchorService] = None,
    ):
        self.store = store
        self.shot_generator = shot_generator
        self.video_client = video_client
        self.frame_extraction = frame_extraction
        self.style_synthesis = style_synthesis
        self.post_processing = post_processing
        self.anchor_service = anchor_service or AnchorService()

    async def create_session(
        self,
        user_id: str,
        name: str,
        *,
        description: Optional[str] = None,
        source_video_id: Optional[str] = None,
        source_image_url: Optional[str] = None,
        initial_prompt: Optional[str] = None,
        settings_overrides: Optional[dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> ContinuitySession:
        """Create a session anchored on a source video or image.

        Idempotent when ``session_id`` names an existing session.

        Raises:
            ValueError: If neither source is given or the source video is unknown.
        """
        if session_id:
            existing = await self.store.get(session_id)
            if existing is not None:
                return existing

        primary = await self._build_style_reference(user_id, source_video_id, source_image_url)
        if primary is None:
            raise ValueError("Must provide source_video_id or source_image_url")

        session = ContinuitySession(
            id=session_id or f"session_{uuid.uuid4().hex}",
            user_id=user_id,
            name=name,
            description=description,
            primary_style_reference=primary,
            default_settings=_merge_settings(default_session_settings(), settings_overrides or {}),
        )
        await self.store.save_with_version(session, 0)
        logger.info(f"Created continuity session {session.id} for user {user_id}")

        if initial_prompt:
            shot = await self.add_shot(session.id, initial_prompt)
            await self.generate_shot(session.id, shot.id)
            return await self.get_session(session.id)

        return session

    async def get_session(self, session_id: str) -> ContinuitySession:
        session = await self.store.get(session_id)
        if session is None:
            raise ContinuitySessionNotFoundError(session_id)
        return session

    async def get_user_sessions(self, user_id: str) -> list[ContinuitySession]:
        return await self.store.find_by_user(user_id)

    async def delete_session(self, session_id: str) -> None:
        if not await self.store.delete(session_id):
            raise ContinuitySessionNotFoundError(session_id)
        logger.info(f"Deleted continuity session {session_id}")

    async def archive_session(self, session_id: str) -> ContinuitySession:
        def mutate(session: ContinuitySession) -> None:
            session.status = "archived"

        return await self.store.update(session_id, mutate)

    async def add_shot(
        self,
        session_id: str,
        prompt: str,
        *,
        continuity_mode: Optional[ContinuityMode] = None,
        generation_mode: Optional[GenerationMode] = None,
        style_strength: Optional[float] = None,
        style_reference_id: Optional[str] = None,
        model_id: Optional[str] = None,
        character_asset_id: Optional[str] = None,
        camera: Optional[CameraPose] = None,
        use_scene_proxy: Optional[bool] = None,
        source_video_id: Optional[str] = None,
    ) -> ContinuityShot:
        """Append a shot after the current last shot.

        The new shot inherits the previous shot's frame bridge (extracting
        one on demand for frame-bridge shots) and, unless told otherwise,
        uses the previous shot as its style reference. A ``source_video_id``
        imports an existing video as an already-completed shot.

        Raises:
            UnsupportedProviderError: Continuity shot on a provider without anchors.
        """
        created: dict[str, ContinuityShot] = {}

        async def mutate(session: ContinuitySession) -> None:
            defaults = session.default_settings
            previous = session.shots[-1] if session.shots else None
            mode = continuity_mode or defaults.default_continuity_mode
            gen_mode = generation_mode or defaults.generation_mode
            model = model_id or defaults.default_model

            if gen_mode == "continuity":
                self.anchor_service.assert_provider_supports_continuity(
                    get_provider_from_model(model), model
                )

            # Only the previous shot's own outgoing frame is a valid bridge
            frame_bridge = None
            if previous is not None and previous.frame_bridge is not None:
                if previous.frame_bridge.source_shot_id == previous.id:
                    frame_bridge = previous.frame_bridge
            if frame_bridge is None and mode == "frame-bridge" and previous is not None:
                frame_bridge = await self._extract_bridge(session, previous)

            shot = ContinuityShot(
                id=f"shot_{uuid.uuid4().hex}",
                session_id=session.id,
                sequence_index=session.next_sequence_index(),
                user_prompt=prompt,
                generation_mode=gen_mode,
                continuity_mode=mode,
                style_strength=(
                    style_strength if style_strength is not None else defaults.default_style_strength
                ),
                style_reference_id=(
                    style_reference_id if style_reference_id is not None
                    else (previous.id if previous else None)
                ),
                model_id=model,
                character_asset_id=character_asset_id,
                camera=camera,
                use_scene_proxy=use_scene_proxy,
                frame_bridge=frame_bridge,
            )
            if source_video_id:
                shot.video_asset_id = source_video_id
                shot.status = "completed"
                shot.generated_at = utcnow()

            session.replace_shot(shot)
            created["shot"] = shot

        await self.store.update(session_id, mutate)
        shot = created["shot"]
        logger.info(f"Added shot {shot.id} (#{shot.sequence_index}) to session {session_id}")
        return shot

    async def generate_shot(self, session_id: str, shot_id: str) -> ContinuityShot:
        return await self.shot_generator.generate_shot(session_id, shot_id)

    async def update_shot(self, session_id: str, shot_id: str, updates: dict[str, Any]) -> ContinuityShot:
        """Patch editable shot fields.

        ``character_asset_id`` set to None (or "") clears it; ``camera``
        deltas merge into the existing pose. Other None values are ignored.
        """
        updated: dict[str, ContinuityShot] = {}

        def mutate(session: ContinuitySession) -> None:
            shot = self._require_shot(session, shot_id)
            data = shot.model_dump()

            for key in ("continuity_mode", "generation_mode", "style_reference_id",
                        "style_strength", "model_id", "use_scene_proxy"):
                if updates.get(key) is not None:
                    data[key] = updates[key]
            if updates.get("prompt") is not None:
                data["user_prompt"] = updates["prompt"]
            if "character_asset_id" in updates:
                data["character_asset_id"] = updates["character_asset_id"] or None
            if updates.get("camera"):
                camera = updates["camera"]
                if isinstance(camera, CameraPose):
                    camera = camera.model_dump()
                deltas = {k: v for k, v in camera.items() if v is not None}
                data["camera"] = {**(data.get("camera") or {}), **deltas}

            next_shot = ContinuityShot.model_validate(data)
            session.replace_shot(next_shot)
            updated["shot"] = next_shot

        await self.store.update(session_id, mutate)
        return updated["shot"]

    async def update_shot_style_reference(
        self, session_id: str, shot_id: str, style_reference_id: Optional[str]
    ) -> ContinuityShot:
        """Point a shot at another shot's style reference ("primary"/None = session primary)."""
        updated: dict[str, ContinuityShot] = {}
        reference_id = None if style_reference_id in (None, "", "primary") else style_reference_id

        def mutate(session: ContinuitySession) -> None:
            shot = self._require_shot(session, shot_id)
            if reference_id is not None:
                self._require_shot(session, reference_id)
            shot.style_reference_id = reference_id
            updated["shot"] = shot

        await self.store.update(session_id, mutate)
        return updated["shot"]

    async def update_primary_style_reference(
        self,
        session_id: str,
        source_video_id: Optional[str] = None,
        source_image_url: Optional[str] = None,
    ) -> ContinuitySession:
        session = await self.get_session(session_id)
        primary = await self._build_style_reference(
            session.user_id, source_video_id, source_image_url
        )
        if primary is None:
            raise ValueError("Must provide source_video_id or source_image_url")

        def mutate(fresh: ContinuitySession) -> None:
            fresh.primary_style_reference = primary

        return await self.store.update(session_id, mutate)

    async def update_session_settings(
        self, session_id: str, updates: dict[str, Any]
    ) -> ContinuitySession:
        ignored = sorted(set(updates) - set(UPDATABLE_SETTINGS))
        if ignored:
            logger.debug(f"Ignoring non-updatable settings for {session_id}: {ignored}")

        def mutate(session: ContinuitySession) -> None:
            session.default_settings = _merge_settings(session.default_settings, updates)

        return await self.store.update(session_id, mutate)

    async def create_scene_proxy(
        self,
        session_id: str,
        source_shot_id: Optional[str] = None,
        source_video_id: Optional[str] = None,
    ) -> ContinuitySession:
        """Build a scene proxy from a shot's video or an arbitrary video.

        A ready proxy turns on ``use_scene_proxy`` for the session.
        """
        session = await self.get_session(session_id)

        video_id = None
        if source_shot_id:
            shot = self._require_shot(session, source_shot_id)
            if not shot.video_asset_id:
                raise ValueError(f"Shot {source_shot_id} has no video asset")
            video_id = shot.video_asset_id
        elif source_video_id:
            video_id = source_video_id

        video_url = (
            await self.video_client.get_video_url(video_id, session.user_id) if video_id else None
        )
        if not video_id or not video_url:
            raise ValueError("Source video not found for scene proxy")

        proxy = await self.post_processing.create_scene_proxy_from_video(
            session.user_id, video_id, video_url
        )
        logger.info(f"Scene proxy {proxy.id} for session {session_id}: {proxy.status}")

        def mutate(fresh: ContinuitySession) -> None:
            fresh.scene_proxy = proxy
            if proxy.status == "ready":
                fresh.default_settings.use_scene_proxy = True

        return await self.store.update(session_id, mutate)

    async def estimate_shot_cost(self, session_id: str, shot_id: str) -> ShotCost:
        session = await self.get_session(session_id)
        shot = self._require_shot(session, shot_id)
        return CreditCostCalculator.calculate_shot_cost(shot, session)

    async def _build_style_reference(
        self,
        user_id: str,
        source_video_id: Optional[str],
        source_image_url: Optional[str],
    ) -> Optional[StyleReference]:
        if source_video_id:
            video_url = await self.video_client.get_video_url(source_video_id, user_id)
            if not video_url:
                raise ValueError(f"Source video not found: {source_video_id}")
            return await self.style_synthesis.create_from_video(user_id, source_video_id, video_url)
        if source_image_url:
            return await self.style_synthesis.create_from_image(user_id, source_image_url)
        return None

    async def _extract_bridge(self, session: ContinuitySession, previous: ContinuityShot):
        if not previous.video_asset_id:
            return None
        try:
            video_url = previous.video_url or await self.video_client.get_video_url(
                previous.video_asset_id, session.user_id
            )
            if not video_url:
                return None
            return await self.frame_extraction.extract_bridge_frame(
                session.user_id, previous.video_asset_id, video_url, previous.id, "last"
            )
        except Exception as e:
            logger.warning(
                f"Frame bridge extraction failed while adding a shot to {session.id}; "
                f"continuing without one: {e}"
            )
            return None

    @staticmethod
    def _require_shot(session: ContinuitySession, shot_id: str) -> ContinuityShot:
        shot = session.get_shot(shot_id)
        if shot is None:
            raise ShotNotFoundError(session.id, shot_id)
        return shot


def build_continuity_service(
    video_client: VideoGenerationClient,
    frame_extraction: FrameExtractionClient,
    style_synthesis: StyleSynthesisClient,
    storage: StorageClient,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> ContinuitySessionService:
    """Wire the store, post-processing and generator around the given clients."""
    if session_factory is None:
        from shotweave.db import async_session

        session_factory = async_session

    fetcher = MediaFetcher()
    store = ContinuitySessionStore(session_factory)
    post_processing = ContinuityPostProcessingService(
        palette_matcher=PaletteMatcher(storage, video_client, fetcher),
        quality_gate=QualityGateService(fetcher),
        scene_proxy=SceneProxyService(storage, frame_extraction, fetcher),
    )
    generator = ContinuityShotGenerator(
        store, video_client, frame_extraction, style_synthesis, post_processing
    )
    return ContinuitySessionService(
        store,
        generator,
        video_client,
        frame_extraction,
        style_synthesis,
        post_processing,
    )
