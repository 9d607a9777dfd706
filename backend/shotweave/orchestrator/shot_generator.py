"""Continuity shot generation.

Generates a single shot of a continuity session:

- picks the continuity mechanism the shot's provider can honor
  (scene proxy, native style reference, frame bridge, IP-adapter keyframe,
  or seed-only for standard shots)
- renders through the video provider, optionally palette-grades the result
  and scores it against the style/identity references
- retries with a stronger style weight while the quality gate fails
- persists the shot with a versioned save that reloads once on conflict

Any failure after the shot has been located is recorded on the shot
(status "failed" plus the message) and persisted the same way.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from shotweave.config import settings
from shotweave.orchestrator.state import advance_phase
from shotweave.schemas.continuity import (
    ContinuityMechanism,
    ContinuityMode,
    ContinuitySession,
    ContinuityShot,
    StyleReference,
    utcnow,
)
from shotweave.services.continuity.anchor_service import AnchorService
from shotweave.services.continuity.base import (
    FrameExtractionClient,
    StyleSynthesisClient,
    VideoGenerationClient,
    VideoGenerationResult,
)
from shotweave.services.continuity.errors import (
    AnchorResolutionError,
    ContinuitySessionNotFoundError,
    ContinuitySessionVersionMismatchError,
    ShotNotFoundError,
)
from shotweave.services.continuity.post_processing import ContinuityPostProcessingService
from shotweave.services.continuity.provider_registry import (
    ProviderCapabilities,
    get_capabilities,
    get_provider_from_model,
)
from shotweave.services.continuity.provider_style_adapter import (
    ContinuityStrategy,
    build_native_style_options,
    get_continuity_strategy,
)
from shotweave.services.continuity.quality_gate import QualityGateRequest
from shotweave.services.continuity.seed_persistence import SeedPersistenceService
from shotweave.services.continuity.session_store import ContinuitySessionStore

logger = logging.getLogger(__name__)


@dataclass
class MechanismContext:
    session: ContinuitySession
    shot: ContinuityShot
    provider: str
    capabilities: ProviderCapabilities
    strategy: ContinuityStrategy
    mode: ContinuityMode
    is_continuity: bool
    use_scene_proxy: bool
    style_reference: Optional[StyleReference]
    inherited_seed: Optional[int]


@dataclass
class MechanismResult:
    mechanism: ContinuityMechanism
    start_image_url: Optional[str] = None


def resolve_style_reference(
    session: ContinuitySession, shot: ContinuityShot
) -> Optional[StyleReference]:
    """Style reference of the shot named by style_reference_id, else the session's primary."""
    if shot.style_reference_id:
        ref_shot = session.get_shot(shot.style_reference_id)
        if ref_shot is not None and ref_shot.style_reference is not None:
            return ref_shot.style_reference
    return session.primary_style_reference


def resolve_session_character(
    session: ContinuitySession, shot: ContinuityShot
) -> Optional[str]:
    """Character of the latest other shot in the session that has one."""
    for candidate in reversed(session.shots):
        if candidate.id != shot.id and candidate.character_asset_id:
            return candidate.character_asset_id
    return None


class ContinuityShotGenerator:
    """Drives one shot through anchor resolution, generation, scoring and persistence."""

    def __init__(
        self,
        store: ContinuitySessionStore,
        video_client: VideoGenerationClient,
        frame_extraction: FrameExtractionClient,
        style_synthesis: StyleSynthesisClient,
        post_processing: ContinuityPostProcessingService,
        anchor_service: Optional[AnchorService] = None,
        seed_service: Optional[SeedPersistenceService] = None,
        style_strength_step: Optional[float] = None,
    ):
        self.store = store
        self.video_client = video_client
        self.frame_extraction = frame_extraction
        self.style_synthesis = style_synthesis
        self.post_processing = post_processing
        self.anchor_service = anchor_service or AnchorService()
        self.seed_service = seed_service or SeedPersistenceService()
        self.style_strength_step = (
            settings.continuity.style_strength_step
            if style_strength_step is None
            else style_strength_step
        )

    async def generate_shot(self, session_id: str, shot_id: str) -> ContinuityShot:
        """Generate (or regenerate) a shot and persist the outcome.

        Args:
            session_id: Session containing the shot.
            shot_id: Shot to generate.

        Returns:
            The persisted shot, status "completed" or "failed".

        Raises:
            ContinuitySessionNotFoundError: Session does not exist.
            ShotNotFoundError: Shot is not part of the session.
            ContinuitySessionVersionMismatchError: The result could not be
                saved because the session changed twice underneath us.
        """
        session = await self.store.get(session_id)
        if session is None:
            raise ContinuitySessionNotFoundError(session_id)
        original = session.get_shot(shot_id)
        if original is None:
            raise ShotNotFoundError(session_id, shot_id)

        expected_version = session.version
        previous_shot = session.previous_shot(original)
        shot = original.model_copy(deep=True)

        logger.info(
            f"Generating shot {shot_id} (#{shot.sequence_index}) of session {session_id} "
            f"with {shot.model_id} [{shot.generation_mode}/{shot.continuity_mode}]"
        )
        try:
            await self._run(session, shot, previous_shot)
        except Exception as e:
            logger.error(f"Shot {shot_id} generation failed: {type(e).__name__}: {e}")
            shot.status = "failed"
            shot.error = str(e) or type(e).__name__

        await self._persist(session, shot, expected_version)
        return shot

    async def _run(
        self,
        session: ContinuitySession,
        shot: ContinuityShot,
        previous_shot: Optional[ContinuityShot],
    ) -> None:
        phase = advance_phase("draft", "resolving-anchor")
        shot.status = "generating"
        shot.error = None
        shot.retry_count = 0

        session_settings = session.default_settings
        is_continuity = shot.generation_mode == "continuity"
        provider = get_provider_from_model(shot.model_id)
        capabilities = get_capabilities(provider, shot.model_id)

        if is_continuity:
            self.anchor_service.assert_provider_supports_continuity(provider, shot.model_id)

        # The bridge must be the last frame of the shot directly before this one
        if shot.frame_bridge is not None and (
            shot.frame_bridge.source_shot_id == shot.id
            or (previous_shot is not None and shot.frame_bridge.source_shot_id != previous_shot.id)
        ):
            logger.info(
                f"Dropping stale frame bridge from {shot.frame_bridge.source_shot_id} on shot {shot.id}"
            )
            shot.frame_bridge = None

        if is_continuity:
            mode: ContinuityMode = shot.continuity_mode
        else:
            mode = "frame-bridge" if shot.continuity_mode == "frame-bridge" else "none"

        if mode == "frame-bridge" and shot.frame_bridge is None and previous_shot is not None:
            await self._bridge_from_previous(session, shot, previous_shot)

        strategy = get_continuity_strategy(
            provider, mode, shot.model_id, has_anchor_frame=shot.frame_bridge is not None
        )
        use_scene_proxy = self.anchor_service.should_use_scene_proxy(session, shot, mode)

        if is_continuity and strategy.type == "none":
            raise AnchorResolutionError(
                f"Continuity mode '{mode}' cannot be honored by provider '{provider}' "
                f"({shot.model_id}): no frame bridge, style reference or native support"
            )

        inherited_seed = None
        if capabilities.supports_seed and previous_shot is not None:
            inherited_seed = self.seed_service.get_inherited_seed(previous_shot.seed_info, provider)
        shot.inherited_seed = inherited_seed

        character_asset_id = shot.character_asset_id
        if not character_asset_id and session_settings.use_character_consistency:
            character_asset_id = resolve_session_character(session, shot)
            if character_asset_id:
                logger.info(f"Shot {shot.id} inherits character {character_asset_id} from the session")

        character_reference_url = None
        if character_asset_id:
            character_reference_url = await self.video_client.get_character_reference_url(
                session.user_id, character_asset_id
            )

        style_reference = resolve_style_reference(session, shot) if is_continuity else None
        if style_reference is not None:
            shot.style_reference = style_reference

        context = MechanismContext(
            session=session,
            shot=shot,
            provider=provider,
            capabilities=capabilities,
            strategy=strategy,
            mode=mode,
            is_continuity=is_continuity,
            use_scene_proxy=use_scene_proxy,
            style_reference=style_reference,
            inherited_seed=inherited_seed,
        )

        while True:
            phase = advance_phase(phase, "generating")
            mechanism = await self._resolve_mechanism(context)

            if is_continuity and not mechanism.start_image_url and strategy.type != "native-style-ref":
                raise AnchorResolutionError(
                    "Continuity mode requires a visual anchor (start image or native style reference)"
                )

            options = self._build_options(context, mechanism, character_reference_url)
            result = await self.video_client.generate_video(shot.user_prompt, options)
            shot.video_asset_id = result.asset_id
            shot.video_url = result.video_url
            shot.continuity_mechanism_used = mechanism.mechanism

            if not is_continuity:
                break

            phase = advance_phase(phase, "quality-check")
            reference_url = (
                style_reference.frame_url if style_reference is not None else mechanism.start_image_url
            )
            video_url = await self._maybe_grade(session, shot, result, reference_url)

            quality = await self.post_processing.evaluate_quality(
                QualityGateRequest(
                    user_id=session.user_id,
                    reference_image_url=reference_url,
                    generated_video_url=video_url,
                    character_reference_url=character_reference_url,
                    style_threshold=session_settings.quality_thresholds.style,
                    identity_threshold=session_settings.quality_thresholds.identity,
                )
            )
            shot.style_score = quality.style_score
            shot.identity_score = quality.identity_score
            shot.quality_score = 1.0 if quality.passed else 0.0

            if (
                quality.passed
                or not session_settings.auto_retry_on_failure
                or shot.retry_count >= session_settings.max_retries
            ):
                if not quality.passed:
                    logger.warning(
                        f"Shot {shot.id} accepted below quality threshold after "
                        f"{shot.retry_count} retr{'y' if shot.retry_count == 1 else 'ies'} "
                        f"(style={quality.style_score}, identity={quality.identity_score})"
                    )
                break

            phase = advance_phase(phase, "retry")
            shot.style_strength = min(1.0, round(shot.style_strength + self.style_strength_step, 6))
            shot.retry_count += 1
            logger.warning(
                f"Quality gate failed for shot {shot.id} (style={quality.style_score}, "
                f"identity={quality.identity_score}); retry {shot.retry_count}/"
                f"{session_settings.max_retries} at style_strength={shot.style_strength}"
            )

        advance_phase(phase, "completed")
        shot.status = "completed"
        shot.generated_at = utcnow()
        shot.seed_info = self.seed_service.extract_seed(provider, shot.model_id, self._raw_result(result))

        if session_settings.auto_extract_frame_bridge and shot.video_asset_id:
            await self._extract_outgoing_frames(session, shot)

        logger.info(
            f"Shot {shot.id} completed via {shot.continuity_mechanism_used} "
            f"(retries={shot.retry_count}, quality={shot.quality_score})"
        )

    async def _resolve_mechanism(self, context: MechanismContext) -> MechanismResult:
        chain = (
            (
                self._apply_scene_proxy,
                self._apply_native_style_reference,
                self._apply_frame_bridge,
                self._apply_ip_adapter,
            )
            if context.is_continuity
            else (self._apply_frame_bridge, self._apply_seed_only)
        )
        for handler in chain:
            result = await handler(context)
            if result is not None:
                return result
        return MechanismResult(mechanism="none")

    async def _apply_scene_proxy(self, context: MechanismContext) -> Optional[MechanismResult]:
        if not context.use_scene_proxy:
            return None
        render = await self.post_processing.render_scene_proxy(
            context.session.user_id,
            context.session.scene_proxy,
            context.shot.id,
            context.shot.camera,
        )
        context.shot.scene_proxy_render_url = render.render_url
        return MechanismResult(mechanism="scene-proxy", start_image_url=render.render_url)

    async def _apply_native_style_reference(self, context: MechanismContext) -> Optional[MechanismResult]:
        if context.strategy.type != "native-style-ref":
            return None
        if context.style_reference is None:
            raise AnchorResolutionError(
                f"Native style reference requested for shot {context.shot.id} "
                "but the session has no style reference"
            )
        return MechanismResult(mechanism="native-style-ref")

    async def _apply_frame_bridge(self, context: MechanismContext) -> Optional[MechanismResult]:
        if context.strategy.type != "frame-bridge" or context.shot.frame_bridge is None:
            return None
        return MechanismResult(
            mechanism="frame-bridge",
            start_image_url=context.shot.frame_bridge.frame_url,
        )

    async def _apply_ip_adapter(self, context: MechanismContext) -> Optional[MechanismResult]:
        if context.strategy.type != "ip-adapter":
            return None
        if context.style_reference is None:
            raise AnchorResolutionError(
                f"IP-adapter keyframe for shot {context.shot.id} needs a style reference"
            )
        try:
            keyframe_url = await self.style_synthesis.generate_styled_keyframe(
                user_id=context.session.user_id,
                prompt=context.shot.user_prompt,
                style_reference_url=context.style_reference.frame_url,
                strength=context.shot.style_strength,
                aspect_ratio=context.style_reference.aspect_ratio,
            )
        except Exception as e:
            raise RuntimeError(f"Style keyframe generation failed (IP-Adapter): {e}") from e

        context.shot.generated_keyframe_url = keyframe_url
        return MechanismResult(mechanism="ip-adapter", start_image_url=keyframe_url)

    async def _apply_seed_only(self, context: MechanismContext) -> Optional[MechanismResult]:
        if not context.capabilities.supports_seed or context.inherited_seed is None:
            return None
        return MechanismResult(mechanism="seed-only")

    def _build_options(
        self,
        context: MechanismContext,
        mechanism: MechanismResult,
        character_reference_url: Optional[str],
    ) -> dict:
        shot = context.shot
        options: dict = {"model": shot.model_id}
        if mechanism.start_image_url:
            options["start_image"] = mechanism.start_image_url
        if character_reference_url:
            options["character_reference_url"] = character_reference_url
        options.update(self.seed_service.build_seed_param(context.provider, context.inherited_seed))

        if context.strategy.type == "native-style-ref" and context.style_reference is not None:
            options.update(
                build_native_style_options(
                    context.provider, context.style_reference, shot.style_strength
                )
            )
        elif mechanism.mechanism == "ip-adapter" and context.style_reference is not None:
            options["style_reference_url"] = context.style_reference.frame_url
            options["style_strength"] = shot.style_strength
        return options

    async def _maybe_grade(
        self,
        session: ContinuitySession,
        shot: ContinuityShot,
        result: VideoGenerationResult,
        reference_url: Optional[str],
    ) -> str:
        """Palette-grade toward the reference when enabled; returns the URL to score."""
        if not session.default_settings.enable_palette_matching or not reference_url:
            return result.video_url

        graded = await self.post_processing.match_palette(
            result.asset_id, reference_url, user_id=session.user_id
        )
        if graded.applied and graded.asset_id:
            shot.video_asset_id = graded.asset_id
            shot.video_url = graded.video_url or result.video_url
            return shot.video_url
        return result.video_url

    async def _bridge_from_previous(
        self,
        session: ContinuitySession,
        shot: ContinuityShot,
        previous_shot: ContinuityShot,
    ) -> None:
        if not previous_shot.video_asset_id:
            return
        try:
            video_url = previous_shot.video_url or await self.video_client.get_video_url(
                previous_shot.video_asset_id, session.user_id
            )
            if not video_url:
                return
            shot.frame_bridge = await self.frame_extraction.extract_bridge_frame(
                session.user_id,
                previous_shot.video_asset_id,
                video_url,
                previous_shot.id,
                "last",
            )
        except Exception as e:
            logger.warning(f"On-demand frame bridge extraction failed for shot {shot.id}: {e}")

    async def _extract_outgoing_frames(self, session: ContinuitySession, shot: ContinuityShot) -> None:
        try:
            video_url = shot.video_url or await self.video_client.get_video_url(
                shot.video_asset_id, session.user_id
            )
            if not video_url:
                return
            shot.frame_bridge = await self.frame_extraction.extract_bridge_frame(
                session.user_id, shot.video_asset_id, video_url, shot.id, "last"
            )
            shot.style_reference = await self.frame_extraction.extract_representative_frame(
                session.user_id, shot.video_asset_id, video_url, shot.id
            )
        except Exception as e:
            logger.warning(f"Post-generation frame extraction failed for shot {shot.id}: {e}")

    @staticmethod
    def _raw_result(result: VideoGenerationResult) -> dict:
        raw = dict(result.raw)
        if result.metrics is not None:
            raw.setdefault("metrics", result.metrics)
        return raw

    async def _persist(
        self, session: ContinuitySession, shot: ContinuityShot, expected_version: int
    ) -> None:
        session.replace_shot(shot)
        try:
            await self.store.save_with_version(session, expected_version)
            return
        except ContinuitySessionVersionMismatchError as e:
            logger.warning(
                f"Session {session.id} changed during generation of shot {shot.id} "
                f"(expected v{e.expected_version}, found v{e.actual_version}); reapplying"
            )

        fresh = await self.store.get(session.id)
        if fresh is None:
            raise ContinuitySessionNotFoundError(session.id)
        fresh.replace_shot(shot)
        await self.store.save_with_version(fresh, fresh.version)
