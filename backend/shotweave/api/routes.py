"""API route handlers and Pydantic request/response schemas for continuity sessions."""

import logging
from typing import Any, Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field

from shotweave.schemas.continuity import (
    CameraPose,
    ContinuityMode,
    ContinuitySession,
    ContinuityShot,
    GenerationMode,
)
from shotweave.services.continuity.cost_calculator import CreditCostCalculator
from shotweave.services.continuity.errors import (
    AnchorResolutionError,
    ContinuitySessionNotFoundError,
    ContinuitySessionVersionMismatchError,
    ShotNotFoundError,
    UnsupportedProviderError,
)
from shotweave.services.continuity.session_service import ContinuitySessionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/continuity")

T = TypeVar("T")


# ============================================================================
# Pydantic Schemas
# ============================================================================

class CreateSessionRequest(BaseModel):
    """Request schema for POST /api/continuity/sessions."""
    name: str = Field(min_length=1)
    description: Optional[str] = None
    source_video_id: Optional[str] = None
    source_image_url: Optional[str] = None
    initial_prompt: Optional[str] = None
    settings: Optional[dict[str, Any]] = None
    session_id: Optional[str] = None


class AddShotRequest(BaseModel):
    """Request schema for POST /api/continuity/sessions/{id}/shots."""
    prompt: str = Field(min_length=1)
    continuity_mode: Optional[ContinuityMode] = None
    generation_mode: Optional[GenerationMode] = None
    style_strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    style_reference_id: Optional[str] = None
    model_id: Optional[str] = None
    character_asset_id: Optional[str] = None
    camera: Optional[CameraPose] = None
    use_scene_proxy: Optional[bool] = None
    source_video_id: Optional[str] = None


class UpdateShotRequest(BaseModel):
    """Partial shot update; only fields present in the body are applied."""
    prompt: Optional[str] = None
    continuity_mode: Optional[ContinuityMode] = None
    generation_mode: Optional[GenerationMode] = None
    style_strength: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    style_reference_id: Optional[str] = None
    model_id: Optional[str] = None
    character_asset_id: Optional[str] = None
    camera: Optional[CameraPose] = None
    use_scene_proxy: Optional[bool] = None


class ShotStyleReferenceRequest(BaseModel):
    """style_reference_id of another shot, or "primary"/null for the session primary."""
    style_reference_id: Optional[str] = None


class PrimaryStyleReferenceRequest(BaseModel):
    source_video_id: Optional[str] = None
    source_image_url: Optional[str] = None


class SceneProxyRequest(BaseModel):
    source_shot_id: Optional[str] = None
    source_video_id: Optional[str] = None


class ShotCostResponse(BaseModel):
    """Worst-case credit estimate for a shot."""
    shot_id: str
    per_attempt_cost: int
    max_attempts: int
    total_cost: int


class GenerateShotResponse(BaseModel):
    """Generated shot plus the credit settlement for the call."""
    shot: ContinuityShot
    credits_reserved: int
    credits_charged: int
    credits_refunded: int


class DeleteSessionResponse(BaseModel):
    session_id: str
    deleted: bool


# ============================================================================
# Helpers
# ============================================================================

def get_continuity_service(request: Request) -> ContinuitySessionService:
    service = getattr(request.app.state, "continuity_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Continuity service is not configured")
    return service


async def _guard(awaitable: Awaitable[T]) -> T:
    """Await a service call, mapping domain errors onto HTTP status codes."""
    try:
        return await awaitable
    except (ContinuitySessionNotFoundError, ShotNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UnsupportedProviderError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ContinuitySessionVersionMismatchError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (AnchorResolutionError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))


async def _owned_session(
    service: ContinuitySessionService, session_id: str, user_id: str
) -> ContinuitySession:
    session = await _guard(service.get_session(session_id))
    if session.user_id != user_id:
        logger.warning(f"User {user_id} denied access to session {session_id}")
        raise HTTPException(status_code=403, detail="Access denied")
    return session


# ============================================================================
# Sessions
# ============================================================================

@router.post("/sessions", status_code=201, response_model=ContinuitySession)
async def create_session(
    request: CreateSessionRequest,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    """Create a continuity session anchored on a source video or image.

    Idempotent on session_id. An initial_prompt adds and generates the
    first shot before returning.
    """
    if not request.source_video_id and not request.source_image_url:
        raise HTTPException(status_code=400, detail="Must provide source_video_id or source_image_url")

    return await _guard(
        service.create_session(
            x_user_id,
            request.name,
            description=request.description,
            source_video_id=request.source_video_id,
            source_image_url=request.source_image_url,
            initial_prompt=request.initial_prompt,
            settings_overrides=request.settings,
            session_id=request.session_id,
        )
    )


@router.get("/sessions", response_model=list[ContinuitySession])
async def list_sessions(
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    """List the caller's sessions, most recently updated first."""
    return await _guard(service.get_user_sessions(x_user_id))


@router.get("/sessions/{session_id}", response_model=ContinuitySession)
async def get_session(
    session_id: str,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    return await _owned_session(service, session_id, x_user_id)


@router.delete("/sessions/{session_id}", response_model=DeleteSessionResponse)
async def delete_session(
    session_id: str,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    await _owned_session(service, session_id, x_user_id)
    await _guard(service.delete_session(session_id))
    return DeleteSessionResponse(session_id=session_id, deleted=True)


@router.post("/sessions/{session_id}/archive", response_model=ContinuitySession)
async def archive_session(
    session_id: str,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    await _owned_session(service, session_id, x_user_id)
    return await _guard(service.archive_session(session_id))


@router.patch("/sessions/{session_id}/settings", response_model=ContinuitySession)
async def update_session_settings(
    session_id: str,
    updates: dict[str, Any],
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    """Update session defaults. Unknown keys are ignored; invalid values are rejected."""
    await _owned_session(service, session_id, x_user_id)
    return await _guard(service.update_session_settings(session_id, updates))


@router.put("/sessions/{session_id}/primary-style-reference", response_model=ContinuitySession)
async def update_primary_style_reference(
    session_id: str,
    request: PrimaryStyleReferenceRequest,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    await _owned_session(service, session_id, x_user_id)
    return await _guard(
        service.update_primary_style_reference(
            session_id,
            source_video_id=request.source_video_id,
            source_image_url=request.source_image_url,
        )
    )


@router.post("/sessions/{session_id}/scene-proxy", response_model=ContinuitySession)
async def create_scene_proxy(
    session_id: str,
    request: SceneProxyRequest,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    """Build a depth-parallax scene proxy from a shot's video or a source video."""
    if not request.source_shot_id and not request.source_video_id:
        raise HTTPException(status_code=400, detail="Must provide source_shot_id or source_video_id")

    await _owned_session(service, session_id, x_user_id)
    return await _guard(
        service.create_scene_proxy(
            session_id,
            source_shot_id=request.source_shot_id,
            source_video_id=request.source_video_id,
        )
    )


# ============================================================================
# Shots
# ============================================================================

@router.post("/sessions/{session_id}/shots", status_code=201, response_model=ContinuityShot)
async def add_shot(
    session_id: str,
    request: AddShotRequest,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    await _owned_session(service, session_id, x_user_id)
    return await _guard(
        service.add_shot(
            session_id,
            request.prompt,
            continuity_mode=request.continuity_mode,
            generation_mode=request.generation_mode,
            style_strength=request.style_strength,
            style_reference_id=request.style_reference_id,
            model_id=request.model_id,
            character_asset_id=request.character_asset_id,
            camera=request.camera,
            use_scene_proxy=request.use_scene_proxy,
            source_video_id=request.source_video_id,
        )
    )


@router.patch("/sessions/{session_id}/shots/{shot_id}", response_model=ContinuityShot)
async def update_shot(
    session_id: str,
    shot_id: str,
    request: UpdateShotRequest,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    await _owned_session(service, session_id, x_user_id)
    updates = request.model_dump(exclude_unset=True)
    return await _guard(service.update_shot(session_id, shot_id, updates))


@router.put("/sessions/{session_id}/shots/{shot_id}/style-reference", response_model=ContinuityShot)
async def update_shot_style_reference(
    session_id: str,
    shot_id: str,
    request: ShotStyleReferenceRequest,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    await _owned_session(service, session_id, x_user_id)
    return await _guard(
        service.update_shot_style_reference(session_id, shot_id, request.style_reference_id)
    )


@router.get("/sessions/{session_id}/shots/{shot_id}/cost", response_model=ShotCostResponse)
async def get_shot_cost(
    session_id: str,
    shot_id: str,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    await _owned_session(service, session_id, x_user_id)
    cost = await _guard(service.estimate_shot_cost(session_id, shot_id))
    return ShotCostResponse(
        shot_id=shot_id,
        per_attempt_cost=cost.per_attempt_cost,
        max_attempts=cost.max_attempts,
        total_cost=cost.total_cost,
    )


@router.post("/sessions/{session_id}/shots/{shot_id}/generate", response_model=GenerateShotResponse)
async def generate_shot(
    session_id: str,
    shot_id: str,
    x_user_id: str = Header(...),
    service: ContinuitySessionService = Depends(get_continuity_service),
):
    """Generate a shot synchronously.

    Credits are reserved at the worst case (all quality-gate retries) and
    the unused part is refunded; a failed shot is refunded in full.
    """
    await _owned_session(service, session_id, x_user_id)
    cost = await _guard(service.estimate_shot_cost(session_id, shot_id))

    shot = await _guard(service.generate_shot(session_id, shot_id))

    refunded = CreditCostCalculator.refund_amount(cost, shot)
    charged = cost.total_cost - refunded
    logger.info(
        f"Shot {shot_id} {shot.status}: reserved {cost.total_cost}, "
        f"charged {charged}, refunded {refunded} credits"
    )
    return GenerateShotResponse(
        shot=shot,
        credits_reserved=cost.total_cost,
        credits_charged=charged,
        credits_refunded=refunded,
    )
