"""Continuity shot generation.

Keeps consecutive AI-generated shots visually coherent by choosing, per
provider, the anchor each shot is generated from (frame bridge, native
style reference, IP-adapter keyframe, scene proxy render or inherited seed).

Usage:
    from shotweave.services.continuity.session_service import build_continuity_service

    service = build_continuity_service(
        video_client, frame_extraction, style_synthesis, storage
    )
    session = await service.create_session(user_id, "Trailer", source_image_url=url)
    shot = await service.add_shot(session.id, "The hero walks into the rain")
    shot = await service.generate_shot(session.id, shot.id)
"""

from shotweave.services.continuity.errors import (
    AnchorResolutionError,
    ContinuitySessionNotFoundError,
    ContinuitySessionVersionMismatchError,
    ShotNotFoundError,
    UnsupportedProviderError,
)

__all__ = [
    "AnchorResolutionError",
    "ContinuitySessionNotFoundError",
    "ContinuitySessionVersionMismatchError",
    "ShotNotFoundError",
    "UnsupportedProviderError",
]
