"""Continuity strategy selection and native style-reference request fragments.

Both decisions are static table lookups keyed on capability flags, so they
can be exercised without any provider being invoked.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Literal, Optional

from shotweave.schemas.continuity import ContinuityMode, StyleReference
from shotweave.services.continuity.provider_registry import get_capabilities

logger = logging.getLogger(__name__)

StrategyType = Literal["native-style-ref", "frame-bridge", "ip-adapter", "none"]


@dataclass(frozen=True)
class ContinuityStrategy:
    type: StrategyType
    provider: str
    requested_mode: ContinuityMode
    reason: str = ""


# (requested mode, native style support, start image support) -> strategy.
# "style-match" on a start-image-only provider is resolved separately: it
# bridges when an anchor frame exists and synthesizes a keyframe otherwise.
_STRATEGY_TABLE: dict[tuple[str, bool, bool], StrategyType] = {
    ("native", True, True): "native-style-ref",
    ("native", True, False): "native-style-ref",
    ("native", False, True): "ip-adapter",
    ("native", False, False): "none",
    ("style-match", True, True): "native-style-ref",
    ("style-match", True, False): "native-style-ref",
    ("style-match", False, False): "none",
    ("frame-bridge", True, True): "frame-bridge",
    ("frame-bridge", True, False): "none",
    ("frame-bridge", False, True): "frame-bridge",
    ("frame-bridge", False, False): "none",
}


def get_continuity_strategy(
    provider: str,
    requested_mode: ContinuityMode,
    model_id: Optional[str] = None,
    *,
    has_anchor_frame: bool = False,
) -> ContinuityStrategy:
    """Resolve which continuity mechanism a provider can honor for a mode.

    Args:
        provider: Provider identifier from get_provider_from_model().
        requested_mode: Continuity mode requested for the shot.
        model_id: Model ID, used for model-level capability overrides.
        has_anchor_frame: Whether a frame bridge is available for the shot.

    Returns:
        ContinuityStrategy tagged with the resolved type.
    """
    capabilities = get_capabilities(provider, model_id)
    native = capabilities.supports_native_style_reference
    start_image = capabilities.supports_start_image

    if requested_mode == "style-match" and not native and start_image:
        strategy_type: StrategyType = "frame-bridge" if has_anchor_frame else "ip-adapter"
    else:
        strategy_type = _STRATEGY_TABLE.get((requested_mode, native, start_image), "none")

    reason = f"mode={requested_mode} native={native} start_image={start_image}"
    logger.debug(f"Continuity strategy for {provider}/{model_id}: {strategy_type} ({reason})")
    return ContinuityStrategy(
        type=strategy_type,
        provider=provider,
        requested_mode=requested_mode,
        reason=reason,
    )


def _google_style_options(style_reference: StyleReference, strength: float) -> dict:
    return {
        "reference_images": [
            {"image_url": style_reference.frame_url, "reference_type": "style"}
        ],
    }


def _runway_style_options(style_reference: StyleReference, strength: float) -> dict:
    return {
        "style_reference": {
            "uri": style_reference.frame_url,
            "weight": round(strength, 2),
        },
    }


_NATIVE_STYLE_BUILDERS: dict[str, Callable[[StyleReference, float], dict]] = {
    "google": _google_style_options,
    "runway": _runway_style_options,
}


def build_native_style_options(
    provider: str, style_reference: StyleReference, strength: float
) -> dict:
    """Provider-specific native style-reference fragment ({} if unsupported)."""
    builder = _NATIVE_STYLE_BUILDERS.get(provider)
    if builder is None:
        return {}
    return builder(style_reference, strength)
