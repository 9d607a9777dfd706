"""Capability table for video-generation providers.

Routes model IDs to a provider identifier by prefix and exposes what each
provider's API accepts. Strategy selection reads only these flags, so the
decision never depends on a live provider call.
"""

import logging
from dataclasses import dataclass, replace
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCapabilities:
    supports_start_image: bool = False
    supports_native_style_reference: bool = False
    supports_seed: bool = False
    # Path of the seed inside the raw generation result
    seed_path: Optional[tuple[str, ...]] = None
    # Request parameter name for the seed
    seed_param: Optional[str] = None


NO_CAPABILITIES = ProviderCapabilities()

PROVIDER_CAPABILITIES: dict[str, ProviderCapabilities] = {
    "google": ProviderCapabilities(
        supports_start_image=True,
        supports_native_style_reference=True,
        supports_seed=True,
        seed_path=("seed",),
        seed_param="seed",
    ),
    "runway": ProviderCapabilities(
        supports_start_image=True,
        supports_native_style_reference=True,
        supports_seed=True,
        seed_path=("seed",),
        seed_param="seed",
    ),
    "replicate": ProviderCapabilities(
        supports_start_image=True,
        supports_seed=True,
        seed_path=("metrics", "seed"),
        seed_param="seed",
    ),
    "openai": ProviderCapabilities(supports_start_image=True),
    "luma": ProviderCapabilities(supports_start_image=True),
    "kling": ProviderCapabilities(supports_start_image=True),
}

# Model-level exceptions to the provider row
_MODEL_OVERRIDES: dict[str, dict] = {
    "veo-2.0": {"supports_native_style_reference": False},
    "veo-3.0": {"supports_native_style_reference": False},
}

_MODEL_PREFIXES: tuple[tuple[str, str], ...] = (
    ("veo-", "google"),
    ("google/", "google"),
    ("gen3", "runway"),
    ("gen4", "runway"),
    ("runway/", "runway"),
    ("replicate/", "replicate"),
    ("wan-", "replicate"),
    ("sora", "openai"),
    ("openai/", "openai"),
    ("luma/", "luma"),
    ("ray-", "luma"),
    ("kling", "kling"),
)


def get_provider_from_model(model_id: str) -> str:
    """Return the provider identifier for a model ID ("unknown" if unmatched)."""
    normalized = model_id.strip().lower()
    for prefix, provider in _MODEL_PREFIXES:
        if normalized.startswith(prefix):
            return provider
    logger.debug("No provider prefix matched model %s", model_id)
    return "unknown"


def get_capabilities(provider: str, model_id: Optional[str] = None) -> ProviderCapabilities:
    """Capabilities for a provider, narrowed by any model-specific override.

    Unknown providers get no capabilities at all.
    """
    capabilities = PROVIDER_CAPABILITIES.get(provider, NO_CAPABILITIES)
    if model_id:
        normalized = model_id.strip().lower()
        for prefix, overrides in _MODEL_OVERRIDES.items():
            if normalized.startswith(prefix):
                capabilities = replace(capabilities, **overrides)
    return capabilities
