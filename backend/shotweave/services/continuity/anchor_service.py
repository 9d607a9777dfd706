"""Continuity preconditions: provider support and scene-proxy applicability."""

import logging
from typing import Optional

from shotweave.schemas.continuity import ContinuityMode, ContinuitySession, ContinuityShot
from shotweave.services.continuity.errors import UnsupportedProviderError
from shotweave.services.continuity.provider_registry import (
    ProviderCapabilities,
    get_capabilities,
)

logger = logging.getLogger(__name__)


class AnchorService:

    def assert_provider_supports_continuity(
        self, provider: str, model_id: str
    ) -> ProviderCapabilities:
        """Fail unless the provider accepts a start image or a native style reference.

        Raises:
            UnsupportedProviderError: Provider offers neither anchor parameter.
        """
        capabilities = get_capabilities(provider, model_id)
        if not (
            capabilities.supports_start_image
            or capabilities.supports_native_style_reference
        ):
            raise UnsupportedProviderError(provider, model_id)
        return capabilities

    def should_use_scene_proxy(
        self,
        session: ContinuitySession,
        shot: ContinuityShot,
        override_mode: Optional[ContinuityMode] = None,
    ) -> bool:
        # Proxies carry geometry only; literal frame continuity never uses them
        proxy = session.scene_proxy
        if proxy is None or proxy.status != "ready":
            return False

        enabled = (
            shot.use_scene_proxy
            if shot.use_scene_proxy is not None
            else session.default_settings.use_scene_proxy
        )
        if not enabled:
            return False

        mode = override_mode or shot.continuity_mode
        return mode == "style-match"
