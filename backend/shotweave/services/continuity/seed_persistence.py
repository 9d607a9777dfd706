"""Seed extraction and inheritance across consecutive shots.

Seeds are only meaningful to the provider that produced them; the
portability rule lives in seeds_are_portable() and nowhere else.
"""

import logging
from typing import Any, Mapping, Optional

from shotweave.schemas.continuity import SeedInfo
from shotweave.services.continuity.provider_registry import get_capabilities

logger = logging.getLogger(__name__)


def seeds_are_portable(seed_info: SeedInfo, target_provider: str) -> bool:
    return seed_info.provider == target_provider


class SeedPersistenceService:
    """Reads seeds out of provider results and builds seed request params."""

    def extract_seed(
        self,
        provider: str,
        model_id: str,
        generation_result: Optional[Mapping[str, Any]],
    ) -> Optional[SeedInfo]:
        """Pull the seed from a raw provider result.

        Args:
            provider: Provider identifier that produced the result.
            model_id: Model that produced the result.
            generation_result: Raw provider response (dict-like).

        Returns:
            SeedInfo, or None when the provider reports no usable seed.
        """
        capabilities = get_capabilities(provider, model_id)
        if not capabilities.supports_seed or not capabilities.seed_path or not generation_result:
            return None

        value: Any = generation_result
        for key in capabilities.seed_path:
            if not isinstance(value, Mapping) or key not in value:
                return None
            value = value[key]

        if isinstance(value, bool):
            return None
        if isinstance(value, str):
            try:
                value = int(value)
            except ValueError:
                logger.debug(f"Ignoring non-numeric seed {value!r} from {provider}")
                return None
        if not isinstance(value, (int, float)):
            return None

        return SeedInfo(seed=int(value), provider=provider, model_id=model_id)

    def get_inherited_seed(
        self, seed_info: Optional[SeedInfo], target_provider: str
    ) -> Optional[int]:
        if seed_info is None or not seeds_are_portable(seed_info, target_provider):
            return None
        return seed_info.seed

    def build_seed_param(self, provider: str, seed: Optional[int]) -> dict:
        """Provider request fragment for a seed; empty when there is nothing to send."""
        if seed is None:
            return {}
        capabilities = get_capabilities(provider)
        if not capabilities.supports_seed or not capabilities.seed_param:
            return {}
        return {capabilities.seed_param: seed}
