"""Credit estimates for shot generation.

A shot is reserved at its worst case (every quality-gate retry used) and
the unused part is refunded once the real attempt count is known.
"""

from dataclasses import dataclass

from shotweave.schemas.continuity import ContinuitySession, ContinuityShot
from shotweave.services.continuity.provider_registry import get_provider_from_model
from shotweave.services.continuity.provider_style_adapter import get_continuity_strategy

# Per-generation credits, matched by model ID prefix (longest prefix first)
MODEL_CREDITS: dict[str, int] = {
    "veo-3.1-fast": 15,
    "veo-3.1": 30,
    "veo-3.0-fast": 15,
    "veo-3.0": 30,
    "veo-2.0": 25,
    "gen4": 24,
    "gen3": 20,
    "sora": 40,
    "kling": 18,
    "ray-": 16,
    "luma/": 16,
    "wan-": 10,
    "replicate/": 10,
}
DEFAULT_MODEL_CREDITS = 20
STYLE_KEYFRAME_CREDITS = 2


@dataclass(frozen=True)
class ShotCost:
    per_attempt_cost: int
    max_attempts: int
    total_cost: int


def model_credits(model_id: str) -> int:
    normalized = model_id.strip().lower()
    for prefix in sorted(MODEL_CREDITS, key=len, reverse=True):
        if normalized.startswith(prefix):
            return MODEL_CREDITS[prefix]
    return DEFAULT_MODEL_CREDITS


class CreditCostCalculator:

    @staticmethod
    def calculate_shot_cost(shot: ContinuityShot, session: ContinuitySession) -> ShotCost:
        per_attempt = model_credits(shot.model_id)

        settings = session.default_settings
        is_continuity = shot.generation_mode == "continuity"
        if is_continuity:
            strategy = get_continuity_strategy(
                get_provider_from_model(shot.model_id),
                shot.continuity_mode,
                shot.model_id,
                has_anchor_frame=shot.frame_bridge is not None,
            )
            if strategy.type == "ip-adapter":
                per_attempt += STYLE_KEYFRAME_CREDITS

        max_attempts = 1
        if is_continuity and settings.auto_retry_on_failure:
            max_attempts += settings.max_retries

        return ShotCost(
            per_attempt_cost=per_attempt,
            max_attempts=max_attempts,
            total_cost=per_attempt * max_attempts,
        )

    @staticmethod
    def attempt_cost(shot: ContinuityShot, estimate: ShotCost) -> int:
        """Per-attempt credits for the mechanism the generator actually used.

        The estimate is made before generation, when an on-demand frame
        bridge may not exist yet, so the keyframe surcharge is settled from
        ``continuity_mechanism_used`` once it is known.
        """
        if shot.continuity_mechanism_used is None:
            return estimate.per_attempt_cost
        per_attempt = model_credits(shot.model_id)
        if shot.continuity_mechanism_used == "ip-adapter":
            per_attempt += STYLE_KEYFRAME_CREDITS
        return per_attempt

    @classmethod
    def actual_cost(cls, cost: ShotCost, shot: ContinuityShot) -> int:
        attempts = min(max(shot.retry_count, 0) + 1, cost.max_attempts)
        # Never charge more than was reserved
        return min(cls.attempt_cost(shot, cost) * attempts, cost.total_cost)

    @classmethod
    def refund_amount(cls, cost: ShotCost, shot: ContinuityShot) -> int:
        """Credits to return after generation; everything when the shot failed."""
        if shot.status == "failed":
            return cost.total_cost
        return cost.total_cost - cls.actual_cost(cost, shot)
