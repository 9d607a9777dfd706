"""State machine constants and transition logic for shot generation.

Defines the phases a single generate_shot() call moves through. Only
"completed" and "failed" are ever persisted as a shot status.
"""

from typing import Dict, FrozenSet

# Generation phases in execution order
SHOT_PHASES = {
    "draft": "Shot created, not yet generated",
    "resolving-anchor": "Choosing the continuity mechanism and start image",
    "generating": "Waiting on the video provider",
    "quality-check": "Scoring the output against the style/identity references",
    "retry": "Quality gate failed, strengthening style and trying again",
    "completed": "Shot generated (possibly below threshold after retries)",
    "failed": "Shot generation failed",
}

PHASE_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "draft": frozenset({"resolving-anchor", "failed"}),
    "resolving-anchor": frozenset({"generating", "failed"}),
    "generating": frozenset({"quality-check", "completed", "failed"}),
    "quality-check": frozenset({"retry", "completed", "failed"}),
    "retry": frozenset({"generating", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}


class InvalidPhaseTransition(Exception):
    pass


def advance_phase(current: str, target: str) -> str:
    """Validate and return the next phase.

    Args:
        current: Phase the generator is in
        target: Phase it wants to enter

    Returns:
        target, if the transition is allowed

    Raises:
        InvalidPhaseTransition: If target is not reachable from current
    """
    if current not in SHOT_PHASES:
        raise InvalidPhaseTransition(f"Unknown shot phase '{current}'")
    if target not in PHASE_TRANSITIONS[current]:
        raise InvalidPhaseTransition(f"Cannot move shot from '{current}' to '{target}'")
    return target
