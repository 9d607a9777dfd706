"""Credit estimates and the shot phase machine."""

import pytest

from conftest import make_frame_bridge, make_session, make_shot
from shotweave.orchestrator.state import InvalidPhaseTransition, advance_phase
from shotweave.services.continuity.cost_calculator import (
    DEFAULT_MODEL_CREDITS,
    STYLE_KEYFRAME_CREDITS,
    CreditCostCalculator,
    ShotCost,
    model_credits,
)


def test_model_credits_longest_prefix_wins():
    assert model_credits("veo-3.1-fast-generate-001") == 15
    assert model_credits("veo-3.1-generate-001") == 30
    assert model_credits("something-new") == DEFAULT_MODEL_CREDITS


def test_continuity_shot_reserves_all_retries():
    session = make_session(settings={"max_retries": 2})
    cost = CreditCostCalculator.calculate_shot_cost(make_shot(), session)

    assert cost.per_attempt_cost == 30
    assert cost.max_attempts == 3
    assert cost.total_cost == 90


def test_standard_shot_single_attempt():
    session = make_session(settings={"max_retries": 2})
    shot = make_shot(generation_mode="standard")

    assert CreditCostCalculator.calculate_shot_cost(shot, session).max_attempts == 1


def test_ip_adapter_adds_keyframe_credits():
    session = make_session(settings={"auto_retry_on_failure": False})
    keyframe_shot = make_shot(model_id="kling-1.6-pro", continuity_mode="style-match")
    bridged_shot = make_shot(
        model_id="kling-1.6-pro",
        continuity_mode="style-match",
        frame_bridge=make_frame_bridge("shot_0"),
    )

    keyframe_cost = CreditCostCalculator.calculate_shot_cost(keyframe_shot, session)
    bridged_cost = CreditCostCalculator.calculate_shot_cost(bridged_shot, session)

    assert keyframe_cost.per_attempt_cost == bridged_cost.per_attempt_cost + STYLE_KEYFRAME_CREDITS
    assert keyframe_cost.max_attempts == 1


def test_refunds():
    session = make_session(settings={"max_retries": 1})
    cost = CreditCostCalculator.calculate_shot_cost(make_shot(), session)

    first_try = make_shot(status="completed", retry_count=0)
    retried = make_shot(status="completed", retry_count=1)
    failed = make_shot(status="failed", retry_count=1)

    assert CreditCostCalculator.refund_amount(cost, first_try) == 30
    assert CreditCostCalculator.refund_amount(cost, retried) == 0
    assert CreditCostCalculator.refund_amount(cost, failed) == cost.total_cost


def test_phase_happy_path_with_retry():
    phase = advance_phase("draft", "resolving-anchor")
    phase = advance_phase(phase, "generating")
    phase = advance_phase(phase, "quality-check")
    phase = advance_phase(phase, "retry")
    phase = advance_phase(phase, "generating")
    assert advance_phase(phase, "completed") == "completed"


@pytest.mark.parametrize(
    "current,target",
    [("draft", "generating"), ("completed", "generating"), ("failed", "retry"), ("bogus", "failed")],
)
def test_invalid_phase_transitions(current, target):
    with pytest.raises(InvalidPhaseTransition):
        advance_phase(current, target)


def test_settlement_follows_mechanism_actually_used():
    session = make_session(settings={"max_retries": 1})
    estimate = CreditCostCalculator.calculate_shot_cost(make_shot(), session)
    keyframe_estimate = ShotCost(per_attempt_cost=32, max_attempts=2, total_cost=64)

    bridged = make_shot(status="completed", retry_count=0, continuity_mechanism_used="frame-bridge")
    keyframed = make_shot(status="completed", retry_count=0, continuity_mechanism_used="ip-adapter")
    keyframed_twice = make_shot(status="completed", retry_count=1, continuity_mechanism_used="ip-adapter")

    assert CreditCostCalculator.refund_amount(keyframe_estimate, bridged) == 34
    assert CreditCostCalculator.refund_amount(estimate, keyframed) == 28
    # charge is capped at the reservation
    assert CreditCostCalculator.refund_amount(estimate, keyframed_twice) == 0
