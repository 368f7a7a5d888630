import pytest

from risk_engine.sizing import AllocationPlan, RiskPreference, generate_allocation
from risk_engine.types import Opportunity, RiskScore, ScoredOpportunity, SubjectType, tier_for_score


def _scored(opportunity_id: str, score: float, apy: float, protocol_id: str = "proto") -> ScoredOpportunity:
    opportunity = Opportunity(id=opportunity_id, protocol_id=protocol_id, name=opportunity_id.upper(), apy=apy)
    risk = RiskScore(
        subject_id=opportunity_id,
        subject_type=SubjectType.OPPORTUNITY,
        overall_score=score,
        tier=tier_for_score(score),
        breakdown={},
    )
    return ScoredOpportunity(opportunity=opportunity, risk=risk)


def test_conservative_allocation_caps_positions_and_respects_floor():
    scored = [_scored(f"low-{index}", 10 + index, 3 + index * 0.5) for index in range(10)]

    plan = generate_allocation("low", scored, 10_000)

    assert plan.status == "success"
    assert len(plan.positions) == 8
    assert all(position.percentage >= 5.0 for position in plan.positions)
    assert sum(position.percentage for position in plan.positions) == pytest.approx(100.0, abs=0.01)
    assert sum(position.amount for position in plan.positions) == pytest.approx(10_000, abs=0.01)


def test_conservative_allocation_ignores_riskier_tiers():
    scored = [_scored("safe", 20, 4), _scored("medium", 50, 12), _scored("risky", 80, 40)]

    plan = generate_allocation(RiskPreference.LOW, scored, 1_000)

    assert [position.opportunity_id for position in plan.positions] == ["safe"]
    assert plan.positions[0].percentage == 100.0


def test_moderate_allocation_uses_low_and_medium_with_ten_percent_floor():
    scored = [_scored(f"op-{index}", 25 + index * 5, 2 + index, protocol_id=f"p{index}") for index in range(8)]

    plan = generate_allocation("medium", scored, 5_000)

    assert 0 < len(plan.positions) <= 5
    assert all(position.tier.value in ("low", "medium") for position in plan.positions)
    assert all(position.percentage >= 10.0 for position in plan.positions)
    assert sum(position.percentage for position in plan.positions) == pytest.approx(100.0, abs=0.01)


def test_aggressive_allocation_uses_fixed_splits():
    scored = [_scored("a", 80, 60), _scored("b", 70, 30), _scored("c", 20, 5), _scored("d", 90, 10)]

    plan = generate_allocation("high", scored, 10_000)

    assert sorted(position.percentage for position in plan.positions) == [15.0, 25.0, 60.0]
    assert plan.positions[0].amount == 6_000.0


def test_no_matching_opportunity_returns_no_match_plan():
    plan = generate_allocation("low", [_scored("risky", 90, 50)], 1_000)

    assert plan.status == "no_match"
    assert plan.positions == []
    assert plan.message


def test_unknown_preference_is_rejected():
    with pytest.raises(ValueError):
        generate_allocation("reckless", [], 100)


def test_projected_yield_and_target_allocation():
    scored = [_scored("a", 10, 4, protocol_id="aave"), _scored("b", 12, 6, protocol_id="aave")]

    plan = generate_allocation("low", scored, 1_000)
    targets = plan.to_target_allocation()

    assert isinstance(plan, AllocationPlan)
    assert plan.projected_yield == pytest.approx(sum(p.projected_yield for p in plan.positions))
    assert targets == [{"dimension": "protocol", "id": "aave", "name": "aave", "target_percentage": 100.0}]
    assert plan.to_payload()["preference"] == "low"
