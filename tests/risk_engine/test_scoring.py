import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from risk_engine import factors
from risk_engine.cache import TTLCache
from risk_engine.ml import MLEnhancer, MLSettings
from risk_engine.scoring import RiskScoringEngine, top_risk_factors
from risk_engine.sources import StaticMetadataSource
from risk_engine.types import Opportunity, ProtocolProfile, RiskTier, SubjectType, tier_for_score

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _blue_chip() -> ProtocolProfile:
    return ProtocolProfile(
        id="aave",
        name="Aave",
        category="lending",
        tvl_usd=2_000_000_000,
        audited=True,
        audit_links=("a", "b", "c"),
        inception=NOW - timedelta(days=4 * 365),
    )


def _degen() -> ProtocolProfile:
    return ProtocolProfile(id="perpx", category="derivatives", tvl_usd=500_000)


def _engine(**kwargs) -> RiskScoringEngine:
    return RiskScoringEngine(now=lambda: NOW, **kwargs)


def test_score_protocol_weights_factors():
    score = asyncio.run(_engine().score_protocol(_blue_chip()))

    assert score.subject_type is SubjectType.PROTOCOL
    assert score.overall_score == pytest.approx(18.75)
    assert score.tier is RiskTier.LOW
    assert set(score.breakdown) == set(factors.PROTOCOL_WEIGHTS)
    assert score.breakdown["tvl"].score == 10.0
    assert score.ml_enhanced is False


def test_unknown_protocol_scores_high():
    score = asyncio.run(_engine().score_protocol(_degen()))

    assert score.overall_score == pytest.approx(83.25)
    assert score.tier is RiskTier.HIGH


def test_failing_factor_contributes_neutral_score(monkeypatch):
    def broken(_tvl):
        raise ArithmeticError("bad tvl")

    monkeypatch.setattr(factors, "tvl_score", broken)
    score = asyncio.run(_engine().score_protocol(_blue_chip()))

    assert score.breakdown["tvl"].score == factors.NEUTRAL_SCORE
    assert score.breakdown["tvl"].details == {"fallback": True}
    assert score.overall_score == pytest.approx(18.75 + 0.25 * 40)


def test_scores_are_cached_until_expiry():
    clock = {"now": 0.0}
    cache = TTLCache(ttl_seconds=60, clock=lambda: clock["now"])
    engine = _engine(cache=cache)

    first = asyncio.run(engine.score_protocol(_blue_chip()))
    again = asyncio.run(engine.score_protocol(_blue_chip()))
    assert again is first

    clock["now"] = 61.0
    refreshed = asyncio.run(engine.score_protocol(_blue_chip()))
    assert refreshed is not first
    assert engine.cached(SubjectType.PROTOCOL, "aave") is refreshed


def test_use_cache_false_recomputes():
    engine = _engine()
    first = asyncio.run(engine.score_protocol(_blue_chip()))
    second = asyncio.run(engine.score_protocol(_blue_chip(), use_cache=False))
    assert second is not first
    assert second.overall_score == first.overall_score


def test_score_opportunity_blends_protocol_component():
    engine = _engine(metadata=StaticMetadataSource([_blue_chip()]))
    opportunity = Opportunity(id="aave-usdc", protocol_id="aave", apy=5.0, tvl_usd=50_000_000)

    score = asyncio.run(engine.score_opportunity(opportunity))

    assert score.subject_type is SubjectType.OPPORTUNITY
    assert score.breakdown["protocol"].score == pytest.approx(18.75)
    assert score.breakdown["protocol"].weight == factors.PROTOCOL_COMPONENT_WEIGHT
    # 0.7 * 18.75 + 0.3 * (0.4 * 30 + 0.3 * 0 + 0.3 * 15)
    assert score.overall_score == pytest.approx(18.075)
    assert score.tier is RiskTier.LOW


def test_score_opportunity_without_metadata_uses_neutral_protocol():
    opportunity = Opportunity(id="mystery", protocol_id="nobody", apy=5.0, tvl_usd=50_000_000)

    score = asyncio.run(_engine().score_opportunity(opportunity))

    assert score.breakdown["protocol"].score == factors.NEUTRAL_SCORE
    assert score.breakdown["protocol"].details["resolved"] is False


def test_ml_prediction_is_blended_into_protocol_score():
    calls = []

    async def post(endpoint, payload):
        calls.append((endpoint, payload))
        return {"predicted_risk_score": 60, "confidence": 0.9}

    ml = MLEnhancer(MLSettings(enabled=True, endpoint="http://ml.local/predict", max_retries=0), post_func=post)
    score = asyncio.run(_engine(ml=ml).score_protocol(_blue_chip()))

    assert score.ml_enhanced is True
    assert score.ml_confidence == 0.9
    assert score.overall_score == pytest.approx(60 * 0.7 + 18.75 * 0.3)
    assert score.tier is RiskTier.MEDIUM
    assert calls[0][1]["features"]["base_risk_score"] == pytest.approx(18.75)


def test_ml_failure_keeps_base_score():
    async def post(endpoint, payload):
        raise ConnectionError("model offline")

    ml = MLEnhancer(MLSettings(enabled=True, endpoint="http://ml.local/predict", max_retries=0), post_func=post)
    score = asyncio.run(_engine(ml=ml).score_protocol(_blue_chip()))

    assert score.ml_enhanced is False
    assert score.overall_score == pytest.approx(18.75)


def test_ml_below_confidence_floor_is_ignored():
    async def post(endpoint, payload):
        return {"predicted_risk_score": 90, "confidence": 0.2}

    settings = MLSettings(enabled=True, endpoint="http://ml.local", min_confidence=0.5, max_retries=0)
    score = asyncio.run(_engine(ml=MLEnhancer(settings, post_func=post)).score_protocol(_blue_chip()))

    assert score.ml_enhanced is False


def test_top_risk_factors_orders_by_contribution():
    score = asyncio.run(_engine().score_protocol(_degen()))

    top = top_risk_factors(score, limit=2)

    assert [name for name, _ in top] == ["tvl", "audit"]
    assert top_risk_factors(score, limit=0) == []


@pytest.mark.parametrize(
    "score, tier",
    [
        (0.0, RiskTier.LOW),
        (30.0, RiskTier.LOW),
        (30.01, RiskTier.MEDIUM),
        (60.0, RiskTier.MEDIUM),
        (60.01, RiskTier.HIGH),
        (85.0, RiskTier.HIGH),
        (85.01, RiskTier.VERY_HIGH),
        (100.0, RiskTier.VERY_HIGH),
    ],
)
def test_tier_thresholds_are_inclusive_upper_bounds(score, tier):
    assert tier_for_score(score) is tier


def test_worst_case_protocol_is_very_high_and_bounded():
    brand_new = ProtocolProfile(
        id="rugdex",
        category="derivatives",
        tvl_usd=250_000,
        audited=False,
        inception=NOW,
        apy_histories=((1.0, 60.0, 2.0, 95.0),),
    )

    score = asyncio.run(_engine().score_protocol(brand_new))

    assert score.overall_score == pytest.approx(91.5)
    assert score.overall_score <= 100.0
    assert score.tier is RiskTier.VERY_HIGH


@pytest.mark.parametrize(
    "profile",
    [
        ProtocolProfile(id="empty"),
        ProtocolProfile(id="huge", category="lending", tvl_usd=1e15, audited=True, audit_links=("a",) * 50),
        ProtocolProfile(id="negative", tvl_usd=-5.0, inception=NOW + timedelta(days=30)),
        ProtocolProfile(id="flat", apy_histories=((0.0, 0.0, 0.0),)),
        ProtocolProfile(id="ancient", inception=datetime(1990, 1, 1)),
    ],
    ids=lambda profile: profile.id,
)
def test_protocol_scores_stay_within_bounds(profile):
    score = asyncio.run(_engine().score_protocol(profile))

    assert 0.0 <= score.overall_score <= 100.0
    assert score.tier is tier_for_score(score.overall_score)
    assert all(0.0 <= factor.score <= 100.0 for factor in score.breakdown.values())
