"""Individual risk factor calculators.

Every calculator returns a score in ``[0, 100]`` where higher means riskier.
They are pure functions over :mod:`risk_engine.types` values; the scoring
engine is responsible for substituting the neutral default when one raises.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from .types import GithubMetrics, Opportunity, ProtocolProfile, SocialMetrics, clamp_score

NEUTRAL_SCORE = 50.0

PROTOCOL_WEIGHTS = {
    "tvl": 0.25,
    "audit": 0.20,
    "age": 0.15,
    "volatility": 0.15,
    "complexity": 0.15,
    "community": 0.10,
}

PROTOCOL_COMPONENT_WEIGHT = 0.7
OPPORTUNITY_COMPONENT_WEIGHT = 0.3
OPPORTUNITY_WEIGHTS = {
    "yield_volatility": 0.4,
    "impermanent_loss": 0.3,
    "liquidity": 0.3,
}

CATEGORY_VOLATILITY = {
    "lending": 30.0,
    "liquid_staking": 25.0,
    "yield_aggregator": 60.0,
    "dex": 55.0,
    "derivatives": 80.0,
}

CATEGORY_COMPLEXITY = {
    "lending": 30.0,
    "liquid_staking": 40.0,
    "dex": 50.0,
    "yield_aggregator": 65.0,
    "cdp": 75.0,
    "derivatives": 80.0,
}
UNKNOWN_COMPLEXITY = 70.0

_STABLE_MARKERS = ("usd", "dai")
_VOLATILE_MARKERS = ("etf", "ape", "meme")


def _bucket(value: float, buckets: Sequence[tuple], default: float) -> float:
    """Return the score of the first ``(threshold, score)`` with ``value >= threshold``."""

    for threshold, score in buckets:
        if value >= threshold:
            return score
    return default


def tvl_score(tvl_usd: float) -> float:
    return _bucket(
        tvl_usd,
        ((1_000_000_000, 10.0), (100_000_000, 30.0), (10_000_000, 50.0), (1_000_000, 80.0)),
        95.0,
    )


def audit_score(audited: bool, audit_links: Sequence[str]) -> float:
    if not audited:
        return 100.0
    count = len(audit_links or ())
    if count >= 3:
        return 15.0
    if count == 2:
        return 30.0
    if count == 1:
        return 50.0
    return 80.0


def age_score(inception: Optional[datetime], *, now: Optional[datetime] = None) -> float:
    if inception is None:
        return NEUTRAL_SCORE
    current = now or datetime.now(timezone.utc)
    if inception.tzinfo is None:
        inception = inception.replace(tzinfo=timezone.utc)
    age_days = (current - inception).total_seconds() / 86400
    return _bucket(age_days, ((365 * 3, 15.0), (365, 35.0), (180, 60.0), (30, 80.0)), 95.0)


def coefficient_of_variation(values: Sequence[float]) -> Optional[float]:
    """Population std over mean, or the std itself when the mean is zero."""

    if len(values) < 2:
        return None
    mean = sum(values) / len(values)
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    std = math.sqrt(variance)
    return std / mean if mean != 0 else std


def volatility_score(histories: Iterable[Sequence[float]], category: str) -> float:
    histories = [history for history in histories if history]
    if not histories:
        return CATEGORY_VOLATILITY.get(category, NEUTRAL_SCORE)
    ratios = [cv for cv in (coefficient_of_variation(history) for history in histories) if cv is not None]
    if not ratios:
        return NEUTRAL_SCORE
    average = sum(ratios) / len(ratios)
    if average < 0.05:
        return 15.0
    if average < 0.15:
        return 30.0
    if average < 0.30:
        return 50.0
    if average < 0.5:
        return 75.0
    return 90.0


def complexity_score(category: str) -> float:
    return CATEGORY_COMPLEXITY.get(category, UNKNOWN_COMPLEXITY)


def github_points(metrics: GithubMetrics) -> float:
    points = 0.0
    stars = metrics.stars
    if stars >= 5000:
        points += 15
    elif stars >= 2000:
        points += 12
    elif stars >= 1000:
        points += 9
    elif stars >= 500:
        points += 7
    elif stars >= 100:
        points += 5
    elif stars > 0:
        points += 3

    contributors = metrics.contributors
    if contributors >= 50:
        points += 10
    elif contributors >= 25:
        points += 8
    elif contributors >= 10:
        points += 6
    elif contributors >= 5:
        points += 4
    elif contributors > 0:
        points += 2

    last_commit = metrics.last_commit_days
    if last_commit <= 1:
        points += 10
    elif last_commit <= 7:
        points += 8
    elif last_commit <= 30:
        points += 5
    elif last_commit <= 90:
        points += 3

    forks = metrics.forks
    if forks >= 1000:
        points += 5
    elif forks >= 500:
        points += 4
    elif forks >= 100:
        points += 3
    elif forks >= 50:
        points += 2
    elif forks > 0:
        points += 1

    resolved = metrics.issues_resolved
    if resolved >= 0.9:
        points += 10
    elif resolved >= 0.8:
        points += 8
    elif resolved >= 0.6:
        points += 5
    elif resolved >= 0.4:
        points += 3
    return points


def social_points(metrics: SocialMetrics) -> float:
    followers = metrics.followers
    points = _bucket(
        followers,
        ((500_000, 30.0), (250_000, 25.0), (100_000, 20.0), (50_000, 15.0), (10_000, 10.0)),
        5.0 if followers > 0 else 0.0,
    )
    active_channels = sum(
        1
        for members in (metrics.twitter_followers, metrics.discord_members, metrics.telegram_members)
        if members > 5000
    )
    return points + active_channels * 6


def community_score(profile: ProtocolProfile) -> float:
    if profile.github is not None and profile.social is not None:
        combined = github_points(profile.github) * 0.5 + social_points(profile.social) * 0.5
        return clamp_score(100 - combined)
    return _bucket(profile.tvl_usd, ((500_000_000, 20.0), (50_000_000, 40.0), (5_000_000, 60.0)), 80.0)


def yield_volatility_score(apy: float) -> float:
    if apy <= 3:
        return 10.0
    if apy <= 8:
        return 30.0
    if apy <= 15:
        return 50.0
    if apy <= 30:
        return 75.0
    return 90.0


def impermanent_loss_score(opportunity: Opportunity) -> float:
    if not opportunity.is_lp:
        return 0.0
    assets = [asset.lower() for asset in opportunity.assets]
    if len(assets) < 2:
        return 50.0
    if all(any(marker in asset for marker in _STABLE_MARKERS) for asset in assets):
        return 20.0
    if any(any(marker in asset for marker in _VOLATILE_MARKERS) for asset in assets):
        return 90.0
    return 70.0


def liquidity_score(opportunity: Opportunity) -> float:
    liquidity = opportunity.liquidity_usd if opportunity.liquidity_usd else opportunity.tvl_usd
    return _bucket(
        liquidity or 0.0,
        ((10_000_000, 15.0), (1_000_000, 35.0), (100_000, 60.0), (10_000, 80.0)),
        95.0,
    )
