"""Risk scoring for protocols and yield opportunities."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from . import factors
from .cache import TTLCache
from .ml import MLEnhancer
from .sources import MetadataSource
from .types import (
    FactorScore,
    Opportunity,
    ProtocolProfile,
    RiskScore,
    ScoredOpportunity,
    SubjectType,
    clamp_score,
)

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]


class RiskScoringEngine:
    """Compute weighted factor scores and cache them per subject.

    A factor that raises or lacks data contributes the neutral score instead
    of aborting the whole computation.
    """

    def __init__(
        self,
        *,
        metadata: Optional[MetadataSource] = None,
        cache: Optional[TTLCache[RiskScore]] = None,
        ml: Optional[MLEnhancer] = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._metadata = metadata
        self._cache: TTLCache[RiskScore] = cache if cache is not None else TTLCache()
        self._ml = ml
        self._now = now

    @property
    def cache(self) -> TTLCache[RiskScore]:
        return self._cache

    def cached(self, subject_type: SubjectType, subject_id: str) -> Optional[RiskScore]:
        """Return the last stored score for a subject, expired or not."""

        return self._cache.peek((subject_type.value, subject_id))

    async def score_protocol(self, protocol: ProtocolProfile, *, use_cache: bool = True) -> RiskScore:
        key: CacheKey = (SubjectType.PROTOCOL.value, protocol.id)
        if use_cache:
            hit = self._cache.get(key)
            if hit is not None:
                return hit

        now = self._now()
        weights = factors.PROTOCOL_WEIGHTS
        breakdown: Dict[str, FactorScore] = {
            "tvl": self._factor(protocol.id, "tvl", weights["tvl"], lambda: factors.tvl_score(protocol.tvl_usd), {"tvl_usd": protocol.tvl_usd}),
            "audit": self._factor(
                protocol.id,
                "audit",
                weights["audit"],
                lambda: factors.audit_score(protocol.audited, protocol.audit_links),
                {"audited": protocol.audited, "audit_count": len(protocol.audit_links)},
            ),
            "age": self._factor(protocol.id, "age", weights["age"], lambda: factors.age_score(protocol.inception, now=now)),
            "volatility": self._factor(
                protocol.id,
                "volatility",
                weights["volatility"],
                lambda: factors.volatility_score(protocol.apy_histories, protocol.category),
            ),
            "complexity": self._factor(
                protocol.id,
                "complexity",
                weights["complexity"],
                lambda: factors.complexity_score(protocol.category),
                {"category": protocol.category},
            ),
            "community": self._factor(protocol.id, "community", weights["community"], lambda: factors.community_score(protocol)),
        }
        score = RiskScore.from_breakdown(protocol.id, SubjectType.PROTOCOL, breakdown, computed_at=now)
        if self._ml is not None and self._ml.enabled:
            score = await self._ml.enhance(score, self._protocol_features(protocol, score, now))
        self._cache.set(key, score)
        logger.debug(
            "Scored protocol",
            extra={"protocol": protocol.id, "score": score.overall_score, "tier": score.tier.value, "ml": score.ml_enhanced},
        )
        return score

    async def score_opportunity(self, opportunity: Opportunity, *, use_cache: bool = True) -> RiskScore:
        key: CacheKey = (SubjectType.OPPORTUNITY.value, opportunity.id)
        if use_cache:
            hit = self._cache.get(key)
            if hit is not None:
                return hit

        protocol_score = await self._protocol_component(opportunity.protocol_id, use_cache=use_cache)
        if protocol_score is None:
            protocol_factor = FactorScore(
                factors.NEUTRAL_SCORE,
                factors.PROTOCOL_COMPONENT_WEIGHT,
                {"protocol_id": opportunity.protocol_id, "resolved": False},
            )
        else:
            protocol_factor = FactorScore(
                protocol_score.overall_score,
                factors.PROTOCOL_COMPONENT_WEIGHT,
                {"protocol_id": opportunity.protocol_id, "tier": protocol_score.tier.value},
            )

        share = factors.OPPORTUNITY_COMPONENT_WEIGHT
        weights = factors.OPPORTUNITY_WEIGHTS
        breakdown = {
            "protocol": protocol_factor,
            "yield_volatility": self._factor(
                opportunity.id,
                "yield_volatility",
                share * weights["yield_volatility"],
                lambda: factors.yield_volatility_score(opportunity.apy),
                {"apy": opportunity.apy},
            ),
            "impermanent_loss": self._factor(
                opportunity.id,
                "impermanent_loss",
                share * weights["impermanent_loss"],
                lambda: factors.impermanent_loss_score(opportunity),
            ),
            "liquidity": self._factor(
                opportunity.id,
                "liquidity",
                share * weights["liquidity"],
                lambda: factors.liquidity_score(opportunity),
            ),
        }
        score = RiskScore.from_breakdown(opportunity.id, SubjectType.OPPORTUNITY, breakdown, computed_at=self._now())
        self._cache.set(key, score)
        return score

    async def score_opportunities(self, opportunities: Iterable[Opportunity]) -> List[ScoredOpportunity]:
        items = list(opportunities)
        scores = await asyncio.gather(*(self.score_opportunity(item) for item in items))
        return [ScoredOpportunity(opportunity=item, risk=score) for item, score in zip(items, scores)]

    async def _protocol_component(self, protocol_id: str, *, use_cache: bool) -> Optional[RiskScore]:
        if self._metadata is None:
            return None
        try:
            profile = await self._metadata.get_protocol(protocol_id)
        except Exception as exc:
            logger.warning("Protocol metadata lookup failed", extra={"protocol": protocol_id, "error": str(exc)})
            return None
        if profile is None:
            logger.warning("Protocol metadata not found", extra={"protocol": protocol_id})
            return None
        return await self.score_protocol(profile, use_cache=use_cache)

    def _factor(
        self,
        subject_id: str,
        name: str,
        weight: float,
        compute: Callable[[], Optional[float]],
        details: Optional[dict] = None,
    ) -> FactorScore:
        try:
            value = compute()
        except Exception as exc:
            logger.warning(
                "Risk factor failed, using neutral score",
                extra={"subject": subject_id, "factor": name, "error": str(exc)},
                exc_info=True,
            )
            value = None
        if value is None:
            return FactorScore(factors.NEUTRAL_SCORE, weight, {"fallback": True})
        return FactorScore(clamp_score(value), weight, details)

    @staticmethod
    def _protocol_features(protocol: ProtocolProfile, score: RiskScore, now: datetime) -> dict:
        age_days = None
        if protocol.inception is not None:
            inception = protocol.inception
            if inception.tzinfo is None:
                inception = inception.replace(tzinfo=timezone.utc)
            age_days = (now - inception).total_seconds() / 86400
        return {
            "tvl": protocol.tvl_usd,
            "audited": 1 if protocol.audited else 0,
            "audit_count": len(protocol.audit_links),
            "age_in_days": age_days,
            "category": protocol.category,
            "base_risk_score": score.overall_score,
        }


def top_risk_factors(score: RiskScore, limit: int = 3) -> List[Tuple[str, FactorScore]]:
    """Return the factors contributing most to ``score``."""

    ranked = sorted(score.breakdown.items(), key=lambda item: item[1].contribution, reverse=True)
    return ranked[: max(limit, 0)]
