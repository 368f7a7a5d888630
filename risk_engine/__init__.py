"""Risk scoring and risk-tier based allocation sizing."""

from .cache import TTLCache
from .ml import MLEnhancer, MLSettings
from .monitor import RiskChange, RiskChangeMonitor
from .scoring import RiskScoringEngine, top_risk_factors
from .sizing import AllocationPlan, AllocationPosition, RiskPreference, generate_allocation
from .sources import MetadataSource, StaticMetadataSource
from .types import (
    FactorScore,
    GithubMetrics,
    Opportunity,
    ProtocolProfile,
    RiskScore,
    RiskTier,
    ScoredOpportunity,
    SocialMetrics,
    SubjectType,
    tier_for_score,
)

__all__ = [
    "AllocationPlan",
    "AllocationPosition",
    "FactorScore",
    "GithubMetrics",
    "MLEnhancer",
    "MLSettings",
    "MetadataSource",
    "Opportunity",
    "ProtocolProfile",
    "RiskChange",
    "RiskChangeMonitor",
    "RiskPreference",
    "RiskScore",
    "RiskScoringEngine",
    "RiskTier",
    "ScoredOpportunity",
    "SocialMetrics",
    "StaticMetadataSource",
    "SubjectType",
    "TTLCache",
    "generate_allocation",
    "tier_for_score",
]
