"""Value types shared by the risk scoring engine and strategy sizing."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

LOW_THRESHOLD = 30.0
MEDIUM_THRESHOLD = 60.0
HIGH_THRESHOLD = 85.0


class RiskTier(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


class SubjectType(str, Enum):
    PROTOCOL = "protocol"
    OPPORTUNITY = "opportunity"


def clamp_score(value: float) -> float:
    return min(max(float(value), 0.0), 100.0)


def tier_for_score(score: float) -> RiskTier:
    """Map a clamped score onto the fixed tier thresholds."""

    if score <= LOW_THRESHOLD:
        return RiskTier.LOW
    if score <= MEDIUM_THRESHOLD:
        return RiskTier.MEDIUM
    if score <= HIGH_THRESHOLD:
        return RiskTier.HIGH
    return RiskTier.VERY_HIGH


@dataclass(frozen=True)
class FactorScore:
    score: float
    weight: float
    details: Optional[Mapping[str, Any]] = None

    @property
    def contribution(self) -> float:
        return self.score * self.weight

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"score": self.score, "weight": self.weight}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


@dataclass(frozen=True)
class RiskScore:
    """Immutable result of scoring a protocol or an opportunity."""

    subject_id: str
    subject_type: SubjectType
    overall_score: float
    tier: RiskTier
    breakdown: Mapping[str, FactorScore]
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    ml_enhanced: bool = False
    ml_confidence: Optional[float] = None

    @classmethod
    def from_breakdown(
        cls,
        subject_id: str,
        subject_type: SubjectType,
        breakdown: Mapping[str, FactorScore],
        *,
        computed_at: Optional[datetime] = None,
    ) -> "RiskScore":
        overall = clamp_score(sum(factor.contribution for factor in breakdown.values()))
        return cls(
            subject_id=subject_id,
            subject_type=subject_type,
            overall_score=overall,
            tier=tier_for_score(overall),
            breakdown=dict(breakdown),
            computed_at=computed_at or datetime.now(timezone.utc),
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "subject_id": self.subject_id,
            "subject_type": self.subject_type.value,
            "overall_score": self.overall_score,
            "tier": self.tier.value,
            "breakdown": {name: factor.to_payload() for name, factor in self.breakdown.items()},
            "computed_at": self.computed_at.isoformat(),
            "ml_enhanced": self.ml_enhanced,
            "ml_confidence": self.ml_confidence,
        }


@dataclass(frozen=True)
class GithubMetrics:
    stars: int = 0
    contributors: int = 0
    last_commit_days: float = 365.0
    forks: int = 0
    issues_resolved: float = 0.0


@dataclass(frozen=True)
class SocialMetrics:
    twitter_followers: int = 0
    discord_members: int = 0
    telegram_members: int = 0
    total_followers: Optional[int] = None

    @property
    def followers(self) -> int:
        if self.total_followers is not None:
            return self.total_followers
        return self.twitter_followers + self.discord_members + self.telegram_members


@dataclass(frozen=True)
class ProtocolProfile:
    """Metadata describing a protocol for risk scoring purposes."""

    id: str
    name: str = ""
    category: str = "other"
    tvl_usd: float = 0.0
    audited: bool = False
    audit_links: Tuple[str, ...] = ()
    inception: Optional[datetime] = None
    apy_histories: Tuple[Tuple[float, ...], ...] = ()
    github: Optional[GithubMetrics] = None
    social: Optional[SocialMetrics] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "ProtocolProfile":
        github = payload.get("github")
        social = payload.get("social")
        inception = payload.get("inception")
        if isinstance(inception, str):
            inception = datetime.fromisoformat(inception.replace("Z", "+00:00"))
        histories: Sequence[Sequence[Any]] = payload.get("apy_histories") or ()
        return cls(
            id=str(payload["id"]),
            name=str(payload.get("name") or payload["id"]),
            category=str(payload.get("category") or "other"),
            tvl_usd=float(payload.get("tvl_usd") or 0.0),
            audited=bool(payload.get("audited", False)),
            audit_links=tuple(payload.get("audit_links") or ()),
            inception=inception,
            apy_histories=tuple(tuple(float(value) for value in history) for history in histories),
            github=GithubMetrics(**github) if isinstance(github, Mapping) else None,
            social=SocialMetrics(**social) if isinstance(social, Mapping) else None,
        )


@dataclass(frozen=True)
class Opportunity:
    """A yield-bearing position a user can allocate into."""

    id: str
    protocol_id: str
    name: str = ""
    apy: float = 0.0
    tvl_usd: float = 0.0
    liquidity_usd: Optional[float] = None
    type: str = "lending"
    assets: Tuple[str, ...] = ()
    chain: Optional[str] = None

    @property
    def is_lp(self) -> bool:
        return self.type == "lp"

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Opportunity":
        liquidity = payload.get("liquidity_usd")
        return cls(
            id=str(payload["id"]),
            protocol_id=str(payload["protocol_id"]),
            name=str(payload.get("name") or payload["id"]),
            apy=float(payload.get("apy") or 0.0),
            tvl_usd=float(payload.get("tvl_usd") or 0.0),
            liquidity_usd=float(liquidity) if liquidity is not None else None,
            type=str(payload.get("type") or "lending"),
            assets=tuple(payload.get("assets") or ()),
            chain=payload.get("chain"),
        )


@dataclass(frozen=True)
class ScoredOpportunity:
    opportunity: Opportunity
    risk: RiskScore

    @property
    def risk_adjusted_return(self) -> float:
        score = self.risk.overall_score
        return self.opportunity.apy / (score if score > 0 else 1.0)


__all__ = [
    "FactorScore",
    "GithubMetrics",
    "Opportunity",
    "ProtocolProfile",
    "RiskScore",
    "RiskTier",
    "ScoredOpportunity",
    "SocialMetrics",
    "SubjectType",
    "clamp_score",
    "tier_for_score",
]
