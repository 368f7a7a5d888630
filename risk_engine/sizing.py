"""Turn scored opportunities into a risk-tier specific allocation."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from .types import RiskTier, ScoredOpportunity

logger = logging.getLogger(__name__)

DEFAULT_ALLOCATION_AMOUNT = 10_000.0

COMPATIBLE_TIERS = {
    RiskTier.LOW: frozenset({RiskTier.LOW}),
    RiskTier.MEDIUM: frozenset({RiskTier.LOW, RiskTier.MEDIUM}),
    RiskTier.HIGH: frozenset(RiskTier),
}

AGGRESSIVE_SPLITS = {1: (1.0,), 2: (0.7, 0.3), 3: (0.6, 0.25, 0.15)}


class RiskPreference(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class AllocationPosition:
    opportunity_id: str
    name: str
    protocol_id: str
    tier: RiskTier
    risk_score: float
    apy: float
    percentage: float
    amount: float
    projected_yield: float
    assets: tuple = ()
    chain: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "opportunity_id": self.opportunity_id,
            "name": self.name,
            "protocol_id": self.protocol_id,
            "tier": self.tier.value,
            "risk_score": self.risk_score,
            "apy": self.apy,
            "percentage": self.percentage,
            "amount": self.amount,
            "projected_yield": self.projected_yield,
        }


@dataclass
class AllocationPlan:
    status: str
    preference: RiskPreference
    total_amount: float
    positions: List[AllocationPosition] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def projected_yield(self) -> float:
        return round(sum(position.projected_yield for position in self.positions), 2)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "preference": self.preference.value,
            "total_amount": self.total_amount,
            "positions": [position.to_payload() for position in self.positions],
            "projected_yield": self.projected_yield,
            "message": self.message,
        }

    def to_target_allocation(self, dimension: str = "protocol") -> List[Dict[str, Any]]:
        """Express the plan as target entries keyed by protocol or opportunity.

        Positions sharing a protocol are merged. The returned mappings are
        accepted by ``rebalancing.models.TargetEntry.from_payload``.
        """

        merged: Dict[str, Dict[str, Any]] = {}
        for position in self.positions:
            if dimension == "protocol":
                key, name = position.protocol_id, position.protocol_id
            else:
                key, name = position.opportunity_id, position.name
            entry = merged.setdefault(
                key,
                {"dimension": dimension, "id": key, "name": name, "target_percentage": 0.0},
            )
            entry["target_percentage"] = round(entry["target_percentage"] + position.percentage, 2)
        return list(merged.values())


def generate_allocation(
    preference: RiskPreference | str,
    scored: Sequence[ScoredOpportunity],
    total_amount: float = DEFAULT_ALLOCATION_AMOUNT,
) -> AllocationPlan:
    """Pick and weight opportunities compatible with ``preference``.

    Returns a ``no_match`` plan rather than raising when nothing qualifies.
    """

    preference = RiskPreference(preference)
    allowed = COMPATIBLE_TIERS[RiskTier(preference.value)]
    candidates = [item for item in scored if item.risk.tier in allowed]
    if not candidates:
        return AllocationPlan(
            status="no_match",
            preference=preference,
            total_amount=total_amount,
            message="No opportunities match the risk criteria",
        )

    candidates.sort(key=lambda item: item.risk_adjusted_return, reverse=True)
    if preference is RiskPreference.LOW:
        selected = candidates[:8]
        fractions = _floored([1.0 / _score(item) for item in selected], floor=0.05)
    elif preference is RiskPreference.MEDIUM:
        selected = candidates[:5]
        weights = [item.opportunity.apy / _score(item) for item in selected]
        if sum(weights) <= 0:
            weights = [1.0] * len(selected)
        fractions = _floored(weights, floor=0.10)
    else:
        selected = candidates[:3]
        fractions = list(AGGRESSIVE_SPLITS[len(selected)])

    positions = _build_positions(selected, fractions, total_amount)
    logger.info(
        "Generated allocation",
        extra={"preference": preference.value, "positions": len(positions), "total_amount": total_amount},
    )
    return AllocationPlan(status="success", preference=preference, total_amount=total_amount, positions=positions)


def _score(item: ScoredOpportunity) -> float:
    score = item.risk.overall_score
    return score if score > 0 else 1.0


def _floored(weights: Sequence[float], *, floor: float) -> List[float]:
    """Normalise ``weights`` to fractions summing to one with each at least ``floor``.

    Positions under the floor are pinned to it and the remaining mass is
    redistributed proportionally among the others until nothing dips below.
    """

    count = len(weights)
    if count == 0:
        return []
    if floor * count >= 1.0:
        return [1.0 / count] * count
    total = sum(weights)
    if total <= 0:
        return [1.0 / count] * count
    fractions = [weight / total for weight in weights]
    pinned = [False] * count
    while True:
        free_mass = 1.0 - floor * sum(pinned)
        free_weight = sum(weight for weight, fixed in zip(weights, pinned) if not fixed)
        changed = False
        for index, weight in enumerate(weights):
            if pinned[index]:
                fractions[index] = floor
                continue
            share = free_mass * weight / free_weight if free_weight > 0 else free_mass / (count - sum(pinned))
            fractions[index] = share
        for index, fraction in enumerate(fractions):
            if not pinned[index] and fraction < floor:
                pinned[index] = True
                changed = True
        if not changed:
            return fractions


def _build_positions(
    selected: Sequence[ScoredOpportunity],
    fractions: Sequence[float],
    total_amount: float,
) -> List[AllocationPosition]:
    percentages = [round(fraction * 100, 2) for fraction in fractions]
    residual = round(100.0 - sum(percentages), 2)
    if percentages and residual:
        largest = max(range(len(percentages)), key=lambda index: percentages[index])
        percentages[largest] = round(percentages[largest] + residual, 2)

    amounts = [round(total_amount * percentage / 100, 2) for percentage in percentages]
    amount_residual = round(total_amount - sum(amounts), 2)
    if amounts and amount_residual:
        largest = max(range(len(amounts)), key=lambda index: amounts[index])
        amounts[largest] = round(amounts[largest] + amount_residual, 2)

    positions = []
    for item, percentage, amount in zip(selected, percentages, amounts):
        opportunity = item.opportunity
        positions.append(
            AllocationPosition(
                opportunity_id=opportunity.id,
                name=opportunity.name,
                protocol_id=opportunity.protocol_id,
                tier=item.risk.tier,
                risk_score=item.risk.overall_score,
                apy=opportunity.apy,
                percentage=percentage,
                amount=amount,
                projected_yield=round(opportunity.apy * amount / 100, 2),
                assets=opportunity.assets,
                chain=opportunity.chain,
            )
        )
    positions.sort(key=lambda position: position.amount, reverse=True)
    return positions
