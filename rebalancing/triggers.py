"""Read-only evaluation of threshold and periodic rebalancing triggers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .models import AllocationSnapshot, RebalancingStrategy, utcnow


@dataclass
class TriggerDecision:
    strategy_id: str
    eligible: bool
    reason: str
    deviations: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class TriggerRunReport:
    """Summary of one trigger sweep over all matching strategies."""

    trigger: str
    processed: int = 0
    rebalanced: int = 0
    skipped: int = 0
    errors: int = 0
    details: List[Dict[str, Any]] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "trigger": self.trigger,
            "processed": self.processed,
            "rebalanced": self.rebalanced,
            "skipped": self.skipped,
            "errors": self.errors,
            "details": list(self.details),
        }


def recently_rebalanced(strategy: RebalancingStrategy, now: Optional[datetime] = None) -> bool:
    if strategy.last_rebalance is None:
        return False
    now = now or utcnow()
    window = timedelta(hours=strategy.min_hours_between_rebalances)
    return now - strategy.last_rebalance.timestamp < window


def threshold_deviations(strategy: RebalancingStrategy, snapshot: AllocationSnapshot) -> List[Dict[str, Any]]:
    """List the target entries that are out of tolerance or out of bounds."""

    current = {entry.id: entry.percentage for entry in snapshot.for_dimension(strategy.dimension)}
    deviations: List[Dict[str, Any]] = []
    for target in strategy.target_allocation:
        if target.id not in current:
            deviations.append({"id": target.id, "reason": "missing", "target": target.target_percentage, "current": 0.0})
            continue
        actual = current[target.id]
        deviation = abs(actual - target.target_percentage)
        reason = None
        if deviation > strategy.tolerance:
            reason = "deviation"
        elif target.min_percentage is not None and actual < target.min_percentage:
            reason = "below_min"
        elif target.max_percentage is not None and actual > target.max_percentage:
            reason = "above_max"
        if reason:
            deviations.append(
                {
                    "id": target.id,
                    "reason": reason,
                    "target": target.target_percentage,
                    "current": actual,
                    "deviation": deviation,
                }
            )
    return deviations


def evaluate_threshold(
    strategy: RebalancingStrategy, snapshot: AllocationSnapshot, now: Optional[datetime] = None
) -> TriggerDecision:
    if recently_rebalanced(strategy, now):
        return TriggerDecision(strategy.id, False, "cooldown")
    if snapshot.total_value <= 0:
        return TriggerDecision(strategy.id, False, "empty_portfolio")
    deviations = threshold_deviations(strategy, snapshot)
    if not deviations:
        return TriggerDecision(strategy.id, False, "within_tolerance")
    return TriggerDecision(strategy.id, True, "threshold_exceeded", deviations)


def evaluate_periodic(strategy: RebalancingStrategy, now: Optional[datetime] = None) -> TriggerDecision:
    now = now or utcnow()
    due = strategy.next_scheduled_rebalance
    if due is None or now >= due:
        return TriggerDecision(strategy.id, True, "schedule_due" if due else "unscheduled")
    return TriggerDecision(strategy.id, False, "not_due")


__all__ = [
    "TriggerDecision",
    "TriggerRunReport",
    "evaluate_periodic",
    "evaluate_threshold",
    "recently_rebalanced",
    "threshold_deviations",
]
