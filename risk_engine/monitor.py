"""Detect tier changes between consecutive risk scans."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from .scoring import RiskScoringEngine
from .types import Opportunity, ProtocolProfile, RiskScore, SubjectType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RiskChange:
    subject_type: SubjectType
    subject_id: str
    name: str
    previous_tier: str
    current_tier: str
    previous_score: float
    current_score: float
    protocol_id: Optional[str] = None
    detected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def direction(self) -> str:
        return "increased" if self.current_score > self.previous_score else "decreased"

    def to_payload(self) -> Dict[str, Any]:
        return {
            "subject_type": self.subject_type.value,
            "subject_id": self.subject_id,
            "name": self.name,
            "protocol_id": self.protocol_id,
            "previous_tier": self.previous_tier,
            "current_tier": self.current_tier,
            "previous_score": self.previous_score,
            "current_score": self.current_score,
            "direction": self.direction,
            "detected_at": self.detected_at.isoformat(),
        }


ChangeListener = Callable[[RiskChange], Awaitable[None]]


class RiskChangeMonitor:
    """Rescore subjects and report those whose tier moved since the last scan.

    The first scan of a subject only records a baseline.
    """

    def __init__(self, engine: RiskScoringEngine, *, listener: Optional[ChangeListener] = None) -> None:
        self._engine = engine
        self._listener = listener
        self._history: Dict[Tuple[str, str], RiskScore] = {}

    async def scan(
        self,
        protocols: Iterable[ProtocolProfile] = (),
        opportunities: Iterable[Opportunity] = (),
    ) -> List[RiskChange]:
        changes: List[RiskChange] = []
        for protocol in protocols:
            score = await self._engine.score_protocol(protocol, use_cache=False)
            change = self._compare(score, protocol.name or protocol.id, None)
            if change is not None:
                changes.append(change)
        for opportunity in opportunities:
            score = await self._engine.score_opportunity(opportunity, use_cache=False)
            change = self._compare(score, opportunity.name or opportunity.id, opportunity.protocol_id)
            if change is not None:
                changes.append(change)

        for change in changes:
            logger.info(
                "Risk tier of %s %s from %s to %s",
                change.name,
                change.direction,
                change.previous_tier,
                change.current_tier,
                extra={"subject_id": change.subject_id, "protocol_id": change.protocol_id},
            )
            if self._listener is None:
                continue
            try:
                await self._listener(change)
            except Exception as exc:
                logger.error("Risk change listener failed: %s", exc, exc_info=True)
        return changes

    def _compare(self, score: RiskScore, name: str, protocol_id: Optional[str]) -> Optional[RiskChange]:
        key = (score.subject_type.value, score.subject_id)
        previous = self._history.get(key)
        self._history[key] = score
        if previous is None or previous.tier == score.tier:
            return None
        return RiskChange(
            subject_type=score.subject_type,
            subject_id=score.subject_id,
            name=name,
            previous_tier=previous.tier.value,
            current_tier=score.tier.value,
            previous_score=previous.overall_score,
            current_score=score.overall_score,
            protocol_id=protocol_id if score.subject_type is SubjectType.OPPORTUNITY else score.subject_id,
        )
