"""Optional blending of base risk scores with a remote model prediction."""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from services.telemetry import ResiliencePolicy, Telemetry

from .types import RiskScore, clamp_score, tier_for_score

logger = logging.getLogger(__name__)

ML_WEIGHT = 0.7
BASE_WEIGHT = 0.3
DEFAULT_CONFIDENCE = 0.7

PostFunc = Callable[[str, Mapping[str, Any]], Awaitable[Mapping[str, Any]]]


@dataclass
class MLSettings:
    enabled: bool = False
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    model_version: Optional[str] = None
    min_confidence: Optional[float] = None
    timeout_seconds: float = 5.0
    max_retries: int = 1


class MLEnhancer:
    """Blend a remote prediction into a base score.

    The enhancer never raises: transport errors, timeouts, an open circuit and
    malformed responses all return the base score unchanged.
    """

    service_name = "risk_ml"

    def __init__(
        self,
        settings: MLSettings,
        *,
        telemetry: Optional[Telemetry] = None,
        post_func: Optional[PostFunc] = None,
    ) -> None:
        self.settings = settings
        self._telemetry = telemetry or Telemetry()
        self._post_func = post_func
        self._policy = ResiliencePolicy(
            request_timeout=settings.timeout_seconds,
            max_retries=settings.max_retries,
        )

    @property
    def enabled(self) -> bool:
        return bool(self.settings.enabled and (self.settings.endpoint or self._post_func))

    async def enhance(self, base: RiskScore, features: Mapping[str, Any]) -> RiskScore:
        if not self.enabled:
            return base
        payload = {"features": dict(features), "model_version": self.settings.model_version}
        try:
            response = await self._telemetry.call(
                self.service_name,
                lambda: self._post(payload),
                policy=self._policy,
            )
        except Exception as exc:
            logger.warning(
                "ML enhancement unavailable, keeping base score",
                extra={"subject": base.subject_id, "error": str(exc)},
            )
            return base

        prediction = _coerce_float(response.get("predicted_risk_score") if isinstance(response, Mapping) else None)
        if prediction is None:
            logger.warning("ML response missing prediction", extra={"subject": base.subject_id})
            return base
        confidence = _coerce_float(response.get("confidence"))
        if confidence is None:
            confidence = DEFAULT_CONFIDENCE
        if self.settings.min_confidence is not None and confidence < self.settings.min_confidence:
            logger.info(
                "ML prediction below confidence floor",
                extra={"subject": base.subject_id, "confidence": confidence, "floor": self.settings.min_confidence},
            )
            return base

        blended = clamp_score(prediction * ML_WEIGHT + base.overall_score * BASE_WEIGHT)
        return dataclasses.replace(
            base,
            overall_score=blended,
            tier=tier_for_score(blended),
            ml_enhanced=True,
            ml_confidence=confidence,
        )

    async def _post(self, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        if self._post_func is not None:
            return await self._post_func(str(self.settings.endpoint), payload)
        headers = {}
        if self.settings.api_key:
            headers["X-API-Key"] = self.settings.api_key
        async with httpx.AsyncClient() as client:
            response = await client.post(
                str(self.settings.endpoint),
                json=dict(payload),
                headers=headers,
                timeout=self.settings.timeout_seconds,
            )
            response.raise_for_status()
            return response.json()


def _coerce_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
