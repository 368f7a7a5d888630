"""Resilience helpers for calls to protocol adapters and remote scoring endpoints."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class CircuitOpenError(RuntimeError):
    """Raised when a call is refused because the service's breaker is open."""

    def __init__(self, service: str) -> None:
        self.service = service
        super().__init__(f"Circuit open for {service}")


@dataclass
class ResiliencePolicy:
    """Timeout, retry and circuit breaker settings for one class of outbound calls."""

    request_timeout: float = 10.0
    max_retries: int = 2
    retry_backoff: float = 0.5
    circuit_breaker_threshold: int = 3
    circuit_breaker_reset_s: float = 30.0

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, Any]]) -> "ResiliencePolicy":
        known = {item.name for item in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in (payload or {}).items() if key in known})


@dataclass
class CircuitBreakerState:
    """Failure counter that opens after ``threshold`` consecutive failures.

    An open breaker closes again once ``reset_seconds`` have passed on ``clock``.
    """

    threshold: int
    reset_seconds: float
    clock: Clock = time.monotonic
    failures: int = 0
    opened_at: Optional[float] = None

    def is_open(self) -> bool:
        if self.opened_at is None:
            return False
        if self.clock() - self.opened_at < self.reset_seconds:
            return True
        self.record_success()
        return False

    def record_failure(self) -> None:
        self.failures += 1
        if self.opened_at is None and self.failures >= self.threshold:
            self.opened_at = self.clock()

    def record_success(self) -> None:
        self.failures = 0
        self.opened_at = None


@dataclass
class ServiceStatus:
    status: str
    reason: Optional[str] = None
    last_success: Optional[datetime] = None
    last_checked: Optional[datetime] = None
    failures: int = 0
    successes: int = 0

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def record(self, healthy: bool, reason: Optional[str] = None) -> None:
        now = datetime.now(timezone.utc)
        self.status = "healthy" if healthy else "degraded"
        self.reason = reason
        self.last_checked = now
        if healthy:
            self.last_success = now
            self.successes += 1
        else:
            self.failures += 1

    def to_payload(self) -> Dict[str, Any]:
        payload = dataclasses.asdict(self)
        for key in ("last_success", "last_checked"):
            value = payload[key]
            payload[key] = value.isoformat() if value is not None else None
        return payload


class Telemetry:
    """Run outbound calls under a resilience policy and remember how each service fared."""

    def __init__(self, *, policy: Optional[ResiliencePolicy] = None, clock: Clock = time.monotonic) -> None:
        self.policy = policy or ResiliencePolicy()
        self.latencies_ms: Dict[str, float] = {}
        self.service_status: Dict[str, ServiceStatus] = {}
        self._breakers: Dict[str, CircuitBreakerState] = {}
        self._clock = clock

    def breaker(self, name: str) -> CircuitBreakerState:
        return self._breakers.setdefault(
            name,
            CircuitBreakerState(
                self.policy.circuit_breaker_threshold,
                self.policy.circuit_breaker_reset_s,
                clock=self._clock,
            ),
        )

    def mark_service_healthy(self, name: str) -> None:
        self.service_status.setdefault(name, ServiceStatus(status="healthy")).record(True)

    def mark_service_degraded(self, name: str, reason: str) -> None:
        self.service_status.setdefault(name, ServiceStatus(status="degraded")).record(False, reason)

    async def call(
        self,
        name: str,
        func: Callable[[], Awaitable[Any]],
        *,
        policy: Optional[ResiliencePolicy] = None,
    ) -> Any:
        """Await ``func()`` with a timeout, linear backoff between retries and a circuit breaker.

        Once retries run out, or the breaker opens mid-way, the last exception
        propagates to the caller.
        """

        selected = policy or self.policy
        breaker = self.breaker(name)
        if breaker.is_open():
            logger.warning("Circuit breaker open for %s", name)
            self.mark_service_degraded(name, "circuit_open")
            raise CircuitOpenError(name)

        attempts = max(selected.max_retries, 0) + 1
        for attempt in range(1, attempts + 1):
            try:
                result = await self._timed(name, func, selected.request_timeout)
            except Exception as exc:
                breaker.record_failure()
                self.mark_service_degraded(name, str(exc) or type(exc).__name__)
                logger.debug("%s attempt %s/%s failed: %r", name, attempt, attempts, exc)
                if attempt == attempts or breaker.is_open():
                    raise
                await asyncio.sleep(selected.retry_backoff * attempt)
            else:
                breaker.record_success()
                self.mark_service_healthy(name)
                return result
        raise AssertionError("unreachable")  # pragma: no cover

    async def _timed(self, name: str, func: Callable[[], Awaitable[Any]], timeout: float) -> Any:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(func(), timeout=timeout)
        finally:
            self.latencies_ms[name] = round((time.perf_counter() - started) * 1000, 2)

    def health_snapshot(self) -> Dict[str, Any]:
        services = {name: status.to_payload() for name, status in self.service_status.items()}
        degraded = any(not status.healthy for status in self.service_status.values())
        return {"status": "degraded" if degraded else "healthy", "services": services}


__all__ = ["CircuitBreakerState", "CircuitOpenError", "ResiliencePolicy", "ServiceStatus", "Telemetry"]
