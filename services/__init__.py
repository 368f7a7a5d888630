"""Outbound capabilities shared by the risk engine and the rebalancing core."""

from .telemetry import CircuitBreakerState, CircuitOpenError, ResiliencePolicy, Telemetry

__all__ = ["CircuitBreakerState", "CircuitOpenError", "ResiliencePolicy", "Telemetry"]
