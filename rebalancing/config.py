"""Configuration schema for the rebalancing engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from risk_engine.cache import DEFAULT_TTL_SECONDS
from risk_engine.ml import MLSettings

from .audit import AuditS3Settings, DEFAULT_REDACT_FIELDS


@dataclass
class RetryPolicy:
    """Per-transaction retry settings used by the execution orchestrator."""

    max_attempts: int = 3
    backoff_seconds: float = 2.0
    max_backoff_seconds: float = 30.0
    timeout_seconds: float = 120.0

    def delay_for(self, attempt: int) -> float:
        return min(self.backoff_seconds * attempt, self.max_backoff_seconds)


@dataclass
class SimulationDefaults:
    """Fallback estimates used when no adapter answers a gas estimate."""

    gas_limits: Dict[str, int] = field(
        default_factory=lambda: {"swap": 200_000, "deposit": 150_000, "withdrawal": 150_000}
    )
    default_gas_limit: int = 100_000
    gas_price_gwei: float = 50.0
    native_price_usd: float = 3000.0
    native_asset: str = "ETH"
    durations_s: Dict[str, float] = field(
        default_factory=lambda: {"swap": 30.0, "deposit": 45.0, "withdrawal": 60.0}
    )
    default_duration_s: float = 20.0
    cross_chain_penalty_s: float = 300.0


@dataclass
class ScoringConfig:
    cache_ttl_seconds: float = DEFAULT_TTL_SECONDS
    ml: MLSettings = field(default_factory=MLSettings)


@dataclass
class ExecutionConfig:
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    parallel_chains: bool = False


@dataclass
class EmailSettings:
    """SMTP configuration used to dispatch rebalancing emails."""

    host: str
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    use_tls: bool = True
    sender: Optional[str] = None
    recipients: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class NotificationConfig:
    channels: List[str] = field(default_factory=lambda: ["log"])
    telegram_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None
    email: Optional[EmailSettings] = None


@dataclass
class AuditConfig:
    log_path: Optional[Path] = None
    enabled: bool = True
    redact_fields: tuple = DEFAULT_REDACT_FIELDS
    s3: Optional[AuditS3Settings] = None


@dataclass
class EngineConfig:
    """Unified configuration for scoring, simulation, execution and side effects."""

    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    simulation: SimulationDefaults = field(default_factory=SimulationDefaults)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    state_dir: Optional[Path] = None
    debug: int = 1
    config_path: Optional[Path] = None


@dataclass
class Settings:
    """Single entry point for engine configuration with environment overrides."""

    engine: EngineConfig

    @classmethod
    def from_environment(
        cls, *, engine: Optional[EngineConfig] = None, env: Optional[Mapping[str, str]] = None
    ) -> "Settings":
        env = env if env is not None else os.environ
        base = engine or EngineConfig()

        ml = base.scoring.ml
        ml_enabled = _env_bool(env.get("RISK_ML_ENABLED"))
        if ml_enabled is not None:
            ml.enabled = ml_enabled
        if env.get("RISK_ML_ENDPOINT"):
            ml.endpoint = env["RISK_ML_ENDPOINT"]
        if env.get("RISK_ML_API_KEY"):
            ml.api_key = env["RISK_ML_API_KEY"]
        if env.get("RISK_ML_MODEL_VERSION"):
            ml.model_version = env["RISK_ML_MODEL_VERSION"]
        min_confidence = _env_float(env.get("RISK_ML_MIN_CONFIDENCE"))
        if min_confidence is not None:
            ml.min_confidence = min_confidence

        retry = base.execution.retry
        timeout = _env_float(env.get("REBALANCER_EXECUTION_TIMEOUT"))
        if timeout is not None and timeout > 0:
            retry.timeout_seconds = timeout
        attempts = _env_int(env.get("REBALANCER_MAX_ATTEMPTS"))
        if attempts is not None and attempts > 0:
            retry.max_attempts = attempts
        backoff = _env_float(env.get("REBALANCER_BACKOFF_SECONDS"))
        if backoff is not None:
            retry.backoff_seconds = backoff
        parallel = _env_bool(env.get("REBALANCER_PARALLEL_CHAINS"))
        if parallel is not None:
            base.execution.parallel_chains = parallel

        cache_ttl = _env_float(env.get("REBALANCER_SCORE_CACHE_TTL"))
        if cache_ttl is not None and cache_ttl > 0:
            base.scoring.cache_ttl_seconds = cache_ttl

        state_dir = env.get("REBALANCER_STATE_DIR")
        if state_dir:
            base.state_dir = Path(state_dir)

        notifications = base.notifications
        telegram_token = env.get("REBALANCER_TELEGRAM_TOKEN")
        telegram_chat_id = env.get("REBALANCER_TELEGRAM_CHAT_ID")
        if telegram_token:
            notifications.telegram_token = telegram_token
        if telegram_chat_id:
            notifications.telegram_chat_id = telegram_chat_id
        if notifications.telegram_token and notifications.telegram_chat_id and "telegram" not in notifications.channels:
            notifications.channels.append("telegram")

        return cls(engine=base)


def _env_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _env_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


__all__ = [
    "AuditConfig",
    "EmailSettings",
    "EngineConfig",
    "ExecutionConfig",
    "MLSettings",
    "NotificationConfig",
    "RetryPolicy",
    "ScoringConfig",
    "Settings",
    "SimulationDefaults",
]
