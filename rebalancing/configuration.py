"""Load and validate the rebalancing engine's JSON configuration file.

Each top-level section is optional and parsed by its own ``_parse_*`` helper.
Relative paths resolve against the directory that holds the file.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import logging_setup
from risk_engine.ml import MLSettings

from .audit import DEFAULT_REDACT_FIELDS, AuditS3Settings
from .config import (
    AuditConfig,
    EmailSettings,
    EngineConfig,
    ExecutionConfig,
    NotificationConfig,
    RetryPolicy,
    ScoringConfig,
    SimulationDefaults,
)

logger = logging.getLogger(__name__)

_TRUE_WORDS = frozenset({"1", "true", "yes", "on", "enabled", "enable"})
_FALSE_WORDS = frozenset({"0", "false", "no", "off", "disabled", "disable"})
_DEFAULT_WORDS = frozenset({"", "default", "auto"})


def _apply_logging(debug: int) -> None:
    """Install the redacting handler on first use and make sure the level is reachable."""

    root = logging.getLogger()
    if not root.handlers:
        logging_setup.configure_logging(debug=debug)
    level = logging_setup.level_for(debug)
    for target in (root, logging.getLogger("rebalancing")):
        if target.level == logging.NOTSET or target.level > level:
            target.setLevel(level)


def _read_json(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        raise FileNotFoundError(f"Configuration file not found: {path}")
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in configuration file {path}: {exc}") from exc


def _section(payload: Any, name: str) -> Mapping[str, Any]:
    """Return a (possibly empty) mapping for section ``name``; other types raise ``TypeError``."""

    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise TypeError(f"'{name}' must be a JSON object, not {type(payload).__name__}.")
    return payload


def _resolve(base: Path, candidate: Any) -> Path:
    path = Path(str(candidate)).expanduser()
    return path if path.is_absolute() else (base / path).resolve()


def _coerce_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _DEFAULT_WORDS:
            return default
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    return bool(value)


def _coerce_float(value: Any, default: float, *, name: str) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{name}' must be a number.") from exc


def _coerce_int(value: Any, default: int, *, name: str) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"'{name}' must be an integer.") from exc


def _optional_str(value: Any) -> Optional[str]:
    if value in (None, ""):
        return None
    return str(value).strip() or None


def _parse_scoring(settings: Any) -> ScoringConfig:
    data = _section(settings, "scoring")
    ml_raw = _section(data.get("ml"), "scoring.ml")
    min_confidence = ml_raw.get("min_confidence")
    ml = MLSettings(
        enabled=_coerce_bool(ml_raw.get("enabled"), False),
        endpoint=_optional_str(ml_raw.get("endpoint")),
        api_key=_optional_str(ml_raw.get("api_key")),
        model_version=_optional_str(ml_raw.get("model_version")),
        min_confidence=float(min_confidence) if min_confidence is not None else None,
        timeout_seconds=_coerce_float(ml_raw.get("timeout_seconds"), 5.0, name="scoring.ml.timeout_seconds"),
        max_retries=_coerce_int(ml_raw.get("max_retries"), 1, name="scoring.ml.max_retries"),
    )
    if ml.enabled and not ml.endpoint:
        raise ValueError("'scoring.ml.endpoint' is required when ML enhancement is enabled.")
    ttl = _coerce_float(data.get("cache_ttl_seconds"), ScoringConfig().cache_ttl_seconds, name="scoring.cache_ttl_seconds")
    if ttl <= 0:
        raise ValueError("'scoring.cache_ttl_seconds' must be positive.")
    return ScoringConfig(cache_ttl_seconds=ttl, ml=ml)


def _parse_simulation(settings: Any) -> SimulationDefaults:
    data = _section(settings, "simulation")
    defaults = SimulationDefaults()
    gas_limits = dict(defaults.gas_limits)
    gas_limits.update({str(key): int(value) for key, value in _section(data.get("gas_limits"), "simulation.gas_limits").items()})
    durations = dict(defaults.durations_s)
    durations.update({str(key): float(value) for key, value in _section(data.get("durations_s"), "simulation.durations_s").items()})
    return SimulationDefaults(
        gas_limits=gas_limits,
        default_gas_limit=_coerce_int(data.get("default_gas_limit"), defaults.default_gas_limit, name="simulation.default_gas_limit"),
        gas_price_gwei=_coerce_float(data.get("gas_price_gwei"), defaults.gas_price_gwei, name="simulation.gas_price_gwei"),
        native_price_usd=_coerce_float(data.get("native_price_usd"), defaults.native_price_usd, name="simulation.native_price_usd"),
        native_asset=str(data.get("native_asset") or defaults.native_asset),
        durations_s=durations,
        default_duration_s=_coerce_float(data.get("default_duration_s"), defaults.default_duration_s, name="simulation.default_duration_s"),
        cross_chain_penalty_s=_coerce_float(data.get("cross_chain_penalty_s"), defaults.cross_chain_penalty_s, name="simulation.cross_chain_penalty_s"),
    )


def _parse_execution(settings: Any) -> ExecutionConfig:
    data = _section(settings, "execution")
    defaults = RetryPolicy()
    retry = RetryPolicy(
        max_attempts=_coerce_int(data.get("max_attempts"), defaults.max_attempts, name="execution.max_attempts"),
        backoff_seconds=_coerce_float(data.get("backoff_seconds"), defaults.backoff_seconds, name="execution.backoff_seconds"),
        max_backoff_seconds=_coerce_float(data.get("max_backoff_seconds"), defaults.max_backoff_seconds, name="execution.max_backoff_seconds"),
        timeout_seconds=_coerce_float(data.get("timeout_seconds"), defaults.timeout_seconds, name="execution.timeout_seconds"),
    )
    if retry.max_attempts < 1:
        raise ValueError("'execution.max_attempts' must be at least 1.")
    if retry.timeout_seconds <= 0:
        raise ValueError("'execution.timeout_seconds' must be positive.")
    return ExecutionConfig(retry=retry, parallel_chains=_coerce_bool(data.get("parallel_chains"), False))


def _parse_email_settings(settings: Any) -> Optional[EmailSettings]:
    """SMTP settings, or ``None`` when the section is absent."""

    if settings is None:
        return None
    data = _section(settings, "notifications.email")
    host = _optional_str(data.get("host"))
    if host is None:
        raise ValueError("'notifications.email.host' must be a non-empty string.")

    recipients: Dict[str, List[str]] = {}
    for user, addresses in _section(data.get("recipients"), "notifications.email.recipients").items():
        if isinstance(addresses, str):
            addresses = [addresses]
        recipients[str(user)] = [cleaned for cleaned in (str(item).strip() for item in addresses or ()) if cleaned]

    return EmailSettings(
        host=host,
        port=_coerce_int(data.get("port"), 587, name="notifications.email.port"),
        username=_optional_str(data.get("username")),
        password=_optional_str(data.get("password")),
        use_tls=_coerce_bool(data.get("use_tls"), True),
        sender=_optional_str(data.get("sender")),
        recipients=recipients,
    )


def _parse_notifications(settings: Any) -> NotificationConfig:
    data = _section(settings, "notifications")
    channels_raw = data.get("channels", ["log"])
    if isinstance(channels_raw, str):
        channels_raw = [channels_raw]
    channels = [str(channel).strip().lower() for channel in channels_raw if str(channel).strip()]
    telegram = _section(data.get("telegram"), "notifications.telegram")
    return NotificationConfig(
        channels=channels,
        telegram_token=_optional_str(telegram.get("token")),
        telegram_chat_id=_optional_str(telegram.get("chat_id")),
        email=_parse_email_settings(data.get("email")),
    )


def _parse_audit(settings: Any, *, base_dir: Path) -> AuditConfig:
    data = _section(settings, "audit")
    log_path = data.get("log_path")
    s3_raw = data.get("s3")
    s3 = None
    if s3_raw is not None:
        s3_data = _section(s3_raw, "audit.s3")
        bucket = _optional_str(s3_data.get("bucket"))
        if not bucket:
            raise ValueError("'audit.s3.bucket' is required when S3 mirroring is configured.")
        s3 = AuditS3Settings(
            bucket=bucket,
            prefix=str(s3_data.get("prefix") or ""),
            region_name=_optional_str(s3_data.get("region_name")),
            profile_name=_optional_str(s3_data.get("profile_name")),
        )
    redact = data.get("redact_fields")
    return AuditConfig(
        log_path=_resolve(base_dir, log_path) if log_path else None,
        enabled=_coerce_bool(data.get("enabled"), True),
        redact_fields=tuple(str(item) for item in redact) if redact else DEFAULT_REDACT_FIELDS,
        s3=s3,
    )


def validate_engine_config(payload: Mapping[str, Any], *, source_path: Optional[Path] = None) -> EngineConfig:
    """Build an :class:`EngineConfig` from a parsed JSON payload."""

    data = _section(payload, "configuration")
    base_dir = source_path.parent if source_path is not None else Path.cwd()
    state_dir = data.get("state_dir")
    debug = _coerce_int(data.get("debug"), 1, name="debug")
    config = EngineConfig(
        scoring=_parse_scoring(data.get("scoring")),
        simulation=_parse_simulation(data.get("simulation")),
        execution=_parse_execution(data.get("execution")),
        notifications=_parse_notifications(data.get("notifications")),
        audit=_parse_audit(data.get("audit"), base_dir=base_dir),
        state_dir=_resolve(base_dir, state_dir) if state_dir else None,
        debug=debug,
        config_path=source_path,
    )
    _apply_logging(debug)
    return config


def load_engine_config(path: Path | str) -> EngineConfig:
    """Load and validate an engine configuration file from disk."""

    resolved = Path(path).expanduser().resolve()
    payload = _read_json(resolved)
    config = validate_engine_config(payload, source_path=resolved)
    logger.debug("Loaded engine configuration from %s", resolved)
    return config


__all__ = ["load_engine_config", "validate_engine_config"]
