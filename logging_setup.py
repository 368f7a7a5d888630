"""Process-wide logging configuration with secret redaction."""

from __future__ import annotations

import logging
import re
import sys
from typing import Any, Callable, Optional, TextIO

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
REDACTED = "***REDACTED***"

_LEVELS = {0: logging.WARNING, 1: logging.INFO, 2: logging.DEBUG}

_SENSITIVE_KEYS = r"(?:api[_-]?key|x-api-key|apikey|secret|signature|token|password|passphrase|authorization)"
_KEY_VALUE_PATTERN = re.compile(
    rf"(?i)(['\"]?[\w.-]*{_SENSITIVE_KEYS}[\w.-]*['\"]?\s*[:=]\s*)(['\"]?)([^\s,;&'\"}}]+)(['\"]?)"
)
_BEARER_PATTERN = re.compile(r"(?i)(Bearer\s+)[A-Za-z0-9._\-]+")
_BOT_TOKEN_PATTERN = re.compile(r"(/bot)[0-9]+:[A-Za-z0-9_\-]+")

_handler: Optional[logging.Handler] = None
_base_factory: Optional[Callable[..., logging.LogRecord]] = None


def redact_text(message: str) -> str:
    """Mask secret-looking values in ``message``."""

    redacted = _BEARER_PATTERN.sub(lambda m: f"{m.group(1)}{REDACTED}", message)
    redacted = _KEY_VALUE_PATTERN.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}{m.group(4)}", redacted)
    return _BOT_TOKEN_PATTERN.sub(lambda m: f"{m.group(1)}{REDACTED}", redacted)


def _redact_record(record: logging.LogRecord) -> None:
    try:
        message = record.getMessage()
    except Exception:  # pragma: no cover - malformed format args are reported by logging itself
        return
    redacted = redact_text(message)
    if redacted != message:
        record.msg = redacted
        record.args = ()


class RedactingFilter(logging.Filter):
    """Filter that rewrites records so credentials never reach a handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        _redact_record(record)
        return True


def _install_record_factory() -> None:
    global _base_factory
    if _base_factory is not None:
        return
    _base_factory = logging.getLogRecordFactory()
    base = _base_factory

    def factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
        record = base(*args, **kwargs)
        _redact_record(record)
        return record

    logging.setLogRecordFactory(factory)


def level_for(debug: int) -> int:
    """Translate a 0/1/2 verbosity into a logging level; larger values mean DEBUG."""

    debug = int(debug)
    return _LEVELS.get(debug, logging.DEBUG if debug > 2 else logging.WARNING)


def configure_logging(debug: int = 1, stream_target: Optional[TextIO] = None) -> logging.Logger:
    """Install a single redacting stream handler on the root logger.

    ``debug`` maps 0/1/2 to WARNING/INFO/DEBUG. Records created anywhere in the
    process are redacted, including those routed to handlers attached later.
    """

    global _handler
    level = level_for(debug)
    root = logging.getLogger()
    if _handler is not None:
        root.removeHandler(_handler)
        _handler.close()
    handler = logging.StreamHandler(stream_target or sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RedactingFilter())
    root.addHandler(handler)
    root.setLevel(level)
    _handler = handler
    _install_record_factory()
    return root


__all__ = ["REDACTED", "RedactingFilter", "configure_logging", "level_for", "redact_text"]
