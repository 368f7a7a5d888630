"""Hash-chained, append-only ledger of rebalancing activity.

Every record stores the hash of its predecessor, so editing or dropping a line
breaks :func:`verify_chain`. The local JSONL file is authoritative. Additional
sinks (S3) receive a copy of each record and may fail without affecting it.
"""

from __future__ import annotations

import abc
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Any, Dict, FrozenSet, Iterator, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64
REDACTED = "<redacted>"

DEFAULT_REDACT_FIELDS: tuple[str, ...] = (
    "password",
    "secret",
    "token",
    "api_key",
    "apikey",
    "private_key",
    "signature",
)

TRANSACTION_ACTION = "rebalance.transaction"
STATUS_ACTION = "rebalance.status"


@dataclass(frozen=True)
class AuditS3Settings:
    """Where to mirror ledger records in S3."""

    bucket: str
    prefix: str = ""
    region_name: Optional[str] = None
    profile_name: Optional[str] = None

    def object_key(self, record_hash: str, written_at: datetime) -> str:
        name = f"{written_at.strftime('%Y%m%dT%H%M%S.%fZ')}-{record_hash[:12]}.json"
        prefix = self.prefix.rstrip("/")
        return f"{prefix}/{name}" if prefix else name


class AuditSink(abc.ABC):
    """Secondary destination for ledger records."""

    @abc.abstractmethod
    def publish(self, record: Mapping[str, Any], line: str) -> None:
        """Receive a sealed record and its serialised JSONL line."""


class S3AuditSink(AuditSink):
    """Store each ledger record as its own S3 object."""

    def __init__(self, settings: AuditS3Settings, *, client: Any = None) -> None:
        self._settings = settings
        self._client = client if client is not None else _s3_client(settings)

    def publish(self, record: Mapping[str, Any], line: str) -> None:
        key = self._settings.object_key(str(record.get("hash", "")), datetime.now(timezone.utc))
        self._client.put_object(
            Bucket=self._settings.bucket,
            Key=key,
            Body=line.encode("utf-8"),
            ContentType="application/json",
        )


def _s3_client(settings: AuditS3Settings) -> Any:
    try:
        import boto3  # type: ignore[import]
    except ModuleNotFoundError as exc:  # pragma: no cover - optional dependency
        raise RuntimeError("S3 ledger mirroring requires the 'boto3' package to be installed.") from exc
    session = boto3.session.Session(profile_name=settings.profile_name) if settings.profile_name else boto3.session.Session()
    if settings.region_name:
        return session.client("s3", region_name=settings.region_name)
    return session.client("s3")


class AuditLedger:
    """Append records whose hash covers the previous record's hash."""

    def __init__(
        self,
        path: Path,
        *,
        redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS,
        extra_sinks: Sequence[AuditSink] = (),
    ) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._mirrors: List[AuditSink] = list(extra_sinks)
        self._sensitive = frozenset(_normalise_key(name) for name in redact_fields)
        self._guard = threading.Lock()
        self._head = _tail_hash(self._path)

    @property
    def path(self) -> Path:
        return self._path

    @property
    def last_hash(self) -> str:
        return self._head

    def append(self, action: str, actor: str, details: Optional[Mapping[str, Any]] = None) -> str:
        """Write one record and return its hash."""

        with self._guard:
            record: Dict[str, Any] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "action": action,
                "actor": actor,
                "details": redact(dict(details or {}), self._sensitive),
                "prev_hash": self._head,
            }
            record["hash"] = _record_hash(record)
            line = json.dumps(record, sort_keys=True) + "\n"
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line)
            self._head = record["hash"]
            for mirror in self._mirrors:
                try:
                    mirror.publish(record, line)
                except Exception as exc:
                    logger.warning("Ledger mirror %s rejected record: %s", type(mirror).__name__, exc)
        return record["hash"]

    def record_transaction(self, operation_id: str, actor: str, transaction: Mapping[str, Any]) -> str:
        return self.append(TRANSACTION_ACTION, actor, {"operation_id": operation_id, "transaction": dict(transaction)})

    def record_status(self, operation_id: str, actor: str, previous: Optional[str], current: str, **details: Any) -> str:
        return self.append(STATUS_ACTION, actor, {"operation_id": operation_id, "from": previous, "to": current, **details})


def redact(value: Any, sensitive: FrozenSet[str]) -> Any:
    """Replace values whose key contains any of ``sensitive`` (normalised)."""

    if isinstance(value, Mapping):
        return {
            key: REDACTED if any(name in _normalise_key(str(key)) for name in sensitive) else redact(item, sensitive)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set)):
        return [redact(item, sensitive) for item in value]
    return value


def _normalise_key(key: str) -> str:
    return key.replace(" ", "").replace("-", "_").lower()


def _record_hash(record: Mapping[str, Any]) -> str:
    body = {key: value for key, value in record.items() if key != "hash"}
    canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
    return sha256(canonical.encode("utf-8")).hexdigest()


def _tail_hash(path: Path) -> str:
    if not path.exists():
        return GENESIS_HASH
    lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    if not lines:
        return GENESIS_HASH
    try:
        return str(json.loads(lines[-1]).get("hash") or GENESIS_HASH)
    except json.JSONDecodeError:
        logger.error("Ledger %s ends with an unreadable record", path)
        return GENESIS_HASH


def iter_ledger(path: Path) -> Iterator[Dict[str, Any]]:
    path = Path(path)
    if not path.exists():
        return
    for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            yield json.loads(line)
        except json.JSONDecodeError:
            logger.warning("Skipping unreadable ledger line %d in %s", number, path)


def read_ledger(path: Path, *, action: Optional[str] = None, operation_id: Optional[str] = None) -> List[Dict[str, Any]]:
    return [
        entry
        for entry in iter_ledger(path)
        if (not action or entry.get("action") == action)
        and (not operation_id or (entry.get("details") or {}).get("operation_id") == operation_id)
    ]


def verify_chain(path: Path) -> bool:
    """Return ``True`` when every record links to its predecessor and hashes correctly."""

    expected_prev = GENESIS_HASH
    for entry in iter_ledger(path):
        if entry.get("prev_hash") != expected_prev or entry.get("hash") != _record_hash(entry):
            return False
        expected_prev = entry["hash"]
    return True


def build_ledger(
    path: Optional[Path],
    *,
    enabled: bool = True,
    redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS,
    s3: Optional[AuditS3Settings] = None,
) -> Optional[AuditLedger]:
    if path is None or not enabled:
        return None
    mirrors: List[AuditSink] = []
    if s3 is not None:
        try:
            mirrors.append(S3AuditSink(s3))
        except Exception as exc:
            logger.warning("S3 ledger mirror disabled: %s", exc)
    return AuditLedger(Path(path), redact_fields=redact_fields, extra_sinks=mirrors)
