from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class Notification:
    """A user-facing message produced by a rebalancing or risk event."""

    title: str
    message: str
    importance: str = "medium"
    event: Optional[str] = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "importance": self.importance,
            "event": self.event,
            "metadata": dict(self.metadata),
        }


@dataclass
class NotificationError:
    channel: str
    reason: str
    retryable: bool
    details: Optional[Mapping[str, Any]] = None


@dataclass
class NotificationResult:
    channel: str
    success: bool
    attempts: int
    error: Optional[NotificationError] = None
    payload: Optional[Mapping[str, Any]] = None
