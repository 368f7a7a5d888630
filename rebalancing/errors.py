"""Exception hierarchy surfaced by the rebalancing service."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from services.protocols.base import AdapterUnavailable


class RebalancingError(Exception):
    """Base class for rebalancing failures reported to callers."""

    code = "REBALANCING_ERROR"

    def __init__(self, message: str, *, details: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_payload(self) -> dict:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(RebalancingError):
    code = "VALIDATION_ERROR"


class NotFoundError(ValidationError):
    code = "NOT_FOUND"


class UnauthorizedError(ValidationError):
    code = "UNAUTHORIZED"


class InvalidTransition(ValidationError):
    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, *, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"cannot move operation from {current} to {target}",
            details={"current": current, "target": target},
        )
        self.current = current
        self.target = target


class OperationConflict(InvalidTransition):
    """The stored operation moved on since this copy was loaded."""

    code = "OPERATION_CONFLICT"

    def __init__(self, operation_id: str, current: str, target: str, *, message: Optional[str] = None) -> None:
        super().__init__(
            current,
            target,
            message=message or f"operation {operation_id} is now {current} and cannot move to {target}",
        )
        self.operation_id = operation_id


class OperationAlreadyExecuting(OperationConflict):
    code = "ALREADY_EXECUTING"

    def __init__(self, operation_id: str) -> None:
        super().__init__(operation_id, "executing", "executing", message=f"operation {operation_id} is already executing")


__all__ = [
    "AdapterUnavailable",
    "InvalidTransition",
    "NotFoundError",
    "OperationAlreadyExecuting",
    "OperationConflict",
    "RebalancingError",
    "UnauthorizedError",
    "ValidationError",
]
