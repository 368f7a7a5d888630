"""Allowed status transitions of a rebalancing operation."""

from __future__ import annotations

import logging
from typing import Any, Dict, FrozenSet, Mapping, Optional

from .errors import InvalidTransition, OperationAlreadyExecuting
from .models import OperationStatus, RebalancingOperation, utcnow

logger = logging.getLogger(__name__)

S = OperationStatus

TRANSITIONS: Mapping[OperationStatus, FrozenSet[OperationStatus]] = {
    S.PENDING: frozenset({S.SIMULATING, S.WAITING_APPROVAL, S.EXECUTING, S.CANCELLED, S.FAILED}),
    S.SIMULATING: frozenset({S.SIMULATED, S.WAITING_APPROVAL, S.EXECUTING, S.FAILED, S.CANCELLED}),
    S.SIMULATED: frozenset({S.WAITING_APPROVAL, S.EXECUTING, S.CANCELLED}),
    S.WAITING_APPROVAL: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.EXECUTING}),
    S.EXECUTING: frozenset({S.COMPLETED, S.PARTIAL, S.FAILED}),
    S.PARTIAL: frozenset({S.EXECUTING}),
    S.FAILED: frozenset({S.EXECUTING}),
    S.COMPLETED: frozenset(),
    S.REJECTED: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.COMPLETED, S.REJECTED, S.CANCELLED})
SETTLED_STATUSES = frozenset({S.COMPLETED, S.PARTIAL, S.FAILED, S.REJECTED, S.CANCELLED})
CANCELLABLE_STATUSES = frozenset({S.PENDING, S.SIMULATING, S.SIMULATED, S.WAITING_APPROVAL})
RESUMABLE_ERROR_CODES = frozenset({"EXECUTION_FAILED", "EXECUTION_ERROR"})


def can_transition(operation: RebalancingOperation, target: OperationStatus) -> bool:
    current = operation.status
    if target not in TRANSITIONS.get(current, frozenset()):
        return False
    if current is S.FAILED and target is S.EXECUTING:
        # Only failures raised while executing can be resumed.
        return operation.error is None or operation.error.code in RESUMABLE_ERROR_CODES
    return True


def transition(
    operation: RebalancingOperation,
    target: OperationStatus,
    *,
    actor: str = "system",
    details: Optional[Mapping[str, Any]] = None,
) -> OperationStatus:
    """Move ``operation`` to ``target`` and return the previous status.

    Raises :class:`OperationAlreadyExecuting` when asked to execute an operation
    that already is, and :class:`InvalidTransition` for any other disallowed move.
    """

    current = operation.status
    if current is S.EXECUTING and target is S.EXECUTING:
        raise OperationAlreadyExecuting(operation.id)
    if not can_transition(operation, target):
        raise InvalidTransition(current.value, target.value)

    now = utcnow()
    entry: Dict[str, Any] = {"from": current.value, "to": target.value, "actor": actor, "timestamp": now.isoformat()}
    if details:
        entry["details"] = dict(details)
    operation.history.append(entry)
    operation.status = target
    operation.updated_at = now
    if target in SETTLED_STATUSES:
        operation.completed_at = now
    logger.info(
        "Operation %s moved %s -> %s",
        operation.id,
        current.value,
        target.value,
        extra={"operation_id": operation.id, "actor": actor},
    )
    return current


__all__ = [
    "CANCELLABLE_STATUSES",
    "RESUMABLE_ERROR_CODES",
    "SETTLED_STATUSES",
    "TERMINAL_STATUSES",
    "TRANSITIONS",
    "can_transition",
    "transition",
]
