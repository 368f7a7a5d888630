import pytest

from rebalancing.errors import InvalidTransition, OperationAlreadyExecuting
from rebalancing.models import OperationError, OperationStatus, RebalancingOperation
from rebalancing.state_machine import CANCELLABLE_STATUSES, TRANSITIONS, can_transition, transition

S = OperationStatus


def _operation(status=S.PENDING, error=None) -> RebalancingOperation:
    return RebalancingOperation(
        id="op-1",
        user="alice",
        strategy_id="s1",
        current_allocation=[],
        target_allocation=[],
        status=status,
        error=error,
    )


def test_happy_path_records_history():
    operation = _operation()

    for target in (S.SIMULATING, S.SIMULATED, S.WAITING_APPROVAL, S.APPROVED, S.EXECUTING, S.COMPLETED):
        transition(operation, target, actor="alice")

    assert operation.status is S.COMPLETED
    assert [entry["to"] for entry in operation.history][-1] == "completed"
    assert operation.history[0] == {
        "from": "pending",
        "to": "simulating",
        "actor": "alice",
        "timestamp": operation.history[0]["timestamp"],
    }
    assert operation.completed_at is not None


def test_transition_returns_previous_status_and_keeps_details():
    operation = _operation()

    previous = transition(operation, S.CANCELLED, details={"reason": "changed mind"})

    assert previous is S.PENDING
    assert operation.history[-1]["details"] == {"reason": "changed mind"}


@pytest.mark.parametrize("terminal", [S.COMPLETED, S.REJECTED, S.CANCELLED])
def test_terminal_statuses_have_no_exit(terminal):
    operation = _operation(terminal)

    for target in OperationStatus:
        assert not can_transition(operation, target)
    assert TRANSITIONS[terminal] == frozenset()


def test_waiting_approval_cannot_skip_to_executing():
    with pytest.raises(InvalidTransition):
        transition(_operation(S.WAITING_APPROVAL), S.EXECUTING)


def test_double_execute_is_reported_distinctly():
    operation = _operation(S.EXECUTING)

    with pytest.raises(OperationAlreadyExecuting):
        transition(operation, S.EXECUTING)
    assert operation.history == []


def test_only_execution_failures_can_resume():
    resumable = _operation(S.FAILED, OperationError(code="EXECUTION_FAILED", message="x"))
    blocked = _operation(S.FAILED, OperationError(code="SIMULATION_FAILED", message="x"))

    assert can_transition(resumable, S.EXECUTING)
    assert not can_transition(blocked, S.EXECUTING)
    assert can_transition(_operation(S.PARTIAL), S.EXECUTING)


def test_cancellable_statuses_allow_cancel():
    for status in CANCELLABLE_STATUSES:
        assert can_transition(_operation(status), S.CANCELLED)
    assert not can_transition(_operation(S.EXECUTING), S.CANCELLED)
