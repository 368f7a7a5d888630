from datetime import datetime, timedelta, timezone

import pytest

from rebalancing.errors import ValidationError
from rebalancing.models import (
    NotificationPreferences,
    OperationStatus,
    RebalancingOperation,
    RebalancingStrategy,
    Schedule,
    TargetEntry,
    Transaction,
    TransactionType,
    add_months,
    parse_datetime,
    validate_target_allocation,
)


def _strategy(**overrides) -> RebalancingStrategy:
    payload = {
        "id": "s1",
        "user": "alice",
        "name": "Core",
        "dimension": "protocol",
        "target_allocation": [
            {"id": "aave", "target_percentage": 50, "min_percentage": 40},
            {"id": "lido", "target_percentage": 50},
        ],
        "trigger": "periodic",
        "schedule": "quarterly",
        "execution": {"max_slippage_pct": 1.0, "max_gas_price_gwei": 80},
        "notifications": {"events": {"started": False}},
        "last_rebalance": {"timestamp": "2024-01-01T00:00:00Z", "status": "completed"},
    }
    payload.update(overrides)
    return RebalancingStrategy.from_payload(payload)


def test_strategy_payload_round_trip():
    strategy = _strategy()

    restored = RebalancingStrategy.from_payload(strategy.to_payload())

    assert restored == strategy
    assert restored.target_allocation[0].dimension.value == "protocol"
    assert restored.last_rebalance.timestamp == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert restored.execution.max_gas_price_gwei == 80.0


def test_operation_payload_round_trip_keeps_transactions():
    operation = RebalancingOperation(
        id="op1",
        user="alice",
        strategy_id="s1",
        current_allocation=[],
        target_allocation=[TargetEntry(dimension="asset", id="ETH", name="ETH", target_percentage=100)],
        status=OperationStatus.PARTIAL,
        transactions=[
            Transaction(index=0, type=TransactionType.SWAP, from_asset="USDC", to_asset="ETH", from_amount_usd=10, to_amount_usd=10)
        ],
    )

    restored = RebalancingOperation.from_payload(operation.to_payload())

    assert restored.status is OperationStatus.PARTIAL
    assert restored.transactions[0].type is TransactionType.SWAP
    assert restored.transaction_counts()["pending"] == 1


@pytest.mark.parametrize(
    "entries, message",
    [
        ([], "must not be empty"),
        ([TargetEntry("asset", "ETH", "ETH", 60), TargetEntry("asset", "ETH", "ETH", 40)], "duplicate"),
        ([TargetEntry("asset", "ETH", "ETH", 120)], "within 0-100"),
        ([TargetEntry("asset", "ETH", "ETH", 100, min_percentage=101)], "minimum"),
        ([TargetEntry("asset", "ETH", "ETH", 100, max_percentage=90)], "maximum"),
        ([TargetEntry("asset", "ETH", "ETH", 99)], "sum to 100"),
    ],
)
def test_target_allocation_validation(entries, message):
    with pytest.raises(ValidationError, match=message):
        validate_target_allocation(entries)


def test_targets_within_rounding_tolerance_are_accepted():
    validate_target_allocation([TargetEntry("asset", "ETH", "ETH", 33.4), TargetEntry("asset", "BTC", "BTC", 66.3)])


@pytest.mark.parametrize(
    "overrides",
    [
        {"tolerance": 60},
        {"min_hours_between_rebalances": 0.5},
        {"execution": {"max_slippage_pct": 20}},
        {"execution": {"max_transactions": 0}},
        {"target_allocation": [{"id": "ETH", "dimension": "asset", "target_percentage": 100}]},
    ],
)
def test_strategy_validation_rejects_out_of_range_settings(overrides):
    with pytest.raises(ValidationError):
        _strategy(**overrides).validate()


def test_schedules_advance_from_now():
    now = datetime(2024, 1, 31, 12, tzinfo=timezone.utc)
    strategy = _strategy()

    assert strategy.advance_schedule(now) == datetime(2024, 4, 30, 12, tzinfo=timezone.utc)
    strategy.schedule = Schedule.DAILY
    assert strategy.schedule_after(now) == now + timedelta(days=1)
    strategy.schedule = Schedule.CUSTOM
    assert strategy.schedule_after(now) == now + timedelta(days=14)


def test_add_months_clamps_day_and_rolls_year():
    assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)
    assert add_months(datetime(2023, 11, 15), 3) == datetime(2024, 2, 15)


def test_parse_datetime_accepts_common_forms():
    assert parse_datetime(None) is None
    assert parse_datetime("2024-01-01T00:00:00Z") == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert parse_datetime(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert parse_datetime(datetime(2024, 1, 1)).tzinfo is timezone.utc


def test_notification_preferences_map_events():
    prefs = NotificationPreferences.from_payload({"events": {"approval": False, "completed": False}})

    assert not prefs.wants("waiting_approval")
    assert not prefs.wants("rejected")
    assert not prefs.wants("partial")
    assert prefs.wants("failed")
    assert prefs.wants("simulated")
    assert not NotificationPreferences(enabled=False).wants("failed")
