import pytest

from rebalancing.models import Dimension, Holding, TargetEntry, TransactionType
from rebalancing.planner import apply_transactions, build_allocation_snapshot, diff


def _targets(dimension=Dimension.ASSET, **percentages):
    return [
        TargetEntry(dimension=dimension, id=key, name=key, target_percentage=value)
        for key, value in percentages.items()
    ]


def _holdings():
    return [
        Holding(asset="ETH", balance_usd=6000, protocol_id="aave", chain="ethereum"),
        Holding(asset="ETH", balance_usd=2000, protocol_id="lido", chain="ethereum"),
        Holding(asset="USDC", balance_usd=2000, chain="arbitrum"),
        Holding(asset="DUST", balance_usd=0),
    ]


def test_snapshot_groups_every_dimension():
    snapshot = build_allocation_snapshot(_holdings())

    assert snapshot.total_value == 10_000
    assert [(entry.id, entry.percentage) for entry in snapshot.assets] == [("ETH", 80.0), ("USDC", 20.0)]
    assert {entry.id for entry in snapshot.protocols} == {"aave", "lido", "wallet"}
    assert {entry.id for entry in snapshot.chains} == {"ethereum", "arbitrum"}
    for dimension in Dimension:
        assert sum(entry.percentage for entry in snapshot.for_dimension(dimension)) == pytest.approx(100.0)


def test_snapshot_of_empty_portfolio():
    snapshot = build_allocation_snapshot([Holding(asset="ETH", balance_usd=0)])

    assert snapshot.total_value == 0
    assert snapshot.assets == []


def test_diff_produces_single_swap_for_two_asset_rebalance():
    snapshot = build_allocation_snapshot(_holdings())

    plan = diff(snapshot.assets, _targets(ETH=50, USDC=50), snapshot.total_value)

    assert [(change.id, change.direction) for change in plan.changes] == [("ETH", "decrease"), ("USDC", "increase")]
    assert len(plan.transactions) == 1
    swap = plan.transactions[0]
    assert swap.type is TransactionType.SWAP
    assert (swap.from_asset, swap.to_asset) == ("ETH", "USDC")
    assert swap.from_amount_usd == pytest.approx(3000)
    assert plan.unfulfilled == []


def test_diff_of_balanced_portfolio_is_empty():
    snapshot = build_allocation_snapshot(_holdings())

    plan = diff(snapshot.assets, _targets(ETH=80, USDC=20), snapshot.total_value)

    assert plan.changes == []
    assert plan.empty


def test_applying_plan_reaches_target():
    snapshot = build_allocation_snapshot(_holdings())
    targets = _targets(ETH=40, USDC=35, WBTC=25)

    plan = diff(snapshot.assets, targets, snapshot.total_value)
    achieved = apply_transactions(snapshot.assets, plan.transactions, snapshot.total_value)

    assert {entry.id: round(entry.percentage, 6) for entry in achieved} == {"ETH": 40.0, "USDC": 35.0, "WBTC": 25.0}
    assert sum(t.from_amount_usd for t in plan.transactions) == pytest.approx(4000)


def test_greedy_matching_splits_large_decrease_across_increases():
    snapshot = build_allocation_snapshot(_holdings())

    plan = diff(snapshot.assets, _targets(ETH=20, USDC=30, WBTC=30, SOL=20), snapshot.total_value)

    assert [(t.from_asset, t.to_asset, round(t.from_amount_usd)) for t in plan.transactions] == [
        ("ETH", "WBTC", 3000),
        ("ETH", "SOL", 2000),
        ("ETH", "USDC", 1000),
    ]
    assert [t.index for t in plan.transactions] == [0, 1, 2]


def test_removed_entries_are_fully_sold():
    snapshot = build_allocation_snapshot(_holdings())

    plan = diff(snapshot.assets, _targets(USDC=100), snapshot.total_value)

    assert plan.changes[0].target_percentage == 0.0
    assert plan.transactions[0].from_amount_usd == pytest.approx(8000)


def test_max_transactions_moves_remainder_to_unfulfilled():
    snapshot = build_allocation_snapshot(_holdings())

    plan = diff(
        snapshot.assets,
        _targets(ETH=20, USDC=30, WBTC=30, SOL=20),
        snapshot.total_value,
        max_transactions=1,
    )

    assert len(plan.transactions) == 1
    assert {item["id"] for item in plan.unfulfilled} == {"SOL", "USDC"}


def test_increase_without_source_is_unfulfilled():
    plan = diff([], _targets(ETH=100), 1000)

    assert plan.transactions == []
    assert plan.unfulfilled == [{"id": "ETH", "amount_usd": pytest.approx(1000)}]


def test_protocol_dimension_transfers_carry_protocol_ids():
    snapshot = build_allocation_snapshot(_holdings())
    targets = _targets(Dimension.PROTOCOL, aave=40, lido=40, wallet=20)

    plan = diff(snapshot.protocols, targets, snapshot.total_value)
    achieved = apply_transactions(snapshot.protocols, plan.transactions, snapshot.total_value)

    assert [(t.from_protocol, t.to_protocol) for t in plan.transactions] == [("aave", "lido")]
    assert {entry.id: round(entry.percentage, 6) for entry in achieved} == {"aave": 40.0, "lido": 40.0, "wallet": 20.0}
    assert all(entry.dimension is Dimension.PROTOCOL for entry in achieved)


def test_zero_total_value_yields_empty_plan():
    assert diff([], _targets(ETH=100), 0).empty
