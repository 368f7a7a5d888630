"""Allocation arithmetic: snapshots, diffs and transfer matching."""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from .models import (
    AllocationChange,
    AllocationEntry,
    AllocationSnapshot,
    Dimension,
    Holding,
    TargetEntry,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)

EPSILON_USD = 0.005


@dataclass
class RebalancePlan:
    total_value: float
    changes: List[AllocationChange] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)
    unfulfilled: List[Dict[str, float]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.transactions


def build_allocation_snapshot(holdings: Iterable[Holding]) -> AllocationSnapshot:
    """Group holdings by asset, protocol and chain with percentage shares."""

    holdings = [holding for holding in holdings if holding.balance_usd > 0]
    total = sum(holding.balance_usd for holding in holdings)
    grouped: Dict[Dimension, "OrderedDict[str, List]"] = {dimension: OrderedDict() for dimension in Dimension}
    for holding in holdings:
        keys = {
            Dimension.ASSET: (holding.asset, holding.asset),
            Dimension.PROTOCOL: (holding.protocol_id or "wallet", holding.protocol_name or holding.protocol_id or "wallet"),
            Dimension.CHAIN: (holding.chain or "unknown", holding.chain or "unknown"),
        }
        for dimension, (key, name) in keys.items():
            bucket = grouped[dimension].setdefault(key, [name, 0.0])
            bucket[1] += holding.balance_usd

    def _entries(dimension: Dimension) -> List[AllocationEntry]:
        if total <= 0:
            return []
        return [
            AllocationEntry(
                dimension=dimension,
                id=key,
                name=name,
                amount_usd=amount,
                percentage=amount / total * 100,
            )
            for key, (name, amount) in grouped[dimension].items()
        ]

    return AllocationSnapshot(
        total_value=total,
        assets=_entries(Dimension.ASSET),
        protocols=_entries(Dimension.PROTOCOL),
        chains=_entries(Dimension.CHAIN),
    )


def diff(
    current: Sequence[AllocationEntry],
    target: Sequence[TargetEntry],
    total_value: float,
    *,
    epsilon: float = EPSILON_USD,
    max_transactions: Optional[int] = None,
) -> RebalancePlan:
    """Compute the changes and transfers that move ``current`` onto ``target``.

    Increases are satisfied greedily from decreases, both taken largest
    first. Any increase left unmatched is reported in ``unfulfilled``.
    """

    plan = RebalancePlan(total_value=total_value)
    if total_value <= 0:
        return plan

    current_map = OrderedDict((entry.id, entry) for entry in current)
    target_map = OrderedDict((entry.id, entry) for entry in target)
    changes: List[AllocationChange] = []

    for entry_id, entry in current_map.items():
        wanted = target_map.get(entry_id)
        target_pct = wanted.target_percentage if wanted is not None else 0.0
        delta = entry.percentage - target_pct
        amount = delta / 100 * total_value
        if amount > epsilon:
            changes.append(
                AllocationChange(
                    dimension=entry.dimension,
                    id=entry.id,
                    name=entry.name,
                    direction="decrease",
                    current_percentage=entry.percentage,
                    target_percentage=target_pct,
                    change_percentage=delta,
                    change_amount_usd=amount,
                )
            )

    for entry_id, wanted in target_map.items():
        existing = current_map.get(entry_id)
        current_pct = existing.percentage if existing is not None else 0.0
        delta = wanted.target_percentage - current_pct
        amount = delta / 100 * total_value
        if amount > epsilon:
            changes.append(
                AllocationChange(
                    dimension=wanted.dimension,
                    id=wanted.id,
                    name=wanted.name,
                    direction="increase",
                    current_percentage=current_pct,
                    target_percentage=wanted.target_percentage,
                    change_percentage=delta,
                    change_amount_usd=amount,
                )
            )

    changes.sort(key=lambda change: change.change_amount_usd, reverse=True)
    plan.changes = changes
    plan.transactions, plan.unfulfilled = _match_transfers(changes, epsilon)

    if max_transactions is not None and len(plan.transactions) > max_transactions:
        dropped = plan.transactions[max_transactions:]
        plan.transactions = plan.transactions[:max_transactions]
        logger.warning(
            "Rebalance plan truncated",
            extra={"max_transactions": max_transactions, "dropped": len(dropped)},
        )
        for transaction in dropped:
            plan.unfulfilled.append({"id": transaction.to_asset, "amount_usd": transaction.to_amount_usd})
    return plan


def _match_transfers(changes: Sequence[AllocationChange], epsilon: float):
    decreases = [change for change in changes if change.direction == "decrease"]
    increases = [change for change in changes if change.direction == "increase"]
    transactions: List[Transaction] = []
    unfulfilled: List[Dict[str, float]] = []

    source_index = 0
    source_remaining = decreases[0].change_amount_usd if decreases else 0.0
    for increase in increases:
        remaining = increase.change_amount_usd
        while remaining > epsilon:
            while source_remaining <= epsilon and source_index + 1 < len(decreases):
                source_index += 1
                source_remaining = decreases[source_index].change_amount_usd
            if source_remaining <= epsilon or not decreases:
                break
            source = decreases[source_index]
            amount = min(remaining, source_remaining)
            transactions.append(_transfer(len(transactions), source, increase, amount))
            remaining -= amount
            source_remaining -= amount
        if remaining > epsilon:
            unfulfilled.append({"id": increase.id, "amount_usd": remaining})
    return transactions, unfulfilled


def _transfer(index: int, source: AllocationChange, sink: AllocationChange, amount: float) -> Transaction:
    transaction = Transaction(
        index=index,
        type=TransactionType.SWAP,
        from_asset=source.name,
        to_asset=sink.name,
        from_amount_usd=amount,
        to_amount_usd=amount,
    )
    if source.dimension is Dimension.PROTOCOL:
        transaction.from_protocol = source.id
        transaction.to_protocol = sink.id
    elif source.dimension is Dimension.CHAIN:
        transaction.from_chain = source.id
        transaction.to_chain = sink.id
    return transaction


def apply_transactions(
    current: Sequence[AllocationEntry],
    transactions: Iterable[Transaction],
    total_value: float,
    *,
    dimension: Optional[Dimension] = None,
) -> List[AllocationEntry]:
    """Project the allocation that results from applying ``transactions``.

    Transfers are matched to entries by name, falling back to the protocol or
    chain identifiers they carry.
    """

    amounts: "OrderedDict[str, List]" = OrderedDict(
        (entry.id, [entry.name, entry.amount_usd]) for entry in current
    )
    if dimension is None:
        dimension = current[0].dimension if current else Dimension.ASSET
    by_name = {entry.name: entry.id for entry in current}

    def _key(name: str, fallback: Optional[str]) -> str:
        if fallback:
            return fallback
        return by_name.get(name, name)

    for transaction in transactions:
        source_key = _key(transaction.from_asset, transaction.from_protocol or transaction.from_chain)
        sink_key = _key(transaction.to_asset, transaction.to_protocol or transaction.to_chain)
        amounts.setdefault(source_key, [transaction.from_asset, 0.0])[1] -= transaction.from_amount_usd
        amounts.setdefault(sink_key, [transaction.to_asset, 0.0])[1] += transaction.to_amount_usd

    if total_value <= 0:
        return []
    return [
        AllocationEntry(
            dimension=dimension,
            id=key,
            name=name,
            amount_usd=amount,
            percentage=amount / total_value * 100,
        )
        for key, (name, amount) in amounts.items()
        if amount > EPSILON_USD
    ]
