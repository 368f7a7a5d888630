import asyncio

import pytest

from rebalancing.audit import TRANSACTION_ACTION, read_ledger, verify_chain
from rebalancing.errors import NotFoundError
from rebalancing.models import (
    Dimension,
    Holding,
    LedgerEntry,
    OperationStatus,
    RebalancingOperation,
    RebalancingStrategy,
    TargetEntry,
    Transaction,
    TransactionType,
    TriggerType,
)
from rebalancing.repository import FileRepository, InMemoryRepository


def _strategy(strategy_id="s1", user="alice", trigger=TriggerType.MANUAL) -> RebalancingStrategy:
    return RebalancingStrategy(
        id=strategy_id,
        user=user,
        name="Core",
        dimension=Dimension.ASSET,
        target_allocation=[TargetEntry(dimension=Dimension.ASSET, id="ETH", name="ETH", target_percentage=100)],
        trigger=trigger,
    )


def _operation(operation_id="op-1", user="alice", status=OperationStatus.PENDING) -> RebalancingOperation:
    return RebalancingOperation(
        id=operation_id,
        user=user,
        strategy_id="s1",
        current_allocation=[],
        target_allocation=[],
        status=status,
        transactions=[
            Transaction(
                index=0,
                type=TransactionType.SWAP,
                from_asset="USDC",
                to_asset="ETH",
                from_amount_usd=100,
                to_amount_usd=100,
            )
        ],
    )


@pytest.fixture(params=["memory", "file"])
def repository(request, tmp_path):
    if request.param == "memory":
        return InMemoryRepository()
    return FileRepository(tmp_path / "state")


def test_strategies_round_trip(repository):
    async def run():
        await repository.save_strategy(_strategy())
        await repository.save_strategy(_strategy("s2", "bob", TriggerType.THRESHOLD))
        loaded = await repository.load_strategy("s1")
        thresholds = await repository.list_strategies(trigger=TriggerType.THRESHOLD)
        mine = await repository.list_strategies(user="alice")
        return loaded, thresholds, mine

    loaded, thresholds, mine = asyncio.run(run())

    assert loaded.target_allocation[0].id == "ETH"
    assert [strategy.id for strategy in thresholds] == ["s2"]
    assert [strategy.id for strategy in mine] == ["s1"]


def test_missing_entities_raise_not_found(repository):
    with pytest.raises(NotFoundError):
        asyncio.run(repository.load_strategy("nope"))
    with pytest.raises(NotFoundError):
        asyncio.run(repository.load_operation("nope"))


def test_operations_filtering(repository):
    async def run():
        await repository.save_operation(_operation("op-1"))
        await repository.save_operation(_operation("op-2", status=OperationStatus.COMPLETED))
        await repository.save_operation(_operation("op-3", user="bob"))
        return (
            await repository.list_operations("alice"),
            await repository.list_operations("alice", status=OperationStatus.COMPLETED),
            await repository.list_operations("alice", limit=1),
        )

    everything, completed, limited = asyncio.run(run())

    assert {operation.id for operation in everything} == {"op-1", "op-2"}
    assert [operation.id for operation in completed] == ["op-2"]
    assert len(limited) == 1


def test_loaded_operation_is_a_copy(repository):
    async def run():
        operation = _operation()
        await repository.save_operation(operation)
        operation.status = OperationStatus.CANCELLED
        return await repository.load_operation("op-1")

    assert asyncio.run(run()).status is OperationStatus.PENDING


def test_holdings_drive_current_allocation(repository):
    repository.set_holdings("alice", [Holding(asset="ETH", balance_usd=750), Holding(asset="USDC", balance_usd=250)])

    snapshot = asyncio.run(repository.get_current_allocation("alice", portfolio_id="main"))

    assert snapshot.total_value == 1000
    assert {entry.id: entry.percentage for entry in snapshot.assets} == {"ETH": 75.0, "USDC": 25.0}
    assert asyncio.run(repository.get_current_allocation("nobody")).total_value == 0


def test_file_repository_writes_transactions_to_hash_chained_ledger(tmp_path):
    repository = FileRepository(tmp_path / "state")
    operation = _operation()

    asyncio.run(repository.record_transaction(LedgerEntry("op-1", "alice", "s1", operation.transactions[0])))

    entries = read_ledger(repository.ledger.path, action=TRANSACTION_ACTION)
    assert entries[0]["details"]["transaction"]["to_asset"] == "ETH"
    assert verify_chain(repository.ledger.path)


def test_file_repository_survives_restart(tmp_path):
    root = tmp_path / "state"
    asyncio.run(FileRepository(root).save_strategy(_strategy()))

    reloaded = asyncio.run(FileRepository(root).load_strategy("s1"))

    assert reloaded.name == "Core"
