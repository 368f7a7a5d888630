"""Persistence interface for strategies, operations, holdings and the ledger."""

from __future__ import annotations

import abc
import json
import logging
import tempfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from .audit import AuditLedger
from .errors import NotFoundError
from .models import (
    AllocationSnapshot,
    Holding,
    LedgerEntry,
    OperationStatus,
    RebalancingOperation,
    RebalancingStrategy,
    StrategyStatus,
    TriggerType,
)
from .planner import build_allocation_snapshot

logger = logging.getLogger(__name__)


class Repository(abc.ABC):
    """Storage the rebalancing service reads from and writes to."""

    @abc.abstractmethod
    async def get_current_allocation(self, user: str, portfolio_id: Optional[str] = None) -> AllocationSnapshot:
        """Return the user's allocation grouped by asset, protocol and chain."""

    @abc.abstractmethod
    async def load_strategy(self, strategy_id: str) -> RebalancingStrategy:
        """Return the strategy or raise :class:`NotFoundError`."""

    @abc.abstractmethod
    async def save_strategy(self, strategy: RebalancingStrategy) -> None:
        ...

    @abc.abstractmethod
    async def list_strategies(
        self,
        *,
        trigger: Optional[TriggerType] = None,
        status: Optional[StrategyStatus] = None,
        user: Optional[str] = None,
    ) -> List[RebalancingStrategy]:
        ...

    @abc.abstractmethod
    async def load_operation(self, operation_id: str) -> RebalancingOperation:
        """Return the operation or raise :class:`NotFoundError`."""

    @abc.abstractmethod
    async def save_operation(self, operation: RebalancingOperation) -> None:
        ...

    @abc.abstractmethod
    async def list_operations(
        self,
        user: str,
        *,
        status: Optional[OperationStatus] = None,
        strategy_id: Optional[str] = None,
        limit: int = 50,
    ) -> List[RebalancingOperation]:
        """Return the user's operations, newest first."""

    @abc.abstractmethod
    async def record_transaction(self, entry: LedgerEntry) -> None:
        """Append a completed transaction to the ledger."""


def _filter_operations(
    operations: Iterable[RebalancingOperation],
    user: str,
    status: Optional[OperationStatus],
    strategy_id: Optional[str],
    limit: int,
) -> List[RebalancingOperation]:
    matching = [
        operation
        for operation in operations
        if operation.user == user
        and (status is None or operation.status is status)
        and (strategy_id is None or operation.strategy_id == strategy_id)
    ]
    matching.sort(key=lambda operation: operation.created_at, reverse=True)
    return matching[: max(limit, 0)]


def _filter_strategies(
    strategies: Iterable[RebalancingStrategy],
    trigger: Optional[TriggerType],
    status: Optional[StrategyStatus],
    user: Optional[str],
) -> List[RebalancingStrategy]:
    return [
        strategy
        for strategy in strategies
        if (trigger is None or strategy.trigger is trigger)
        and (status is None or strategy.status is status)
        and (user is None or strategy.user == user)
    ]


class InMemoryRepository(Repository):
    """Dictionary-backed repository for tests and embedding.

    Stored entities are round-tripped through their payloads so callers never
    share mutable state with the store.
    """

    def __init__(self) -> None:
        self._holdings: Dict[Tuple[str, Optional[str]], List[Holding]] = {}
        self._strategies: Dict[str, dict] = {}
        self._operations: Dict[str, dict] = {}
        self.ledger: List[LedgerEntry] = []

    def set_holdings(self, user: str, holdings: Iterable[Holding], *, portfolio_id: Optional[str] = None) -> None:
        self._holdings[(user, portfolio_id)] = list(holdings)

    async def get_current_allocation(self, user: str, portfolio_id: Optional[str] = None) -> AllocationSnapshot:
        holdings = self._holdings.get((user, portfolio_id))
        if holdings is None and portfolio_id is not None:
            holdings = self._holdings.get((user, None))
        return build_allocation_snapshot(holdings or [])

    async def load_strategy(self, strategy_id: str) -> RebalancingStrategy:
        payload = self._strategies.get(strategy_id)
        if payload is None:
            raise NotFoundError(f"strategy {strategy_id} not found")
        return RebalancingStrategy.from_payload(payload)

    async def save_strategy(self, strategy: RebalancingStrategy) -> None:
        self._strategies[strategy.id] = strategy.to_payload()

    async def list_strategies(self, *, trigger=None, status=None, user=None) -> List[RebalancingStrategy]:
        strategies = [RebalancingStrategy.from_payload(payload) for payload in self._strategies.values()]
        return _filter_strategies(strategies, trigger, status, user)

    async def load_operation(self, operation_id: str) -> RebalancingOperation:
        payload = self._operations.get(operation_id)
        if payload is None:
            raise NotFoundError(f"operation {operation_id} not found")
        return RebalancingOperation.from_payload(payload)

    async def save_operation(self, operation: RebalancingOperation) -> None:
        self._operations[operation.id] = operation.to_payload()

    async def list_operations(self, user, *, status=None, strategy_id=None, limit=50) -> List[RebalancingOperation]:
        operations = [RebalancingOperation.from_payload(payload) for payload in self._operations.values()]
        return _filter_operations(operations, user, status, strategy_id, limit)

    async def record_transaction(self, entry: LedgerEntry) -> None:
        self.ledger.append(entry)


class FileRepository(Repository):
    """JSON documents under ``root`` written atomically.

    Layout: ``strategies/<id>.json``, ``operations/<id>.json`` and
    ``holdings/<user>.json``. The ledger is a hash-chained JSONL file.
    """

    def __init__(self, root: Path, *, ledger: Optional[AuditLedger] = None) -> None:
        self._root = Path(root)
        for name in ("strategies", "operations", "holdings"):
            (self._root / name).mkdir(parents=True, exist_ok=True)
        self._ledger = ledger or AuditLedger(self._root / "ledger.jsonl")

    @property
    def ledger(self) -> AuditLedger:
        return self._ledger

    def set_holdings(self, user: str, holdings: Iterable[Holding], *, portfolio_id: Optional[str] = None) -> None:
        payload = [holding.to_payload() for holding in holdings]
        _atomic_write(self._holdings_path(user, portfolio_id), json.dumps(payload, indent=2))

    async def get_current_allocation(self, user: str, portfolio_id: Optional[str] = None) -> AllocationSnapshot:
        path = self._holdings_path(user, portfolio_id)
        if not path.exists() and portfolio_id is not None:
            path = self._holdings_path(user, None)
        raw = self._read(path) or []
        return build_allocation_snapshot([Holding.from_payload(item) for item in raw])

    async def load_strategy(self, strategy_id: str) -> RebalancingStrategy:
        payload = self._read(self._root / "strategies" / f"{strategy_id}.json")
        if payload is None:
            raise NotFoundError(f"strategy {strategy_id} not found")
        return RebalancingStrategy.from_payload(payload)

    async def save_strategy(self, strategy: RebalancingStrategy) -> None:
        _atomic_write(self._root / "strategies" / f"{strategy.id}.json", json.dumps(strategy.to_payload(), indent=2))

    async def list_strategies(self, *, trigger=None, status=None, user=None) -> List[RebalancingStrategy]:
        strategies = []
        for path in sorted((self._root / "strategies").glob("*.json")):
            payload = self._read(path)
            if payload is not None:
                strategies.append(RebalancingStrategy.from_payload(payload))
        return _filter_strategies(strategies, trigger, status, user)

    async def load_operation(self, operation_id: str) -> RebalancingOperation:
        payload = self._read(self._root / "operations" / f"{operation_id}.json")
        if payload is None:
            raise NotFoundError(f"operation {operation_id} not found")
        return RebalancingOperation.from_payload(payload)

    async def save_operation(self, operation: RebalancingOperation) -> None:
        _atomic_write(self._root / "operations" / f"{operation.id}.json", json.dumps(operation.to_payload(), indent=2))

    async def list_operations(self, user, *, status=None, strategy_id=None, limit=50) -> List[RebalancingOperation]:
        operations = []
        for path in (self._root / "operations").glob("*.json"):
            payload = self._read(path)
            if payload is not None:
                operations.append(RebalancingOperation.from_payload(payload))
        return _filter_operations(operations, user, status, strategy_id, limit)

    async def record_transaction(self, entry: LedgerEntry) -> None:
        self._ledger.record_transaction(entry.operation_id, entry.user, entry.transaction.to_payload())

    def _holdings_path(self, user: str, portfolio_id: Optional[str]) -> Path:
        name = f"{user}.json" if portfolio_id is None else f"{user}--{portfolio_id}.json"
        return self._root / "holdings" / name

    def _read(self, path: Path):
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            logger.error("Failed to read %s: %s", path, exc)
            return None


def _atomic_write(path: Path, content: str) -> None:
    tmp = tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8")
    try:
        with tmp as handle:
            handle.write(content)
            handle.flush()
        Path(tmp.name).replace(path)
    except Exception:
        Path(tmp.name).unlink(missing_ok=True)
        raise
