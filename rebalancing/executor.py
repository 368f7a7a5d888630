"""Execution orchestrator that runs a plan's transactions through adapters."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from services.protocols import AdapterRegistry, AdapterUnavailable, ExecutionReceipt

from .config import RetryPolicy
from .metrics import MetricRegistry, Timer
from .models import (
    AllocationEntry,
    ExecutionParams,
    GasInfo,
    LedgerEntry,
    OperationStatus,
    Performance,
    RebalancingOperation,
    SlippageInfo,
    Transaction,
    TransactionError,
    TransactionStatus,
    utcnow,
)
from .planner import apply_transactions
from .repository import Repository
from .simulation import transfer_request

logger = logging.getLogger(__name__)

EXECUTION_FAILED = "EXECUTION_FAILED"
EXECUTION_TIMEOUT = "EXECUTION_TIMEOUT"
ADAPTER_UNAVAILABLE = "ADAPTER_UNAVAILABLE"
EXECUTION_ERROR = "EXECUTION_ERROR"


@dataclass
class ExecutionOutcome:
    status: OperationStatus
    performance: Performance
    achieved_allocation: List[AllocationEntry] = field(default_factory=list)
    failed: List[Transaction] = field(default_factory=list)


class ExecutionOrchestrator:
    """Run pending transactions, retrying each under :class:`RetryPolicy`.

    A failing transaction never aborts its siblings. Completed transactions are
    skipped, so calling :meth:`execute` again resumes an interrupted or partial
    run. Each transaction that completes during a call is written to the
    repository ledger once.
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        repository: Repository,
        *,
        retry: Optional[RetryPolicy] = None,
        parallel_chains: bool = False,
        metrics: Optional[MetricRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.retry = retry or RetryPolicy()
        self.parallel_chains = parallel_chains
        self.metrics = metrics or MetricRegistry()
        self._sleep = sleep

    async def execute(self, operation: RebalancingOperation, params: ExecutionParams) -> ExecutionOutcome:
        with Timer(self.metrics, "operation_execution_seconds") as timer:
            if self.parallel_chains:
                groups: "OrderedDict[str, List[Transaction]]" = OrderedDict()
                for transaction in operation.transactions:
                    groups.setdefault(transaction.chain or "", []).append(transaction)
                await asyncio.gather(
                    *(self._run_sequence(operation, group, params) for group in groups.values())
                )
            else:
                await self._run_sequence(operation, operation.transactions, params)

        counts = operation.transaction_counts()
        completed = counts[TransactionStatus.COMPLETED.value]
        failed = counts[TransactionStatus.FAILED.value]
        if failed == 0:
            status = OperationStatus.COMPLETED
        elif completed == 0:
            status = OperationStatus.FAILED
        else:
            status = OperationStatus.PARTIAL
        self.metrics.inc("operations_total", labels={"status": status.value})

        done = [tx for tx in operation.transactions if tx.status is TransactionStatus.COMPLETED]
        performance = self._performance(operation, done, timer.elapsed)
        achieved = apply_transactions(
            operation.current_allocation,
            done,
            operation.total_value,
            dimension=operation.target_allocation[0].dimension if operation.target_allocation else None,
        )
        logger.info(
            "Operation %s executed: %s",
            operation.id,
            status.value,
            extra={"operation_id": operation.id, "completed": completed, "failed": failed},
        )
        return ExecutionOutcome(
            status=status,
            performance=performance,
            achieved_allocation=achieved,
            failed=[tx for tx in operation.transactions if tx.status is TransactionStatus.FAILED],
        )

    async def _run_sequence(
        self, operation: RebalancingOperation, transactions: List[Transaction], params: ExecutionParams
    ) -> None:
        for transaction in transactions:
            if transaction.status is TransactionStatus.COMPLETED:
                continue
            await self._run_transaction(operation, transaction, params)

    async def _run_transaction(
        self, operation: RebalancingOperation, transaction: Transaction, params: ExecutionParams
    ) -> None:
        transaction.status = TransactionStatus.EXECUTING
        transaction.error = None
        request = transfer_request(transaction, params, reference=f"{operation.id}:{transaction.index}")
        try:
            adapter = self.registry.require(request.protocol_id, request.chain)
        except AdapterUnavailable as exc:
            self._fail(operation, transaction, ADAPTER_UNAVAILABLE, str(exc))
            return

        labels = {"adapter": adapter.name}
        code, message = EXECUTION_ERROR, "no attempt made"
        attempts = max(self.retry.max_attempts, 1)
        for attempt in range(1, attempts + 1):
            transaction.attempts += 1
            self.metrics.inc("adapter_calls_total", labels=labels)
            try:
                with Timer(self.metrics, "adapter_latency_seconds", labels=labels):
                    receipt = await asyncio.wait_for(adapter.execute(request), timeout=self.retry.timeout_seconds)
            except asyncio.TimeoutError:
                code = EXECUTION_TIMEOUT
                message = f"adapter did not answer within {self.retry.timeout_seconds:g}s"
                logger.warning(
                    "Transaction timed out",
                    extra={"operation_id": operation.id, "transaction_index": transaction.index, "attempt": attempt},
                )
            except Exception as exc:
                code, message = EXECUTION_ERROR, str(exc) or type(exc).__name__
                logger.error(
                    "Adapter raised while executing transaction",
                    extra={"operation_id": operation.id, "transaction_index": transaction.index, "attempt": attempt},
                    exc_info=True,
                )
            else:
                if receipt.success:
                    await self._complete(operation, transaction, receipt)
                    return
                code, message = EXECUTION_FAILED, receipt.error or "adapter reported failure"
                logger.warning(
                    "Adapter rejected transaction: %s",
                    message,
                    extra={"operation_id": operation.id, "transaction_index": transaction.index, "attempt": attempt},
                )
            self.metrics.inc("adapter_errors_total", labels=labels)
            if attempt < attempts:
                await self._sleep(self.retry.delay_for(attempt))
        self._fail(operation, transaction, code, message)

    async def _complete(self, operation: RebalancingOperation, transaction: Transaction, receipt: ExecutionReceipt) -> None:
        transaction.status = TransactionStatus.COMPLETED
        transaction.tx_ref = receipt.tx_ref
        transaction.executed_at = utcnow()
        transaction.to_amount = receipt.to_amount
        if receipt.gas_used is not None or receipt.gas_cost_usd is not None:
            transaction.gas = GasInfo(
                gas_used=int(receipt.gas_used or 0),
                gas_price_wei=int(receipt.gas_price_wei or 0),
                gas_cost_usd=float(receipt.gas_cost_usd or 0.0),
            )
        expected = transaction.slippage.expected if transaction.slippage else None
        transaction.slippage = SlippageInfo(expected=expected, actual=receipt.slippage)
        if receipt.slippage is not None:
            transaction.to_amount_usd = transaction.from_amount_usd * (1 - receipt.slippage)
        entry = LedgerEntry(
            operation_id=operation.id,
            user=operation.user,
            strategy_id=operation.strategy_id,
            transaction=transaction,
        )
        try:
            await self.repository.record_transaction(entry)
        except Exception:
            logger.error(
                "Failed to record transaction in ledger",
                extra={"operation_id": operation.id, "transaction_index": transaction.index},
                exc_info=True,
            )

    def _fail(self, operation: RebalancingOperation, transaction: Transaction, code: str, message: str) -> None:
        transaction.status = TransactionStatus.FAILED
        transaction.error = TransactionError(code=code, message=message)
        logger.error(
            "Transaction %s failed: %s",
            transaction.index,
            message,
            extra={"operation_id": operation.id, "code": code, "attempts": transaction.attempts},
        )

    def _performance(self, operation: RebalancingOperation, done: List[Transaction], elapsed: float) -> Performance:
        gas = sum(tx.gas.gas_cost_usd for tx in done if tx.gas is not None)
        slippage_cost = sum(
            tx.from_amount_usd * tx.slippage.actual
            for tx in done
            if tx.slippage is not None and tx.slippage.actual is not None
        )
        total = len(operation.transactions)
        success_rate = len(done) / total * 100 if total else 100.0
        before = operation.total_value
        return Performance(
            portfolio_value_before=before,
            portfolio_value_after=before - gas - slippage_cost,
            total_gas_cost_usd=gas,
            total_slippage=slippage_cost,
            execution_time_s=elapsed,
            success_rate=success_rate,
        )


def failure_summary(transactions: List[Transaction]) -> Dict[int, str]:
    return {tx.index: tx.error.code for tx in transactions if tx.error is not None}


__all__ = [
    "ADAPTER_UNAVAILABLE",
    "EXECUTION_ERROR",
    "EXECUTION_FAILED",
    "EXECUTION_TIMEOUT",
    "ExecutionOrchestrator",
    "ExecutionOutcome",
    "failure_summary",
]
