"""Dry-run estimation of gas, slippage and duration for a rebalance plan."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from services.pricing import PriceSource
from services.protocols import AdapterRegistry, GasEstimate, TransferRequest

from .config import SimulationDefaults
from .models import (
    ExecutionParams,
    RebalancingOperation,
    SimulationResult,
    SlippageInfo,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)

WEI_PER_NATIVE = 1e18
WEI_PER_GWEI = 1e9

SLIPPAGE_BANDS: Tuple[Tuple[float, float], ...] = (
    (1_000.0, 0.001),
    (10_000.0, 0.003),
    (100_000.0, 0.005),
)
LARGE_TRADE_SLIPPAGE = 0.01


def transfer_request(transaction: Transaction, params: ExecutionParams, *, reference: Optional[str] = None) -> TransferRequest:
    """Translate a planned transaction into the adapter request shape."""

    return TransferRequest(
        type=transaction.type.value,
        from_asset=transaction.from_asset,
        to_asset=transaction.to_asset,
        amount=transaction.from_amount if transaction.from_amount is not None else transaction.from_amount_usd,
        amount_usd=transaction.from_amount_usd,
        protocol_id=transaction.from_protocol or transaction.to_protocol,
        chain=transaction.from_chain or transaction.to_chain,
        to_protocol_id=transaction.to_protocol,
        to_chain=transaction.to_chain,
        max_slippage_pct=params.max_slippage_pct,
        max_gas_price_gwei=params.max_gas_price_gwei,
        reference=reference,
    )


def expected_slippage(transaction: Transaction, max_slippage_pct: float) -> float:
    """Return the expected slippage fraction for ``transaction``."""

    if transaction.type is not TransactionType.SWAP:
        return 0.0
    amount = transaction.from_amount_usd
    slippage = LARGE_TRADE_SLIPPAGE
    for ceiling, band in SLIPPAGE_BANDS:
        if amount < ceiling:
            slippage = band
            break
    return min(slippage, max_slippage_pct / 100)


class Simulator:
    """Estimate what executing an operation would cost.

    Adapters are asked for gas estimates first. Without an adapter the
    configured per-type defaults apply; a failed estimate falls back to the
    same defaults and records a warning. Transactions that cannot be
    simulated at all are reported as errors and make the result ``failed``.
    """

    def __init__(
        self,
        *,
        registry: Optional[AdapterRegistry] = None,
        prices: Optional[PriceSource] = None,
        defaults: Optional[SimulationDefaults] = None,
    ) -> None:
        self.registry = registry or AdapterRegistry()
        self.prices = prices
        self.defaults = defaults or SimulationDefaults()

    async def simulate(self, operation: RebalancingOperation, params: ExecutionParams) -> SimulationResult:
        native_price = await self._native_price()
        warnings: List[str] = []
        errors: List[str] = []
        details: List[Dict[str, Any]] = []
        total_gas = 0.0
        total_duration = 0.0
        slippages: List[float] = []

        for transaction in operation.transactions:
            try:
                detail, tx_warnings = await self._simulate_transaction(operation, transaction, params, native_price)
            except Exception as exc:
                message = f"transaction {transaction.index}: {exc}"
                logger.warning(
                    "Simulation failed for transaction",
                    extra={"operation_id": operation.id, "transaction_index": transaction.index},
                    exc_info=True,
                )
                errors.append(message)
                details.append({"index": transaction.index, "error": {"code": "SIMULATION_ERROR", "message": str(exc)}})
                continue
            warnings.extend(tx_warnings)
            details.append(detail)
            total_gas += detail["gas_cost_usd"]
            total_duration += detail["duration_s"]
            slippages.append(detail["slippage"])

        average_slippage = sum(slippages) / len(slippages) if slippages else 0.0
        before = operation.total_value
        slippage_cost = before * average_slippage
        if errors:
            result = "failed"
        elif warnings:
            result = "partial"
        else:
            result = "success"

        return SimulationResult(
            result=result,
            expected_gas_cost_usd=total_gas,
            expected_slippage=average_slippage,
            estimated_duration_s=total_duration,
            portfolio_value_before=before,
            portfolio_value_after=before - total_gas - slippage_cost,
            slippage_cost=slippage_cost,
            warnings=warnings,
            errors=errors,
            details=details,
        )

    async def _simulate_transaction(
        self,
        operation: RebalancingOperation,
        transaction: Transaction,
        params: ExecutionParams,
        native_price: float,
    ) -> Tuple[Dict[str, Any], List[str]]:
        if transaction.from_amount_usd <= 0:
            raise ValueError("amount must be positive")
        if transaction.from_asset == transaction.to_asset and transaction.protocol is None and transaction.chain is None:
            raise ValueError(f"cannot swap {transaction.from_asset} into itself")

        warnings: List[str] = []
        request = transfer_request(transaction, params, reference=operation.id)
        estimate = await self._estimate_gas(request, warnings)
        gas_cost = estimate.cost_usd
        if gas_cost is None:
            gas_cost = estimate.gas_limit * estimate.gas_price_wei / WEI_PER_NATIVE * native_price

        if params.max_gas_price_gwei is not None and estimate.gas_price_wei > params.max_gas_price_gwei * WEI_PER_GWEI:
            warnings.append(
                f"transaction {transaction.index}: gas price {estimate.gas_price_gwei:.1f} gwei exceeds "
                f"limit of {params.max_gas_price_gwei:g} gwei"
            )

        duration = self.defaults.durations_s.get(transaction.type.value, self.defaults.default_duration_s)
        if transaction.cross_chain:
            duration += self.defaults.cross_chain_penalty_s
            warnings.append(
                f"transaction {transaction.index}: cross-chain transfer {transaction.from_chain} -> "
                f"{transaction.to_chain} may take several minutes"
            )

        slippage = expected_slippage(transaction, params.max_slippage_pct)
        transaction.slippage = SlippageInfo(expected=slippage)
        detail = {
            "index": transaction.index,
            "gas_limit": estimate.gas_limit,
            "gas_price_gwei": estimate.gas_price_gwei,
            "gas_cost_usd": gas_cost,
            "slippage": slippage,
            "duration_s": duration,
        }
        return detail, warnings

    async def _estimate_gas(self, request: TransferRequest, warnings: List[str]) -> GasEstimate:
        adapter = self.registry.resolve(request.protocol_id, request.chain)
        if adapter is not None:
            try:
                return await adapter.estimate_gas(request)
            except Exception as exc:
                logger.warning(
                    "Gas estimate failed; using defaults",
                    extra={"protocol": request.protocol_id, "chain": request.chain, "error": str(exc)},
                )
                warnings.append(f"gas estimate unavailable for {request.from_asset} -> {request.to_asset}; using defaults")
        limit = self.defaults.gas_limits.get(request.type, self.defaults.default_gas_limit)
        return GasEstimate(gas_limit=limit, gas_price_wei=int(self.defaults.gas_price_gwei * WEI_PER_GWEI))

    async def _native_price(self) -> float:
        if self.prices is None:
            return self.defaults.native_price_usd
        try:
            price = await self.prices.get_price_usd(self.defaults.native_asset)
        except Exception as exc:
            logger.warning("Native price lookup failed: %s", exc)
            price = None
        return price if price else self.defaults.native_price_usd


__all__ = ["Simulator", "expected_slippage", "transfer_request"]
