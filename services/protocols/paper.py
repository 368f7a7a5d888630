"""Deterministic dry-run adapter used for paper trading and tests."""

from __future__ import annotations

import logging
from collections import defaultdict
from hashlib import sha256
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .base import ExecutionReceipt, GasEstimate, ProtocolExecutionAdapter, TransferRequest

logger = logging.getLogger(__name__)

DEFAULT_GAS_LIMITS: Mapping[str, int] = {"swap": 200_000, "deposit": 150_000, "withdrawal": 150_000}


class PaperExecutionAdapter(ProtocolExecutionAdapter):
    """Simulate fills without touching any venue.

    Receipts are derived from the request contents, so replaying the same
    request yields the same transaction reference.
    """

    name = "paper"

    def __init__(
        self,
        *,
        gas_price_gwei: float = 30.0,
        native_price_usd: float = 3000.0,
        slippage: float = 0.001,
        chains: Optional[Iterable[str]] = None,
        balances: Optional[Mapping[Tuple[str, str], float]] = None,
    ) -> None:
        self._gas_price_wei = int(gas_price_gwei * 1e9)
        self._native_price_usd = native_price_usd
        self._slippage = slippage
        self._chains = {chain.lower() for chain in chains} if chains else None
        self._balances: Dict[Tuple[str, str], float] = defaultdict(float)
        for key, value in (balances or {}).items():
            self._balances[key] = float(value)
        self.executed: list[TransferRequest] = []

    def supports_chain(self, chain: Optional[str]) -> bool:
        if self._chains is None or chain is None:
            return True
        return chain.lower() in self._chains

    async def estimate_gas(self, request: TransferRequest) -> GasEstimate:
        gas_limit = DEFAULT_GAS_LIMITS.get(request.type, 100_000)
        return GasEstimate(gas_limit=gas_limit, gas_price_wei=self._gas_price_wei, cost_usd=self._gas_cost(gas_limit))

    async def execute_swap(self, request: TransferRequest) -> ExecutionReceipt:
        return self._fill(request, slippage=self._slippage)

    async def execute_deposit(self, request: TransferRequest) -> ExecutionReceipt:
        return self._fill(request, slippage=0.0)

    async def execute_withdrawal(self, request: TransferRequest) -> ExecutionReceipt:
        return self._fill(request, slippage=0.0)

    async def get_balance(self, account: str, asset: str, chain: Optional[str] = None) -> float:
        return self._balances[(account, asset)]

    def _gas_cost(self, gas_limit: int) -> float:
        return gas_limit * self._gas_price_wei / 1e18 * self._native_price_usd

    def _fill(self, request: TransferRequest, *, slippage: float) -> ExecutionReceipt:
        gas_limit = DEFAULT_GAS_LIMITS.get(request.type, 100_000)
        digest = sha256(
            "|".join(
                str(part)
                for part in (
                    request.reference,
                    request.type,
                    request.from_asset,
                    request.to_asset,
                    round(request.amount_usd, 6),
                    request.chain,
                )
            ).encode("utf-8")
        ).hexdigest()
        self.executed.append(request)
        logger.info(
            "[PAPER] Filled transfer",
            extra={"type": request.type, "from": request.from_asset, "to": request.to_asset, "amount_usd": request.amount_usd},
        )
        return ExecutionReceipt(
            success=True,
            tx_ref=f"paper-{digest[:16]}",
            gas_used=gas_limit,
            gas_price_wei=self._gas_price_wei,
            gas_cost_usd=self._gas_cost(gas_limit),
            to_amount=request.amount_usd * (1 - slippage),
            slippage=slippage,
        )
