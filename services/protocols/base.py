"""Capability interface for protocol execution adapters."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)


class AdapterUnavailable(RuntimeError):
    """Raised when no adapter can serve a protocol/chain combination."""

    def __init__(self, protocol_id: Optional[str], chain: Optional[str]):
        self.protocol_id = protocol_id
        self.chain = chain
        super().__init__(f"no execution adapter for protocol={protocol_id!r} chain={chain!r}")


@dataclass(frozen=True)
class TransferRequest:
    """Parameters handed to an adapter for one transfer."""

    type: str
    from_asset: str
    to_asset: str
    amount: float
    amount_usd: float
    protocol_id: Optional[str] = None
    chain: Optional[str] = None
    to_protocol_id: Optional[str] = None
    to_chain: Optional[str] = None
    max_slippage_pct: float = 1.0
    max_gas_price_gwei: Optional[float] = None
    reference: Optional[str] = None

    @property
    def cross_chain(self) -> bool:
        return bool(self.chain and self.to_chain and self.chain != self.to_chain)


@dataclass(frozen=True)
class GasEstimate:
    gas_limit: int
    gas_price_wei: int
    cost_usd: Optional[float] = None

    @property
    def gas_price_gwei(self) -> float:
        return self.gas_price_wei / 1e9


@dataclass
class ExecutionReceipt:
    """Outcome reported by an adapter for a single transfer."""

    success: bool
    tx_ref: Optional[str] = None
    gas_used: Optional[int] = None
    gas_price_wei: Optional[int] = None
    gas_cost_usd: Optional[float] = None
    to_amount: Optional[float] = None
    slippage: Optional[float] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


class ProtocolExecutionAdapter(abc.ABC):
    """Asynchronous interface every protocol/chain integration implements.

    Adapters report failures through :class:`ExecutionReceipt` where they can;
    raised exceptions are treated by callers as a failed attempt.
    """

    name: str = "adapter"

    def supports_chain(self, chain: Optional[str]) -> bool:
        return True

    @abc.abstractmethod
    async def estimate_gas(self, request: TransferRequest) -> GasEstimate:
        """Return the expected gas limit and price for ``request``."""

    @abc.abstractmethod
    async def execute_swap(self, request: TransferRequest) -> ExecutionReceipt:
        """Swap ``request.from_asset`` into ``request.to_asset``."""

    @abc.abstractmethod
    async def execute_deposit(self, request: TransferRequest) -> ExecutionReceipt:
        """Deposit into the protocol named by ``request.to_protocol_id``."""

    @abc.abstractmethod
    async def execute_withdrawal(self, request: TransferRequest) -> ExecutionReceipt:
        """Withdraw from the protocol named by ``request.protocol_id``."""

    async def get_claimable_rewards(self, account: str, chain: Optional[str] = None) -> Mapping[str, float]:
        return {}

    @abc.abstractmethod
    async def get_balance(self, account: str, asset: str, chain: Optional[str] = None) -> float:
        """Return the balance of ``asset`` held by ``account``."""

    async def execute(self, request: TransferRequest) -> ExecutionReceipt:
        """Dispatch ``request`` to the capability matching its type."""

        if request.type == "swap":
            return await self.execute_swap(request)
        if request.type == "deposit":
            return await self.execute_deposit(request)
        if request.type == "withdrawal":
            return await self.execute_withdrawal(request)
        raise ValueError(f"unsupported transfer type {request.type!r}")
