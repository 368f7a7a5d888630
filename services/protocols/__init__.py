"""Protocol execution adapters and the adapter registry."""

from .base import (
    AdapterUnavailable,
    ExecutionReceipt,
    GasEstimate,
    ProtocolExecutionAdapter,
    TransferRequest,
)
from .ccxt_swap import CcxtSwapAdapter, create_exchange_client
from .paper import PaperExecutionAdapter
from .registry import AdapterRegistry

__all__ = [
    "AdapterRegistry",
    "AdapterUnavailable",
    "CcxtSwapAdapter",
    "ExecutionReceipt",
    "GasEstimate",
    "PaperExecutionAdapter",
    "ProtocolExecutionAdapter",
    "TransferRequest",
    "create_exchange_client",
]
