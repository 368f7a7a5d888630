"""Swap adapter routing rebalances through a CCXT exchange."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, MutableMapping, Optional

from .base import ExecutionReceipt, GasEstimate, ProtocolExecutionAdapter, TransferRequest

logger = logging.getLogger(__name__)

_SENSITIVE_FIELDS = {"apiKey", "secret", "password", "uid"}
_ALIASES = {"api_key": "apiKey", "key": "apiKey", "apiSecret": "secret", "secret_key": "secret", "passphrase": "password"}


def create_exchange_client(exchange_id: str, credentials: Optional[Mapping[str, Any]] = None) -> Any:
    """Instantiate an async CCXT client for ``exchange_id``."""

    try:
        import ccxt.async_support as ccxt_async
    except ModuleNotFoundError as exc:  # pragma: no cover - ccxt is a declared dependency
        raise RuntimeError("CCXT swap routing requires the 'ccxt' package to be installed.") from exc

    normalized = exchange_id.strip().lower()
    try:
        exchange_class = getattr(ccxt_async, normalized)
    except AttributeError as exc:
        raise ValueError(f"Exchange '{exchange_id}' is not supported by ccxt.") from exc

    params: MutableMapping[str, Any] = {"enableRateLimit": True}
    for key, value in (credentials or {}).items():
        if value is None:
            continue
        field = _ALIASES.get(key, key)
        if field in _SENSITIVE_FIELDS or field == "options":
            params[field] = value
    return exchange_class(params)


class CcxtSwapAdapter(ProtocolExecutionAdapter):
    """Execute swap legs as market orders against a quote currency.

    A swap between two non-quote assets is split into a sell into the quote
    currency followed by a buy. Deposits and withdrawals are not available on
    an exchange and are reported as failed receipts.
    """

    def __init__(
        self,
        client: Any,
        *,
        name: Optional[str] = None,
        quote: str = "USDT",
        chains: Iterable[str] = ("cex",),
        params: Optional[Mapping[str, Any]] = None,
    ) -> None:
        self.client = client
        self.name = name or getattr(client, "id", "ccxt")
        self.quote = quote.upper()
        self._chains = {chain.lower() for chain in chains}
        self._params = dict(params or {})

    def supports_chain(self, chain: Optional[str]) -> bool:
        if chain is None:
            return True
        return chain.lower() in self._chains or chain.lower() == str(self.name).lower()

    async def estimate_gas(self, request: TransferRequest) -> GasEstimate:
        return GasEstimate(gas_limit=0, gas_price_wei=0, cost_usd=0.0)

    async def execute_swap(self, request: TransferRequest) -> ExecutionReceipt:
        from_asset = request.from_asset.upper()
        to_asset = request.to_asset.upper()
        if from_asset == to_asset:
            return ExecutionReceipt(success=True, tx_ref=None, to_amount=request.amount_usd, slippage=0.0, gas_cost_usd=0.0)

        orders: list[Mapping[str, Any]] = []
        slippages: list[float] = []
        fees = 0.0
        quote_amount = request.amount_usd
        if from_asset != self.quote:
            symbol = f"{from_asset}/{self.quote}"
            reference = await self._reference_price(symbol)
            order = await self.client.create_order(symbol, "market", "sell", quote_amount / reference, params=self._params)
            orders.append(order)
            fill = _fill_price(order, reference)
            slippages.append(max(0.0, (reference - fill) / reference))
            fees += _fee_cost(order)
            quote_amount = quote_amount * fill / reference
        if to_asset != self.quote:
            symbol = f"{to_asset}/{self.quote}"
            reference = await self._reference_price(symbol)
            order = await self.client.create_order(symbol, "market", "buy", quote_amount / reference, params=self._params)
            orders.append(order)
            fill = _fill_price(order, reference)
            slippages.append(max(0.0, (fill - reference) / reference))
            fees += _fee_cost(order)
            quote_amount = quote_amount * reference / fill

        slippage = sum(slippages)
        if slippage * 100 > request.max_slippage_pct:
            logger.warning(
                "Swap slippage exceeded limit",
                extra={"exchange": self.name, "slippage": slippage, "limit_pct": request.max_slippage_pct},
            )
        tx_ref = ",".join(str(order.get("id")) for order in orders if order.get("id") is not None) or None
        return ExecutionReceipt(
            success=True,
            tx_ref=tx_ref,
            gas_used=0,
            gas_price_wei=0,
            gas_cost_usd=fees,
            to_amount=quote_amount,
            slippage=slippage,
            details={"orders": [order.get("id") for order in orders]},
        )

    async def execute_deposit(self, request: TransferRequest) -> ExecutionReceipt:
        return ExecutionReceipt(success=False, error=f"{self.name} does not support protocol deposits")

    async def execute_withdrawal(self, request: TransferRequest) -> ExecutionReceipt:
        return ExecutionReceipt(success=False, error=f"{self.name} does not support protocol withdrawals")

    async def get_balance(self, account: str, asset: str, chain: Optional[str] = None) -> float:
        balance = await self.client.fetch_balance()
        totals = balance.get("total") or {}
        try:
            return float(totals.get(asset.upper()) or 0.0)
        except (TypeError, ValueError):
            return 0.0

    async def close(self) -> None:
        close = getattr(self.client, "close", None)
        if close is not None:
            await close()

    async def _reference_price(self, symbol: str) -> float:
        ticker = await self.client.fetch_ticker(symbol)
        for key in ("last", "close", "bid", "ask"):
            value = ticker.get(key)
            if value:
                return float(value)
        raise ValueError(f"no usable price for {symbol}")


def _fill_price(order: Mapping[str, Any], reference: float) -> float:
    value = order.get("average") or order.get("price")
    try:
        price = float(value)
    except (TypeError, ValueError):
        return reference
    return price if price > 0 else reference


def _fee_cost(order: Mapping[str, Any]) -> float:
    fee = order.get("fee") or {}
    try:
        return float(fee.get("cost") or 0.0)
    except (TypeError, ValueError, AttributeError):
        return 0.0
