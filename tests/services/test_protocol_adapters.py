import asyncio

import pytest

from services.protocols import (
    AdapterRegistry,
    AdapterUnavailable,
    CcxtSwapAdapter,
    PaperExecutionAdapter,
    TransferRequest,
)


def _swap(**overrides) -> TransferRequest:
    values = dict(type="swap", from_asset="ETH", to_asset="USDC", amount=1.0, amount_usd=3000.0, reference="op-1:0")
    values.update(overrides)
    return TransferRequest(**values)


class _DummyExchange:
    id = "dummyex"

    def __init__(self, prices, fills=None):
        self.prices = prices
        self.fills = fills or {}
        self.orders = []
        self.closed = False

    async def fetch_ticker(self, symbol):
        return {"last": self.prices[symbol]}

    async def create_order(self, symbol, order_type, side, amount, params=None):
        self.orders.append((symbol, order_type, side, amount))
        return {
            "id": f"o{len(self.orders)}",
            "average": self.fills.get(symbol, self.prices[symbol]),
            "fee": {"cost": 1.5},
        }

    async def fetch_balance(self):
        return {"total": {"ETH": "2.5"}}

    async def close(self):
        self.closed = True


def test_paper_adapter_is_deterministic():
    first = PaperExecutionAdapter()
    second = PaperExecutionAdapter()

    receipt = asyncio.run(first.execute(_swap()))
    replay = asyncio.run(second.execute(_swap()))

    assert receipt.success
    assert receipt.tx_ref == replay.tx_ref
    assert receipt.tx_ref.startswith("paper-")
    assert receipt.to_amount == pytest.approx(3000.0 * 0.999)
    assert first.executed == [_swap()]


def test_paper_adapter_gas_estimate_and_deposits():
    adapter = PaperExecutionAdapter(gas_price_gwei=20, native_price_usd=2000)

    estimate = asyncio.run(adapter.estimate_gas(_swap()))
    deposit = asyncio.run(adapter.execute(_swap(type="deposit", to_protocol_id="aave")))

    assert estimate.gas_limit == 200_000
    assert estimate.gas_price_gwei == pytest.approx(20)
    assert estimate.cost_usd == pytest.approx(200_000 * 20e9 / 1e18 * 2000)
    assert deposit.slippage == 0.0


def test_unknown_transfer_type_is_rejected():
    with pytest.raises(ValueError):
        asyncio.run(PaperExecutionAdapter().execute(_swap(type="bridge")))


def test_registry_resolution_order():
    default = PaperExecutionAdapter()
    aave = PaperExecutionAdapter()
    aave_arbitrum = PaperExecutionAdapter(chains=["arbitrum"])
    registry = AdapterRegistry({"Aave": aave, ("aave", "arbitrum"): aave_arbitrum}, default=default)

    assert registry.resolve("aave", "arbitrum") is aave_arbitrum
    assert registry.resolve("AAVE", "ethereum") is aave
    assert registry.resolve("compound") is default
    assert len(registry) == 3
    assert len(list(registry)) == 3


def test_registry_require_raises_when_unavailable():
    registry = AdapterRegistry({"aave": PaperExecutionAdapter(chains=["ethereum"])})

    with pytest.raises(AdapterUnavailable) as excinfo:
        registry.require("aave", "solana")
    assert excinfo.value.chain == "solana"
    assert registry.resolve(None) is None


def test_ccxt_swap_routes_through_quote_currency():
    client = _DummyExchange({"ETH/USDT": 3000.0, "BTC/USDT": 60000.0}, fills={"ETH/USDT": 2985.0})
    adapter = CcxtSwapAdapter(client)

    receipt = asyncio.run(adapter.execute(_swap(to_asset="BTC", max_slippage_pct=1.0)))

    assert receipt.success
    assert [order[:3] for order in client.orders] == [
        ("ETH/USDT", "market", "sell"),
        ("BTC/USDT", "market", "buy"),
    ]
    assert client.orders[0][3] == pytest.approx(1.0)
    assert receipt.slippage == pytest.approx(0.005)
    assert receipt.gas_cost_usd == pytest.approx(3.0)
    assert receipt.tx_ref == "o1,o2"


def test_ccxt_swap_into_quote_needs_one_order():
    client = _DummyExchange({"ETH/USDT": 3000.0})
    adapter = CcxtSwapAdapter(client)

    receipt = asyncio.run(adapter.execute(_swap(to_asset="USDT")))

    assert len(client.orders) == 1
    assert receipt.to_amount == pytest.approx(3000.0)


def test_ccxt_adapter_rejects_protocol_transfers_and_filters_chains():
    client = _DummyExchange({})
    adapter = CcxtSwapAdapter(client, chains=("cex",))

    receipt = asyncio.run(adapter.execute(_swap(type="deposit")))

    assert not receipt.success
    assert "dummyex" in receipt.error
    assert adapter.supports_chain(None)
    assert adapter.supports_chain("CEX")
    assert not adapter.supports_chain("ethereum")
    assert asyncio.run(adapter.get_balance("acct", "eth")) == 2.5
    asyncio.run(adapter.close())
    assert client.closed
