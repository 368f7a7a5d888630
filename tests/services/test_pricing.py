import asyncio

from services.pricing import CcxtPriceSource, StaticPriceSource


class _TickerClient:
    def __init__(self, tickers):
        self.tickers = tickers
        self.requested = []

    async def fetch_ticker(self, symbol):
        self.requested.append(symbol)
        if symbol not in self.tickers:
            raise KeyError(symbol)
        return self.tickers[symbol]


def test_static_prices_are_case_insensitive_and_stables_default_to_one():
    source = StaticPriceSource({"eth": 2500})

    assert asyncio.run(source.get_price_usd("ETH")) == 2500.0
    assert asyncio.run(source.get_price_usd("usdc")) == 1.0
    assert asyncio.run(source.get_price_usd("DOGE")) is None

    source.set_price("doge", 0.1)
    assert asyncio.run(source.get_price_usd("DOGE")) == 0.1


def test_ccxt_prices_map_wrapped_assets_and_skip_stables():
    client = _TickerClient({"ETH/USDT": {"last": None, "close": 3100.5}})
    source = CcxtPriceSource(client)

    assert asyncio.run(source.get_price_usd("WETH")) == 3100.5
    assert asyncio.run(source.get_price_usd("DAI")) == 1.0
    assert client.requested == ["ETH/USDT"]


def test_ccxt_lookup_failure_returns_none():
    source = CcxtPriceSource(_TickerClient({"BTC/USDT": {}}))

    assert asyncio.run(source.get_price_usd("SOL")) is None
    assert asyncio.run(source.get_price_usd("BTC")) is None
