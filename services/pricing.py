"""USD price lookups used by simulation and the CCXT swap adapter."""

from __future__ import annotations

import abc
import logging
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

STABLE_ASSETS = frozenset({"USD", "USDC", "USDT", "DAI", "BUSD", "TUSD", "FRAX", "LUSD", "USDP", "GUSD"})


class PriceSource(abc.ABC):
    """Resolve the USD price of an asset symbol."""

    @abc.abstractmethod
    async def get_price_usd(self, asset: str) -> Optional[float]:
        """Return the price of ``asset`` or ``None`` when it is unknown."""


class StaticPriceSource(PriceSource):
    def __init__(self, prices: Optional[Mapping[str, float]] = None) -> None:
        self._prices: Dict[str, float] = {key.upper(): float(value) for key, value in (prices or {}).items()}

    async def get_price_usd(self, asset: str) -> Optional[float]:
        symbol = asset.upper()
        if symbol in self._prices:
            return self._prices[symbol]
        if symbol in STABLE_ASSETS:
            return 1.0
        return None

    def set_price(self, asset: str, price: float) -> None:
        self._prices[asset.upper()] = float(price)


class CcxtPriceSource(PriceSource):
    """Read last-trade prices from a CCXT exchange client.

    Stablecoins resolve to 1.0 without a request. Wrapped assets map to their
    underlying ticker (``WETH`` is priced as ``ETH``). Lookup failures are
    logged and reported as ``None`` so callers can apply their own default.
    """

    def __init__(self, client: Any, *, quote: str = "USDT", aliases: Optional[Mapping[str, str]] = None) -> None:
        self.client = client
        self.quote = quote.upper()
        self._aliases = {"WETH": "ETH", "WBTC": "BTC", "STETH": "ETH", "WSTETH": "ETH"}
        self._aliases.update({key.upper(): value.upper() for key, value in (aliases or {}).items()})

    async def get_price_usd(self, asset: str) -> Optional[float]:
        symbol = asset.upper()
        if symbol in STABLE_ASSETS:
            return 1.0
        base = self._aliases.get(symbol, symbol)
        market = f"{base}/{self.quote}"
        try:
            ticker = await self.client.fetch_ticker(market)
        except Exception as exc:
            logger.warning("Price lookup failed for %s: %s", market, exc)
            return None
        for key in ("last", "close", "bid"):
            value = ticker.get(key) if isinstance(ticker, Mapping) else None
            if value:
                try:
                    return float(value)
                except (TypeError, ValueError):
                    continue
        logger.warning("Ticker for %s carried no usable price", market)
        return None


__all__ = ["CcxtPriceSource", "PriceSource", "STABLE_ASSETS", "StaticPriceSource"]
