"""
Price feeds for the Trailing Stop Engine.
A feed returns the latest price of an asset with its precision and freshness.
"""
from __future__ import annotations

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any

import ccxt
import httpx

from core.errors import OracleError
from core.fixed_point import to_fixed
from core.logger import get_logger
from core.state import PriceReading

log = get_logger("price_feed")


class PriceFeed(ABC):
    """
    Abstract price feed.

    Implementations raise ``OracleError`` when no reading can be produced.
    Any other exception is treated the same way by the engine.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self.reads = 0
        self.failures = 0

    @abstractmethod
    async def latest_price(self, oracle_ref: str) -> PriceReading:
        """
        Latest price for an oracle reference.

        Args:
            oracle_ref: Feed-specific handle (symbol, feed address, ...)

        Returns:
            PriceReading in the feed's native precision
        """

    def get_status(self) -> dict[str, Any]:
        return {
            'name': self.name,
            'reads': self.reads,
            'failures': self.failures,
        }


class StaticPriceFeed(PriceFeed):
    """
    In-memory feed whose prices are set explicitly.

    Used by the CLI simulation and tests. A reference without a price, or one
    marked unavailable, raises ``OracleError``.
    """

    def __init__(self, feed_decimals: int = 18, clock: Any = None) -> None:
        super().__init__(name="StaticFeed")
        self.feed_decimals = feed_decimals
        self._clock = clock or (lambda: int(time.time()))
        self._prices: dict[str, tuple[int, int | None]] = {}
        self._unavailable: set[str] = set()

    def set_price(self, oracle_ref: str, price: int, observed_at: int | None = None) -> None:
        """Set a raw price (``feed_decimals`` precision)."""
        self._prices[oracle_ref] = (price, observed_at)
        self._unavailable.discard(oracle_ref)

    def set_unavailable(self, oracle_ref: str) -> None:
        self._unavailable.add(oracle_ref)

    async def latest_price(self, oracle_ref: str) -> PriceReading:
        self.reads += 1
        if oracle_ref in self._unavailable or oracle_ref not in self._prices:
            self.failures += 1
            raise OracleError(f"No price for {oracle_ref}")

        price, observed_at = self._prices[oracle_ref]
        return PriceReading(
            oracle_ref=oracle_ref,
            price=price,
            feed_decimals=self.feed_decimals,
            observed_at=observed_at if observed_at is not None else self._clock(),
        )


class HttpPriceFeed(PriceFeed):
    """
    Feed backed by an HTTP JSON endpoint.

    ``GET {base_url}/{oracle_ref}`` must return
    ``{"price": "<int>", "decimals": <int>, "observed_at": <unix seconds>}``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """
        Initialize HttpPriceFeed.

        Args:
            base_url: Endpoint root
            timeout: Per-request timeout in seconds
            client: Optional preconfigured client (tests inject a mock transport)
        """
        super().__init__(name="HttpFeed")
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def latest_price(self, oracle_ref: str) -> PriceReading:
        self.reads += 1
        try:
            response = await self._client.get(f"{self.base_url}/{oracle_ref}")
            response.raise_for_status()
            payload = response.json()
            return PriceReading(
                oracle_ref=oracle_ref,
                price=int(payload["price"]),
                feed_decimals=int(payload["decimals"]),
                observed_at=int(payload["observed_at"]),
            )
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            self.failures += 1
            log.warning(f"[{self.name}] {oracle_ref}: read failed: {e}")
            raise OracleError(f"{oracle_ref}: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()


class ExchangePriceFeed(PriceFeed):
    """
    Feed reading last trade prices from a ccxt exchange.

    The oracle reference is a ccxt market symbol (e.g. "ETH/USDT"). Prices
    are reported with ``feed_decimals`` fractional digits.
    """

    def __init__(
        self,
        exchange_id: str = "binance",
        feed_decimals: int = 8,
        exchange: Any = None,
    ) -> None:
        """
        Initialize ExchangePriceFeed.

        Args:
            exchange_id: ccxt exchange id
            feed_decimals: Precision of reported prices
            exchange: Optional ccxt exchange instance
        """
        super().__init__(name=f"ExchangeFeed[{exchange_id}]")
        self.feed_decimals = feed_decimals
        self.exchange = exchange or getattr(ccxt, exchange_id)({'enableRateLimit': True})

    async def latest_price(self, oracle_ref: str) -> PriceReading:
        self.reads += 1
        try:
            ticker = await asyncio.to_thread(self.exchange.fetch_ticker, oracle_ref)
        except ccxt.BaseError as e:
            self.failures += 1
            log.warning(f"[{self.name}] {oracle_ref}: ticker failed: {e}")
            raise OracleError(f"{oracle_ref}: {e}") from e

        last = ticker.get('last')
        if last is None:
            self.failures += 1
            raise OracleError(f"{oracle_ref}: ticker has no last price")

        timestamp_ms = ticker.get('timestamp')
        observed_at = int(timestamp_ms // 1000) if timestamp_ms else int(time.time())

        return PriceReading(
            oracle_ref=oracle_ref,
            price=to_fixed(last, self.feed_decimals),
            feed_decimals=self.feed_decimals,
            observed_at=observed_at,
        )
