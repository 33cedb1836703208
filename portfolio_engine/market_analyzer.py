import asyncio
from typing import Dict, List, Optional
import structlog

from .config import Settings, MarketTrend
from .error_handling import InsufficientData
from .external_apis import PythHermesClient
from .models import MarketData, MarketSnapshot, PriceQuote, utcnow
from .protocol_adapters import AdapterRegistry

logger = structlog.get_logger()


def normalize_feed_id(feed_id: str) -> str:
    return feed_id.lower().removeprefix("0x")


class MarketConditionAnalyzer:
    """Builds a MarketSnapshot from oracle prices and protocol market data"""

    def __init__(self, oracle: PythHermesClient, registry: AdapterRegistry, settings: Settings):
        self.oracle = oracle
        self.registry = registry
        self.reference_asset = settings.REFERENCE_ASSET
        self.reference_feeds = dict(settings.REFERENCE_FEEDS)
        self.bull_threshold = settings.BULL_RATE_THRESHOLD
        self.bear_threshold = settings.BEAR_RATE_THRESHOLD
        self.timeout = settings.ADAPTER_TIMEOUT_SECONDS

    async def _prices(self) -> Dict[str, PriceQuote]:
        symbols = {normalize_feed_id(feed): symbol for symbol, feed in self.reference_feeds.items()}
        quotes = await asyncio.wait_for(
            self.oracle.get_latest_prices(list(self.reference_feeds.values())),
            timeout=self.timeout
        )
        priced = {}
        for quote in quotes:
            symbol = symbols.get(normalize_feed_id(quote.feed_id)) or quote.symbol
            if symbol and quote.price > 0:
                priced[symbol] = quote
        return priced

    async def _market_data(self) -> MarketData:
        adapters = self.registry.adapters()
        results = await asyncio.gather(
            *(asyncio.wait_for(adapter.get_market_data(), timeout=self.timeout) for adapter in adapters),
            return_exceptions=True
        )

        merged = MarketData()
        for adapter, result in zip(adapters, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning("Market data source failed",
                               platform=adapter.platform, error=str(result) or type(result).__name__)
                continue
            merged = merged.merge(result)
        return merged

    def trend_for(self, mean_supply_rate: Optional[float]) -> MarketTrend:
        if mean_supply_rate is None:
            return MarketTrend.NEUTRAL
        if mean_supply_rate > self.bull_threshold:
            return MarketTrend.BULL
        if mean_supply_rate < self.bear_threshold:
            return MarketTrend.BEAR
        return MarketTrend.NEUTRAL

    async def analyze(self) -> MarketSnapshot:
        prices_result, market = await asyncio.gather(
            self._prices(), self._market_data(), return_exceptions=True
        )

        if isinstance(prices_result, BaseException):
            logger.error("Reference prices unavailable", error=str(prices_result) or type(prices_result).__name__)
            raise InsufficientData(f"No price data for {self.reference_asset}") from prices_result
        if isinstance(market, BaseException):
            raise market

        reference = prices_result.get(self.reference_asset)
        if reference is None:
            raise InsufficientData(f"No price data for {self.reference_asset}")

        supply_rates: List[float] = [
            rate.supply
            for platform_rates in market.lending_rates.values()
            for rate in platform_rates.values()
        ]
        mean_rate = sum(supply_rates) / len(supply_rates) if supply_rates else None

        ratios = [quote.confidence / quote.price for quote in prices_result.values()]
        volatility = max(0.0, min(10.0, sum(ratios) / len(ratios) * 10))

        tvl = sum(
            pool.tvl
            for platform_pools in market.liquidity_pools.values()
            for pool in platform_pools.values()
        )

        snapshot = MarketSnapshot(
            reference_price=reference.price,
            trend=self.trend_for(mean_rate),
            volatility_index=volatility,
            interest_rate=mean_rate or 0.0,
            total_value_locked=tvl,
            timestamp=utcnow()
        )

        logger.info("Market snapshot computed",
                    trend=snapshot.trend.value,
                    volatility_index=round(volatility, 4),
                    reference_price=reference.price)
        return snapshot
