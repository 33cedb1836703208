import pytest
import asyncio
import os
from unittest.mock import AsyncMock, MagicMock
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

# Set test environment
os.environ["ENV"] = "test"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests
os.environ["MONITORING_INTERVAL_SECONDS"] = "1"
os.environ["ADAPTER_TIMEOUT_SECONDS"] = "0.5"
os.environ["RETRY_BASE_DELAY"] = "0"
os.environ["RETRY_MAX_DELAY"] = "0"

from portfolio_engine.config import (
    Settings, ProtocolType, RiskLevel, MarketTrend, SupportedPlatforms
)
from portfolio_engine.catalog import StrategyCatalog
from portfolio_engine.models import (
    MarketData, MarketSnapshot, Position, PriceQuote, ProtocolConfig, Strategy,
    SubPosition, TokenAllocation, TokenAmount, BorrowPosition
)
from portfolio_engine.notifications import NotificationSink
from portfolio_engine.protocol_adapters import ProtocolAdapter, AdapterRegistry
from portfolio_engine.aggregator import PositionAggregator
from portfolio_engine.market_analyzer import MarketConditionAnalyzer
from portfolio_engine.alert_engine import AlertEngine, AlertStore
from portfolio_engine.background_tasks import MonitoringTaskManager
from portfolio_engine.service import PortfolioService

WALLET = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
OTHER_WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


class FakeAdapter(ProtocolAdapter):
    """In-memory adapter with scripted results"""

    def __init__(self, platform: str, positions: Optional[List[Position]] = None,
                 error: Optional[Exception] = None, delay: float = 0.0,
                 apys: Optional[Dict[str, float]] = None,
                 market_data: Optional[MarketData] = None,
                 protocol_type: ProtocolType = ProtocolType.LENDING):
        submitter = MagicMock()
        submitter.submit = AsyncMock(return_value=f"sig-{platform}")
        super().__init__(submitter)
        self.platform = platform
        self.protocol_type = protocol_type
        self.positions = positions or []
        self.error = error
        self.delay = delay
        self.apys = apys or {}
        self.market_data = market_data or MarketData()
        self.position_calls = 0

    async def get_apy(self) -> Dict[str, float]:
        if self.error:
            raise self.error
        return dict(self.apys)

    async def get_user_positions(self, owner: str) -> List[Position]:
        self.position_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return list(self.positions)

    async def get_market_data(self) -> MarketData:
        if self.error:
            raise self.error
        return self.market_data


class FakeOracle:
    """Price oracle returning fixed quotes"""

    def __init__(self, quotes: Optional[List[PriceQuote]] = None, error: Optional[Exception] = None):
        self.quotes = quotes or []
        self.error = error
        self.calls = 0

    async def get_latest_prices(self, feed_ids: List[str]) -> List[PriceQuote]:
        self.calls += 1
        if self.error:
            raise self.error
        return [quote for quote in self.quotes if quote.feed_id in feed_ids]

    async def aclose(self):
        return None


class RecordingSink(NotificationSink):
    def __init__(self, error: Optional[Exception] = None, delay: float = 0.0):
        self.notifications = []
        self.error = error
        self.delay = delay

    async def notify(self, owner: str, title: str, message: str, severity: str):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        self.notifications.append({
            "owner": owner, "title": title, "message": message, "severity": severity
        })


@pytest.fixture
def sample_wallet_address():
    """Sample Solana wallet address for testing"""
    return WALLET


@pytest.fixture
def sample_headers(sample_wallet_address):
    """Sample headers for API requests"""
    return {"x-wallet-address": sample_wallet_address}


@pytest.fixture
def test_settings():
    return Settings(
        ADAPTER_TIMEOUT_SECONDS=0.5,
        NOTIFICATION_TIMEOUT_SECONDS=0.5,
        RETRY_MAX_ATTEMPTS=3,
        RETRY_BASE_DELAY=0,
        RETRY_MAX_DELAY=0,
        MONITORING_INTERVAL_SECONDS=1
    )


@pytest.fixture
def make_strategy():
    def _make(strategy_id: str = "lend-1",
              protocol_type: ProtocolType = ProtocolType.LENDING,
              risk_level: RiskLevel = RiskLevel.CONSERVATIVE,
              apy_bps: int = 1000,
              platform: str = SupportedPlatforms.SOLEND,
              tokens=(("USDC", 100),),
              **overrides) -> Strategy:
        return Strategy(
            id=strategy_id,
            name=overrides.pop("name", strategy_id.replace("-", " ").title()),
            protocol_type=protocol_type,
            risk_level=risk_level,
            tokens=[TokenAllocation(symbol=symbol, allocation=allocation) for symbol, allocation in tokens],
            estimated_apy_bps=apy_bps,
            protocol_config=ProtocolConfig(platform=platform),
            **overrides
        )
    return _make


@pytest.fixture
def lending_strategy(make_strategy):
    return make_strategy("lend-1", ProtocolType.LENDING, RiskLevel.CONSERVATIVE, 580,
                         tvl=4_500_000, fee_percentage=0.5, min_investment=100)


@pytest.fixture
def lp_strategy(make_strategy):
    return make_strategy("lp-1", ProtocolType.LIQUIDITY_PROVIDING, RiskLevel.AGGRESSIVE, 3450,
                         platform=SupportedPlatforms.RAYDIUM, tokens=(("SOL", 50), ("RAY", 50)),
                         tvl=1_250_000, fee_percentage=1.5, min_investment=500)


@pytest.fixture
def staking_strategy(make_strategy):
    return make_strategy("stake-1", ProtocolType.STAKING, RiskLevel.MODERATE, 720,
                         platform=SupportedPlatforms.MARINADE, tokens=(("MSOL", 100),),
                         tvl=8_000_000, min_investment=50)


@pytest.fixture
def catalog(lending_strategy, lp_strategy, staking_strategy):
    return StrategyCatalog([lending_strategy, lp_strategy, staking_strategy])


@pytest.fixture
def make_position():
    def _make(strategy_id: str = "lend-1", value: float = 1000.0, initial: Optional[float] = None,
              apy: float = 5.0, health_factor: Optional[float] = None,
              sub_type: str = "lending", tokens: Optional[List[TokenAmount]] = None,
              borrows: Optional[List[BorrowPosition]] = None, owner: str = WALLET,
              **overrides) -> Position:
        return Position(
            owner=owner,
            strategy_id=strategy_id,
            initial_investment=value if initial is None else initial,
            investment_value=value,
            apy=apy,
            positions=[SubPosition(
                protocol="test",
                type=sub_type,
                tokens=tokens or [TokenAmount(symbol="USDC", amount=value, value=value)],
                borrow_positions=borrows or [],
                health_factor=health_factor
            )],
            **overrides
        )
    return _make


@pytest.fixture
def make_snapshot():
    def _make(trend: MarketTrend = MarketTrend.NEUTRAL, volatility: float = 5.0,
              price: float = 150.0, rate: float = 3.0, tvl: float = 25_000_000) -> MarketSnapshot:
        return MarketSnapshot(
            reference_price=price,
            trend=trend,
            volatility_index=volatility,
            interest_rate=rate,
            total_value_locked=tvl
        )
    return _make


@pytest.fixture
def make_quote(test_settings):
    def _make(symbol: str, price: float, confidence: float = 0.1) -> PriceQuote:
        return PriceQuote(
            feed_id=test_settings.REFERENCE_FEEDS[symbol],
            symbol=symbol,
            price=price,
            confidence=confidence,
            timestamp=datetime.now(timezone.utc)
        )
    return _make


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def fake_oracle():
    return FakeOracle


@pytest.fixture
def recording_sink():
    return RecordingSink()


@pytest.fixture
def days_ago():
    now = datetime.now(timezone.utc).replace(hour=12, minute=0, second=0, microsecond=0)

    def _at(days: int) -> datetime:
        return now - timedelta(days=days)
    return _at


@pytest.fixture
def make_service(catalog, test_settings, recording_sink, make_quote):
    """PortfolioService wired from in-memory fakes"""
    def _make(adapters: Optional[List[ProtocolAdapter]] = None, oracle=None,
              tx_reader=None, price_history=None) -> PortfolioService:
        registry = AdapterRegistry(adapters or [])
        oracle = oracle or FakeOracle([make_quote("SOL", 150.0, 1.5), make_quote("BTC", 60_000.0, 60.0)])
        aggregator = PositionAggregator(registry, test_settings.ADAPTER_TIMEOUT_SECONDS)
        analyzer = MarketConditionAnalyzer(oracle, registry, test_settings)
        alert_store = AlertStore()
        alert_engine = AlertEngine(aggregator, analyzer, catalog, alert_store, recording_sink,
                                   notification_timeout=test_settings.NOTIFICATION_TIMEOUT_SECONDS)
        task_manager = MonitoringTaskManager(alert_engine, test_settings.MONITORING_INTERVAL_SECONDS)

        if tx_reader is None:
            tx_reader = MagicMock()
            tx_reader.get_transaction_history = AsyncMock(return_value=[])
        if price_history is None:
            price_history = MagicMock()
            price_history.get_price_history = AsyncMock(return_value=[])

        return PortfolioService(
            catalog=catalog,
            registry=registry,
            aggregator=aggregator,
            analyzer=analyzer,
            alert_store=alert_store,
            alert_engine=alert_engine,
            task_manager=task_manager,
            oracle=oracle,
            tx_reader=tx_reader,
            price_history=price_history,
            settings=test_settings,
            sink=recording_sink
        )
    return _make
