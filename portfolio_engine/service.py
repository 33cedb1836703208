"""
Query/command facade over the portfolio engine.

Every collaborator is passed in explicitly; ``build_service`` wires the
production graph from settings.
"""
import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional
import structlog

from .config import Settings, SupportedPlatforms, TOKEN_MINTS
from .error_handling import (
    ErrorCollector, NotFound, InsufficientFunds, PortfolioEngineError,
    UpstreamUnavailable, call_with_retry
)
from .external_apis import (
    PythHermesClient, PythBenchmarksClient, SolanaRpcClient, SolendClient,
    MarinadeClient, ShyftClient, RelayTransactionSubmitter
)
from .models import (
    ActionParams, AggregationResult, CommandResponse, MarketSnapshot,
    PositionAnalytics, RebalancingRecommendation, RiskAlert, RiskProfile,
    RiskQuestionnaire, Strategy, StrategyRecommendation, utcnow
)
from .catalog import StrategyCatalog
from .protocol_adapters import (
    AdapterRegistry, ProtocolAdapter, LendingMarketAdapter, LiquidStakingAdapter,
    LiquidityPoolAdapter
)
from .aggregator import PositionAggregator
from .market_analyzer import MarketConditionAnalyzer, normalize_feed_id
from .alert_engine import AlertStore, AlertEngine
from .background_tasks import MonitoringTaskManager
from .notifications import NotificationSink, LoggingNotificationSink, WebhookNotificationSink
from .recommendation import recommend, generate_risk_profile
from .allocation import optimize, midpoint_sampler, RandomRangeSampler, Sampler
from .rebalancing import advise
from .analytics import analyze_position
from .risk_engine import concentration_index

logger = structlog.get_logger()


class PortfolioService:
    def __init__(
        self,
        catalog: StrategyCatalog,
        registry: AdapterRegistry,
        aggregator: PositionAggregator,
        analyzer: MarketConditionAnalyzer,
        alert_store: AlertStore,
        alert_engine: AlertEngine,
        task_manager: MonitoringTaskManager,
        oracle: PythHermesClient,
        tx_reader: SolanaRpcClient,
        price_history: PythBenchmarksClient,
        settings: Settings,
        sink: Optional[NotificationSink] = None,
        error_collector: Optional[ErrorCollector] = None,
        sampler: Optional[Sampler] = None,
        clock: Callable[[], datetime] = utcnow,
        closeables: Optional[List[Any]] = None
    ):
        self.catalog = catalog
        self.registry = registry
        self.aggregator = aggregator
        self.analyzer = analyzer
        self.alert_store = alert_store
        self.alert_engine = alert_engine
        self.task_manager = task_manager
        self.oracle = oracle
        self.tx_reader = tx_reader
        self.price_history = price_history
        self.settings = settings
        self.sink = sink
        self.error_collector = error_collector or ErrorCollector()
        self.sampler = sampler or midpoint_sampler
        self.clock = clock
        self.started_at = clock()
        self._closeables = closeables or []
        self._last_apys: Dict[str, Dict[str, float]] = {}

    # Queries

    def get_strategies(self, **filters) -> List[Strategy]:
        """Catalog strategies, narrowed by any of ``StrategyCatalog.filter_strategies``' filters"""
        return self.catalog.filter_strategies(**filters)

    def get_trending_strategies(self, limit: int = 5) -> List[Strategy]:
        return self.catalog.trending(limit)

    def get_strategy(self, strategy_id: str) -> Strategy:
        return self.catalog.get(strategy_id)

    async def get_user_positions(self, owner: str) -> AggregationResult:
        return await self.aggregator.aggregate(owner)

    async def get_market_snapshot(self) -> MarketSnapshot:
        return await self.analyzer.analyze()

    async def get_live_prices(self) -> Dict[str, float]:
        """Reference-token prices keyed by symbol; empty when the oracle does not answer"""
        feeds = self.settings.REFERENCE_FEEDS
        symbols = {normalize_feed_id(feed_id): symbol for symbol, feed_id in feeds.items()}
        try:
            quotes = await asyncio.wait_for(
                self.oracle.get_latest_prices(list(feeds.values())),
                timeout=self.settings.ADAPTER_TIMEOUT_SECONDS
            )
        except (PortfolioEngineError, asyncio.TimeoutError) as e:
            logger.warning("Live prices unavailable", error=str(e) or type(e).__name__)
            return {}

        return {
            symbols[normalize_feed_id(quote.feed_id)]: quote.price
            for quote in quotes if normalize_feed_id(quote.feed_id) in symbols
        }

    async def recommend_strategies(self, profile: RiskProfile) -> List[StrategyRecommendation]:
        market, prices = await asyncio.gather(self.analyzer.analyze(), self.get_live_prices())
        return recommend(self.catalog, profile, market, prices)

    async def optimize_allocation(
        self,
        profile: RiskProfile,
        recommendations: Optional[List[StrategyRecommendation]] = None
    ) -> Dict[str, float]:
        if recommendations is None:
            recommendations = await self.recommend_strategies(profile)
        return optimize(profile, recommendations, self.sampler)

    async def advise_rebalancing(self, owner: str) -> List[RebalancingRecommendation]:
        aggregation, market = await asyncio.gather(
            self.aggregator.aggregate(owner),
            self.analyzer.analyze()
        )
        return advise(aggregation.positions, self.catalog, market)

    def _mint_symbols(self, strategy: Optional[Strategy], symbols: List[str]) -> Dict[str, str]:
        """Mints decoded from history, limited to the position's own tokens"""
        mint_symbols = {mint: symbol for symbol, mint in TOKEN_MINTS.items() if symbol in symbols}
        if strategy:
            mint_symbols.update({t.mint: t.symbol for t in strategy.tokens if t.mint and t.symbol in symbols})
        return mint_symbols

    async def analyze_position(self, owner: str, strategy_id: str) -> PositionAnalytics:
        aggregation = await self.aggregator.aggregate(owner)
        position = next((p for p in aggregation.positions if p.strategy_id == strategy_id), None)
        if position is None:
            raise NotFound(f"No position in strategy '{strategy_id}' for {owner}")

        strategy = self.catalog.find(strategy_id)
        symbols = sorted(set(position.held_amounts()) | set(position.borrowed_amounts()))
        transactions = await self.tx_reader.get_transaction_history(owner, self._mint_symbols(strategy, symbols))

        end = self.clock()
        start = min([position.created_at] + [tx.timestamp for tx in transactions]) - timedelta(days=1)

        histories = await asyncio.gather(
            *(self.price_history.get_price_history(symbol, start, end) for symbol in symbols),
            return_exceptions=True
        )

        historical_prices = {}
        for symbol, history in zip(symbols, histories):
            if isinstance(history, Exception):
                logger.warning("Price history unavailable", symbol=symbol, error=str(history))
                continue
            historical_prices[symbol] = history

        return analyze_position(position, transactions, historical_prices)

    async def get_alerts(self, owner: str) -> List[RiskAlert]:
        return await self.alert_store.get_alerts(owner)

    async def get_unread_alert_count(self, owner: str) -> int:
        return await self.alert_store.unread_count(owner)

    async def _adapter_apy(self, adapter: ProtocolAdapter) -> Dict[str, float]:
        try:
            apys = await call_with_retry(
                adapter.get_apy,
                attempts=self.settings.RETRY_MAX_ATTEMPTS,
                base_delay=self.settings.RETRY_BASE_DELAY,
                max_delay=self.settings.RETRY_MAX_DELAY
            )
        except UpstreamUnavailable as e:
            logger.warning("Using last known APY", platform=adapter.platform, error=str(e))
            return self._last_apys.get(adapter.platform, {})

        self._last_apys[adapter.platform] = apys
        return apys

    async def get_live_apys(self) -> Dict[str, Dict[str, float]]:
        adapters = self.registry.adapters()
        results = await asyncio.gather(*(self._adapter_apy(adapter) for adapter in adapters))
        return {adapter.platform: apys for adapter, apys in zip(adapters, results)}

    def assess_risk_profile(self, questionnaire: RiskQuestionnaire) -> RiskProfile:
        return generate_risk_profile(questionnaire)

    async def get_monitoring_status(self, owner: Optional[str] = None) -> Dict[str, Any]:
        status: Dict[str, Any] = {
            "status": "healthy",
            "uptime_seconds": int((self.clock() - self.started_at).total_seconds()),
            "monitored_owners": len(self.task_manager.monitored_owners()),
            "platforms": self.registry.platforms(),
            "strategies": len(self.catalog),
            "interval_seconds": self.task_manager.interval,
            "errors": self.error_collector.get_error_summary(hours=24)
        }

        if owner:
            aggregation = await self.aggregator.aggregate(owner)
            last_cycle = self.task_manager.last_cycle_at(owner)
            status["owner"] = {
                "owner": owner,
                "monitoring": self.task_manager.is_monitoring(owner),
                "last_cycle": last_cycle.isoformat() if last_cycle else None,
                "unread_alerts": await self.alert_store.unread_count(owner),
                "positions": len(aggregation.positions),
                "concentration_index": concentration_index(aggregation.positions),
                "partial": aggregation.partial
            }

        return status

    # Commands

    async def subscribe(self, owner: str, strategy_id: str, params: ActionParams) -> CommandResponse:
        strategy = self.catalog.get(strategy_id)
        amount = params.amount or 0.0
        if amount < strategy.min_investment:
            raise InsufficientFunds(
                f"Minimum investment for {strategy.name} is {strategy.min_investment}, got {amount}"
            )
        adapter = self.registry.for_strategy(strategy)
        signature = await adapter.execute_deposit(owner, strategy, params)
        return CommandResponse(strategy_id=strategy_id, action="subscribe", transaction=signature)

    async def unsubscribe(self, owner: str, strategy_id: str, params: ActionParams) -> CommandResponse:
        strategy = self.catalog.get(strategy_id)
        signature = await self.registry.for_strategy(strategy).execute_withdraw(owner, strategy, params)
        return CommandResponse(strategy_id=strategy_id, action="unsubscribe", transaction=signature)

    async def harvest(self, owner: str, strategy_id: str, params: ActionParams) -> CommandResponse:
        strategy = self.catalog.get(strategy_id)
        signature = await self.registry.for_strategy(strategy).execute_harvest(owner, strategy, params)
        return CommandResponse(strategy_id=strategy_id, action="harvest", transaction=signature)

    async def rebalance(self, owner: str, strategy_id: str, params: ActionParams) -> CommandResponse:
        strategy = self.catalog.get(strategy_id)
        signature = await self.registry.for_strategy(strategy).execute_rebalance(owner, strategy, params)
        return CommandResponse(strategy_id=strategy_id, action="rebalance", transaction=signature)

    async def start_monitoring(self, owner: str):
        await self.task_manager.start_monitoring(owner)

    async def stop_monitoring(self, owner: str) -> bool:
        return await self.task_manager.stop_monitoring(owner)

    async def mark_alert_read(self, owner: str, alert_id: str) -> bool:
        return await self.alert_store.mark_read(owner, alert_id)

    async def clear_alerts(self, owner: str) -> int:
        return await self.alert_store.clear(owner)

    async def shutdown(self):
        await self.task_manager.stop_all()
        await self.registry.aclose()
        for closeable in self._closeables:
            try:
                await closeable.aclose()
            except Exception as e:
                logger.warning("Error closing client", client=type(closeable).__name__, error=str(e))
        logger.info("Portfolio service shut down")


def _strategy_id_for(catalog: StrategyCatalog, platform: str, default: str) -> str:
    for strategy in catalog.list():
        if strategy.platform == platform:
            return strategy.id
    return default


def build_service(settings: Settings) -> PortfolioService:
    """Wire the production object graph"""
    catalog = StrategyCatalog()
    if settings.STRATEGY_CATALOG_PATH:
        catalog.load_file(settings.STRATEGY_CATALOG_PATH)

    feed_symbols = {feed_id: symbol for symbol, feed_id in settings.REFERENCE_FEEDS.items()}
    for strategy in catalog.list():
        for symbol, feed_id in strategy.protocol_config.price_feeds.items():
            feed_symbols.setdefault(feed_id, symbol)

    oracle = PythHermesClient(feed_symbols, settings.PYTH_HERMES_URL)
    price_history = PythBenchmarksClient(settings.PYTH_BENCHMARKS_URL)
    rpc = SolanaRpcClient(settings.SOLANA_RPC_URL)
    submitter = RelayTransactionSubmitter(settings.TX_RELAY_URL)

    registry = AdapterRegistry([
        LendingMarketAdapter(
            submitter,
            SolendClient(settings.SOLEND_API_BASE),
            strategy_id=_strategy_id_for(catalog, SupportedPlatforms.SOLEND, "lending-optimizer-conservative")
        ),
        LiquidStakingAdapter(
            submitter,
            MarinadeClient(settings.MARINADE_API_BASE),
            rpc,
            oracle,
            sol_feed_id=settings.REFERENCE_FEEDS["SOL"],
            strategy_id=_strategy_id_for(catalog, SupportedPlatforms.MARINADE, "marinade-liquid-staking")
        ),
        LiquidityPoolAdapter(
            submitter,
            ShyftClient(settings.SHYFT_API_KEY, settings.SHYFT_API_BASE),
            rpc,
            oracle,
            [s for s in catalog.list() if s.platform == SupportedPlatforms.RAYDIUM]
        ),
    ])

    if settings.NOTIFICATION_WEBHOOK_URL:
        sink: NotificationSink = WebhookNotificationSink(
            settings.NOTIFICATION_WEBHOOK_URL, timeout=settings.NOTIFICATION_TIMEOUT_SECONDS
        )
    else:
        sink = LoggingNotificationSink()

    error_collector = ErrorCollector()
    aggregator = PositionAggregator(registry, settings.ADAPTER_TIMEOUT_SECONDS, error_collector)
    analyzer = MarketConditionAnalyzer(oracle, registry, settings)
    alert_store = AlertStore()
    alert_engine = AlertEngine(
        aggregator, analyzer, catalog, alert_store, sink,
        notification_timeout=settings.NOTIFICATION_TIMEOUT_SECONDS
    )
    task_manager = MonitoringTaskManager(alert_engine, settings.MONITORING_INTERVAL_SECONDS)

    sampler = RandomRangeSampler(settings.ALLOCATION_SEED) if settings.ALLOCATION_SEED is not None else midpoint_sampler

    logger.info("Portfolio service built",
                platforms=registry.platforms(), strategies=len(catalog))

    return PortfolioService(
        catalog=catalog,
        registry=registry,
        aggregator=aggregator,
        analyzer=analyzer,
        alert_store=alert_store,
        alert_engine=alert_engine,
        task_manager=task_manager,
        oracle=oracle,
        tx_reader=rpc,
        price_history=price_history,
        settings=settings,
        sink=sink,
        error_collector=error_collector,
        sampler=sampler,
        closeables=[oracle, price_history, rpc, submitter, sink]
    )
