"""
Risk alerting: an owner-partitioned alert store and the per-cycle engine that
turns positions and a market snapshot into deduplicated alerts.
"""
import asyncio
import uuid
from typing import Callable, Dict, List, Optional
from datetime import datetime
import structlog

from .config import (
    AlertThresholds, AlertType, NotificationLevel, ProtocolType, RiskLevel,
    RiskSeverity, MarketTrend
)
from .models import (
    AlertAction, MarketSnapshot, Position, PositionRiskMetrics, RiskAlert,
    Strategy, utcnow
)
from .aggregator import PositionAggregator
from .catalog import StrategyCatalog
from .market_analyzer import MarketConditionAnalyzer
from .notifications import NotificationSink
from .risk_engine import compute_risk_metrics

logger = structlog.get_logger()

CONCENTRATION = "concentration"

ALERT_TITLES = {
    AlertType.LIQUIDATION: "Liquidation Risk",
    AlertType.IMPERMANENT_LOSS: "Impermanent Loss Risk",
    AlertType.PROTOCOL_RISK: "Protocol Risk",
    AlertType.MARKET_VOLATILITY: "Market Volatility Risk",
    AlertType.POSITION_DECLINE: "Position Decline",
}


class AlertStore:
    """Alerts partitioned by owner, with one lock per owner.

    Every mutation for an owner happens under that owner's lock, and no
    network I/O is awaited while it is held.
    """

    def __init__(self):
        self._alerts: Dict[str, List[RiskAlert]] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, owner: str) -> asyncio.Lock:
        lock = self._locks.get(owner)
        if lock is None:
            lock = self._locks[owner] = asyncio.Lock()
        return lock

    async def add_or_suppress(self, owner: str, alert: RiskAlert) -> Optional[RiskAlert]:
        """Store ``alert`` unless an unread alert with the same key exists.

        A strictly more severe duplicate escalates the unread alert in place.
        Returns the created or escalated alert, or None when suppressed.
        """
        async with self._lock(owner):
            alerts = self._alerts.setdefault(owner, [])
            existing = next(
                (a for a in alerts if not a.read and a.dedup_key == alert.dedup_key),
                None
            )

            if existing is None:
                alerts.append(alert)
                return alert

            if alert.severity.rank > existing.severity.rank:
                logger.info("Escalating alert", owner=owner, alert_id=existing.id,
                            from_severity=existing.severity.value, to_severity=alert.severity.value)
                existing.severity = alert.severity
                existing.message = alert.message
                existing.details = alert.details
                existing.timestamp = alert.timestamp
                return existing

            return None

    async def get_alerts(self, owner: str) -> List[RiskAlert]:
        if owner not in self._alerts:
            return []
        async with self._lock(owner):
            alerts = list(self._alerts.get(owner, []))
        return sorted(alerts, key=lambda a: a.timestamp, reverse=True)

    async def mark_read(self, owner: str, alert_id: str) -> bool:
        if owner not in self._alerts:
            return False
        async with self._lock(owner):
            for alert in self._alerts.get(owner, []):
                if alert.id == alert_id:
                    if alert.read:
                        return False
                    alert.read = True
                    return True
        return False

    async def unread_count(self, owner: str) -> int:
        if owner not in self._alerts:
            return 0
        async with self._lock(owner):
            return sum(1 for alert in self._alerts.get(owner, []) if not alert.read)

    async def clear(self, owner: str) -> int:
        lock = self._lock(owner)
        async with lock:
            removed = len(self._alerts.pop(owner, []))
        if owner not in self._alerts and not lock.locked():
            self._locks.pop(owner, None)
        return removed


def notification_level(alert: RiskAlert) -> str:
    if alert.severity == RiskSeverity.CRITICAL:
        return NotificationLevel.ERROR
    if alert.details.get("risk_type") == CONCENTRATION:
        return NotificationLevel.INFO
    return NotificationLevel.WARNING


def notification_title(alert: RiskAlert) -> str:
    if alert.details.get("risk_type") == CONCENTRATION:
        return "Concentration Risk"
    return ALERT_TITLES[alert.type]


class AlertEngine:
    """Runs one monitoring cycle for an owner"""

    def __init__(
        self,
        aggregator: PositionAggregator,
        analyzer: MarketConditionAnalyzer,
        catalog: StrategyCatalog,
        store: AlertStore,
        sink: NotificationSink,
        notification_timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow
    ):
        self.aggregator = aggregator
        self.analyzer = analyzer
        self.catalog = catalog
        self.store = store
        self.sink = sink
        self.notification_timeout = notification_timeout
        self.clock = clock

    def _alert(self, owner: str, alert_type: AlertType, severity: RiskSeverity, message: str,
               strategy_id: Optional[str] = None, position_id: Optional[str] = None,
               details: Optional[Dict] = None, actions: Optional[List[tuple]] = None) -> RiskAlert:
        return RiskAlert(
            id=f"{alert_type.value}_{strategy_id or 'portfolio'}_{uuid.uuid4().hex}",
            owner=owner,
            timestamp=self.clock(),
            severity=severity,
            type=alert_type,
            message=message,
            position_id=position_id,
            strategy_id=strategy_id,
            details=details or {},
            actions=[AlertAction(label=label, action=action) for label, action in actions or []]
        )

    def _position_alerts(self, owner: str, position: Position, strategy: Strategy,
                         metrics: PositionRiskMetrics, market: MarketSnapshot) -> List[RiskAlert]:
        alerts = []

        hf = metrics.health_factor
        if strategy.protocol_type == ProtocolType.LENDING and hf < AlertThresholds.LIQUIDATION_WARNING:
            if hf < AlertThresholds.LIQUIDATION_CRITICAL:
                severity = RiskSeverity.CRITICAL
            elif hf < AlertThresholds.LIQUIDATION_HIGH:
                severity = RiskSeverity.HIGH
            else:
                severity = RiskSeverity.MEDIUM
            alerts.append(self._alert(
                owner, AlertType.LIQUIDATION, severity,
                f"Liquidation risk detected in {strategy.name} position. Health factor: {hf:.2f}",
                strategy_id=strategy.id, position_id=position.position_id,
                details={"health_factor": hf, "platform": position.platform},
                actions=[("Add Collateral", "add_collateral"), ("Reduce Debt", "reduce_debt")]
            ))

        il_risk = metrics.impermanent_loss_risk
        if (strategy.protocol_type == ProtocolType.LIQUIDITY_PROVIDING
                and il_risk > AlertThresholds.IL_RISK_TRIGGER
                and market.volatility_index > AlertThresholds.IL_VOLATILITY_TRIGGER):
            severity = RiskSeverity.HIGH if il_risk > AlertThresholds.IL_RISK_HIGH else RiskSeverity.MEDIUM
            alerts.append(self._alert(
                owner, AlertType.IMPERMANENT_LOSS, severity,
                f"High risk of impermanent loss detected in {strategy.name} position due to increased market volatility.",
                strategy_id=strategy.id, position_id=position.position_id,
                details={"impermanent_loss_risk": il_risk, "volatility_index": market.volatility_index},
                actions=[("Reduce Exposure", "reduce_exposure"), ("Rebalance Position", "rebalance_position")]
            ))

        if position.initial_investment:
            change = (position.investment_value - position.initial_investment) / position.initial_investment
            if change < AlertThresholds.DECLINE_TRIGGER:
                severity = RiskSeverity.HIGH if change < AlertThresholds.DECLINE_HIGH else RiskSeverity.MEDIUM
                alerts.append(self._alert(
                    owner, AlertType.POSITION_DECLINE, severity,
                    f"Your position in {strategy.name} has declined by {abs(change * 100):.1f}% from initial investment.",
                    strategy_id=strategy.id, position_id=position.position_id,
                    details={
                        "initial_value": position.initial_investment,
                        "current_value": position.investment_value,
                        "change": change
                    },
                    actions=[("Analyze Performance", "analyze_performance"), ("Exit Position", "exit_position")]
                ))

        return alerts

    def _portfolio_alerts(self, owner: str, resolved: List[tuple], total_value: float,
                          market: MarketSnapshot) -> List[RiskAlert]:
        if total_value <= 0:
            return []

        alerts = []
        for position, strategy in resolved:
            share = position.investment_value / total_value
            if share > AlertThresholds.CONCENTRATION_SHARE:
                alerts.append(self._alert(
                    owner, AlertType.PROTOCOL_RISK, RiskSeverity.MEDIUM,
                    f"High concentration risk: {share * 100:.1f}% of your portfolio is in {strategy.name}.",
                    strategy_id=strategy.id, position_id=position.position_id,
                    details={"risk_type": CONCENTRATION, "percentage": share * 100},
                    actions=[("View Diversification", "view_diversification"),
                             ("Rebalance Portfolio", "rebalance_portfolio")]
                ))

        if market.volatility_index > AlertThresholds.MARKET_VOLATILITY_TRIGGER and market.trend == MarketTrend.BEAR:
            high_risk_value = sum(
                position.investment_value for position, strategy in resolved
                if strategy.risk_level in (RiskLevel.AGGRESSIVE, RiskLevel.EXPERIMENTAL)
            )
            share = high_risk_value / total_value
            if share > AlertThresholds.HIGH_RISK_EXPOSURE_SHARE:
                alerts.append(self._alert(
                    owner, AlertType.MARKET_VOLATILITY, RiskSeverity.HIGH,
                    f"High market volatility detected. {share * 100:.1f}% of your portfolio is in high-risk strategies.",
                    details={"volatility_index": market.volatility_index, "high_risk_percentage": share * 100},
                    actions=[("Reduce Risk", "reduce_risk"), ("View Safe Havens", "view_safe_havens")]
                ))

        return alerts

    def evaluate(self, owner: str, positions: List[Position], market: MarketSnapshot) -> List[RiskAlert]:
        """Candidate alerts for one owner, before deduplication"""
        alerts: List[RiskAlert] = []
        resolved = []

        for position in positions:
            strategy = self.catalog.find(position.strategy_id)
            if strategy is None:
                logger.warning("Strategy not found for position",
                               owner=owner, strategy_id=position.strategy_id)
                continue
            resolved.append((position, strategy))
            metrics = compute_risk_metrics(position, strategy, market)
            alerts.extend(self._position_alerts(owner, position, strategy, metrics, market))

        total_value = sum(position.investment_value for position in positions)
        alerts.extend(self._portfolio_alerts(owner, resolved, total_value, market))
        return alerts

    async def _notify(self, owner: str, alert: RiskAlert):
        try:
            await asyncio.wait_for(
                self.sink.notify(owner, notification_title(alert), alert.message, notification_level(alert)),
                timeout=self.notification_timeout
            )
        except Exception as e:
            logger.warning("Notification sink failed", owner=owner, alert_id=alert.id,
                           error=str(e) or type(e).__name__)

    async def run_cycle(self, owner: str) -> List[RiskAlert]:
        """Run one monitoring cycle; returns the alerts created or escalated"""
        aggregation, market = await asyncio.gather(
            self.aggregator.aggregate(owner),
            self.analyzer.analyze(),
            return_exceptions=True
        )

        if isinstance(market, BaseException):
            if isinstance(market, asyncio.CancelledError):
                raise market
            logger.warning("Skipping monitoring cycle, market snapshot unavailable",
                           owner=owner, error=str(market))
            return []
        if isinstance(aggregation, BaseException):
            raise aggregation
        if aggregation.all_failed:
            logger.warning("Skipping monitoring cycle, every adapter failed",
                           owner=owner, failures=len(aggregation.failures))
            return []
        if aggregation.partial:
            logger.warning("Monitoring with partial positions", owner=owner,
                           failed_platforms=[f.platform for f in aggregation.failures])

        emitted = []
        for candidate in self.evaluate(owner, aggregation.positions, market):
            stored = await self.store.add_or_suppress(owner, candidate)
            if stored is None:
                continue
            emitted.append(stored)
            await self._notify(owner, stored)

        logger.info("Monitoring cycle completed", owner=owner,
                    positions=len(aggregation.positions), alerts=len(emitted))
        return emitted
