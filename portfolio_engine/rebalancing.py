from typing import List, Tuple
import structlog

from .config import ProtocolType, RiskLevel, MarketTrend
from .catalog import StrategyCatalog
from .models import (
    MarketSnapshot, Position, RebalancingRecommendation, RecommendedChange, Strategy
)

logger = structlog.get_logger()

INCREASE = "increase"
DECREASE = "decrease"
MAINTAIN = "maintain"
EXIT = "exit"

URGENCY = {EXIT: "high", INCREASE: "medium"}


def decide(position: Position, strategy: Strategy, market: MarketSnapshot,
           position_ratio: float) -> Tuple[str, float, str]:
    """Decision table; the first matching row wins"""
    target_apy = strategy.estimated_apy

    if position.apy < target_apy * 0.7:
        if market.trend == MarketTrend.BEAR and strategy.risk_level != RiskLevel.CONSERVATIVE:
            return DECREASE, 50.0, "Underperforming in bear market, reduce exposure"
        if position.initial_investment and position.investment_value < position.initial_investment * 0.9:
            return EXIT, 100.0, "Significant underperformance, exit position"
        return DECREASE, 30.0, "Underperforming expected APY"

    if position.apy > target_apy * 1.2:
        if market.trend == MarketTrend.BULL and strategy.protocol_type == ProtocolType.LIQUIDITY_PROVIDING:
            return INCREASE, 30.0, "Outperforming in bull market, increase exposure"
        return MAINTAIN, 0.0, "Position performing well, maintain allocation"

    if position_ratio > 0.4:
        return DECREASE, 20.0, "Portfolio overexposed to this strategy"

    return MAINTAIN, 0.0, "Position performing well, maintain allocation"


def risk_impact(action: str, strategy: Strategy) -> int:
    high_risk = strategy.risk_level in (RiskLevel.AGGRESSIVE, RiskLevel.EXPERIMENTAL)
    if action == EXIT:
        return -5
    if action == INCREASE:
        return 1 if strategy.risk_level == RiskLevel.CONSERVATIVE else 3
    if action == DECREASE:
        return -3 if high_risk else -1
    return 0


def apy_delta(action: str, current_apy: float) -> float:
    if action == INCREASE:
        return current_apy * 0.10
    if action == DECREASE:
        return -current_apy * 0.05
    return 0.0


def advise(positions: List[Position], catalog: StrategyCatalog,
           market: MarketSnapshot) -> List[RebalancingRecommendation]:
    total_value = sum(p.investment_value for p in positions)
    recommendations = []

    for position in positions:
        strategy = catalog.find(position.strategy_id)
        if strategy is None:
            logger.warning("Skipping rebalancing for unknown strategy",
                           owner=position.owner, strategy_id=position.strategy_id)
            continue

        ratio = position.investment_value / total_value if total_value > 0 else 0.0
        position_return = (
            (position.investment_value - position.initial_investment) / position.initial_investment
            if position.initial_investment else 0.0
        )

        action, percentage, reason = decide(position, strategy, market, ratio)

        recommendations.append(RebalancingRecommendation(
            owner=position.owner,
            strategy_id=strategy.id,
            current_allocation=ratio * 100,
            position_return=position_return,
            recommended_change=RecommendedChange(action=action, percentage=percentage, reason=reason),
            potential_apy_delta=apy_delta(action, position.apy),
            risk_impact=risk_impact(action, strategy),
            estimated_fees=position.investment_value * strategy.fee_percentage / 100,
            urgency=URGENCY.get(action, "low")
        ))

    return recommendations
