from typing import Dict, List

from .config import ProtocolType, RiskLevel, MarketTrend
from .models import Position, Strategy, MarketSnapshot, PositionRiskMetrics

# Per-risk-level bases
SYNTHETIC_HEALTH_BASE = {
    RiskLevel.CONSERVATIVE: 2.0,
    RiskLevel.MODERATE: 1.7,
    RiskLevel.AGGRESSIVE: 1.4,
    RiskLevel.EXPERIMENTAL: 1.2,
}
VOLATILITY_EXPOSURE_BASE = {
    RiskLevel.CONSERVATIVE: 2.0,
    RiskLevel.MODERATE: 5.0,
    RiskLevel.AGGRESSIVE: 7.0,
    RiskLevel.EXPERIMENTAL: 9.0,
}
IMPERMANENT_LOSS_BASE = {
    RiskLevel.CONSERVATIVE: 3.0,
    RiskLevel.MODERATE: 5.0,
    RiskLevel.AGGRESSIVE: 7.0,
    RiskLevel.EXPERIMENTAL: 8.0,
}
STRATEGY_RISK_BASE = {
    RiskLevel.CONSERVATIVE: 2,
    RiskLevel.MODERATE: 5,
    RiskLevel.AGGRESSIVE: 7,
    RiskLevel.EXPERIMENTAL: 7,
}

HEALTHY_FACTOR = 2.0
HEALTH_FACTOR_FLOOR = 0.95
CONCENTRATION_RISK = 5.0
PROTOCOL_RISK = 4.0


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def health_factor(position: Position, strategy: Strategy, market: MarketSnapshot) -> float:
    """Lowest reported lending health factor, or a synthesized one.

    Reported values below 1.0 pass through untouched; only the synthesized
    estimate is floored.
    """
    if strategy.protocol_type != ProtocolType.LENDING:
        return HEALTHY_FACTOR

    reported = [
        sub.health_factor for sub in position.positions
        if sub.type == "lending" and sub.health_factor is not None
    ]
    if reported:
        return min(reported)

    synthesized = SYNTHETIC_HEALTH_BASE[strategy.risk_level]
    if market.volatility_index > 7:
        synthesized -= 0.3
    elif market.volatility_index > 5:
        synthesized -= 0.15
    return max(HEALTH_FACTOR_FLOOR, synthesized)


def volatility_exposure(strategy: Strategy, market: MarketSnapshot) -> float:
    base = VOLATILITY_EXPOSURE_BASE[strategy.risk_level]
    return clamp(base + (market.volatility_index - 5) * 0.2, 0.0, 10.0)


def impermanent_loss_risk(strategy: Strategy, market: MarketSnapshot) -> float:
    if strategy.protocol_type != ProtocolType.LIQUIDITY_PROVIDING:
        return 0.0

    risk = IMPERMANENT_LOSS_BASE[strategy.risk_level] + (market.volatility_index - 5) * 0.4
    # Sharp moves in either direction stress the pool
    if market.trend in (MarketTrend.BULL, MarketTrend.BEAR):
        risk += 1
    return clamp(risk, 0.0, 10.0)


def compute_risk_metrics(position: Position, strategy: Strategy,
                         market: MarketSnapshot) -> PositionRiskMetrics:
    """Derive the risk metrics of one position. Pure and deterministic."""
    hf = health_factor(position, strategy, market)
    ve = volatility_exposure(strategy, market)
    il = impermanent_loss_risk(strategy, market)

    overall = clamp(
        20 * (2 - hf) + ve * 3 + il * 2 + CONCENTRATION_RISK * 2 + PROTOCOL_RISK * 3,
        0.0, 100.0
    )

    return PositionRiskMetrics(
        health_factor=hf,
        volatility_exposure=ve,
        impermanent_loss_risk=il,
        concentration_risk=CONCENTRATION_RISK,
        protocol_risk=PROTOCOL_RISK,
        overall_risk_score=overall
    )


def strategy_risk_score(strategy: Strategy) -> int:
    """1-10 score shown alongside recommendations"""
    score = STRATEGY_RISK_BASE[strategy.risk_level]
    if strategy.protocol_type == ProtocolType.YIELD_FARMING:
        score += 1
    elif strategy.protocol_type == ProtocolType.LENDING:
        score -= 1
    if strategy.estimated_apy > 50:
        score += 1
    return int(clamp(score, 1, 10))


def portfolio_weights(positions: List[Position]) -> Dict[str, float]:
    """Share of total value per position id; all zero when the portfolio is empty"""
    total = sum(p.investment_value for p in positions)
    weights: Dict[str, float] = {}
    for position in positions:
        share = position.investment_value / total if total > 0 else 0.0
        weights[position.position_id] = weights.get(position.position_id, 0.0) + share
    return weights


def concentration_index(positions: List[Position]) -> float:
    """Herfindahl index of position weights, 0 for an empty portfolio and 1 for a single position"""
    return sum(weight ** 2 for weight in portfolio_weights(positions).values())
