from typing import Dict, List, Optional
import structlog

from .config import ProtocolType, RiskLevel, RiskTolerance, MarketTrend
from .catalog import StrategyCatalog
from .models import (
    MarketSnapshot, RiskProfile, RiskQuestionnaire, Strategy, StrategyRecommendation
)
from .risk_engine import strategy_risk_score

logger = structlog.get_logger()

# Tolerance tier each strategy risk level belongs to
RISK_LEVEL_TIER = {
    RiskLevel.CONSERVATIVE: RiskTolerance.LOW,
    RiskLevel.MODERATE: RiskTolerance.MEDIUM,
    RiskLevel.AGGRESSIVE: RiskTolerance.HIGH,
    RiskLevel.EXPERIMENTAL: RiskTolerance.AGGRESSIVE,
}

ALLOWED_RISK_LEVELS = {
    RiskTolerance.LOW: {RiskLevel.CONSERVATIVE},
    RiskTolerance.MEDIUM: {RiskLevel.CONSERVATIVE, RiskLevel.MODERATE},
    RiskTolerance.HIGH: set(RiskLevel),
    RiskTolerance.AGGRESSIVE: set(RiskLevel),
}

VOLATILITY_TOLERANCE = {
    RiskTolerance.LOW: 3,
    RiskTolerance.MEDIUM: 5,
    RiskTolerance.HIGH: 7,
    RiskTolerance.AGGRESSIVE: 9,
}


def allocation_for_score(score: float) -> float:
    if score > 70:
        return 30.0
    if score > 50:
        return 20.0
    if score > 30:
        return 10.0
    return 5.0


def _apy_reason(apy: float) -> str:
    if apy > 30:
        return f"High potential returns with estimated APY of {apy:.2f}%"
    if apy > 15:
        return f"Solid potential returns with estimated APY of {apy:.2f}%"
    return f"Stable estimated returns of {apy:.2f}%"


def score_strategy(strategy: Strategy, profile: RiskProfile, market: MarketSnapshot,
                   mean_apy: float, prices: Optional[Dict[str, float]] = None) -> StrategyRecommendation:
    apy = strategy.estimated_apy
    score = apy
    reasons: List[str] = []
    is_lp = strategy.protocol_type == ProtocolType.LIQUIDITY_PROVIDING

    if RISK_LEVEL_TIER[strategy.risk_level] == profile.risk_tolerance:
        score += 20
        reasons.append(f"Risk level ({strategy.risk_level.value}) aligns well with your risk tolerance")

    reasons.append(_apy_reason(apy))

    if profile.liquidity_needs == "high":
        if strategy.protocol_type == ProtocolType.STAKING:
            score -= 10
        elif is_lp:
            score += 10

    if is_lp and market.trend == MarketTrend.BULL:
        score += 10
        reasons.append("Liquidity provision can capture upside in bullish markets")
    if strategy.protocol_type == ProtocolType.LENDING and market.trend == MarketTrend.BEAR:
        score += 15
        reasons.append("Lending strategies tend to perform well in bearish markets")

    if apy > mean_apy * 1.2:
        score += 10

    if strategy.protocol_type == ProtocolType.STAKING and profile.liquidity_needs == "low":
        reasons.append("Staking provides steady returns for long-term holders")
    if is_lp and profile.liquidity_needs == "high":
        reasons.append("Liquidity providing positions can be exited quickly which matches your need for high liquidity")

    if profile.investment_horizon == "long" and strategy.risk_level != RiskLevel.CONSERVATIVE:
        reasons.append("Higher risk strategy suitable for your long investment horizon")
    elif profile.investment_horizon == "short" and strategy.risk_level == RiskLevel.CONSERVATIVE:
        reasons.append("Conservative strategy aligns with your short investment horizon")

    if prices:
        symbol = strategy.tokens[0].symbol
        if symbol in prices:
            reasons.append(f"Current {symbol} price is ${prices[symbol]:.2f}")

    return StrategyRecommendation(
        strategy=strategy,
        match_score=max(0.0, min(100.0, score)),
        expected_return=apy,
        risk_score=strategy_risk_score(strategy),
        confidence=0.7 + (strategy.tvl / 1e9) * 0.2,
        recommended_allocation=allocation_for_score(score),
        reasons=reasons
    )


def recommend(catalog: StrategyCatalog, profile: RiskProfile, market: MarketSnapshot,
              prices: Optional[Dict[str, float]] = None) -> List[StrategyRecommendation]:
    """Rank the catalog's strategies that fit ``profile``, best match first"""
    allowed = ALLOWED_RISK_LEVELS[profile.risk_tolerance]
    mean_apy = catalog.mean_apy()

    recommendations = [
        score_strategy(strategy, profile, market, mean_apy, prices)
        for strategy in catalog.list()
        if strategy.risk_level in allowed
    ]
    recommendations.sort(key=lambda r: (-r.match_score, r.strategy.id))

    logger.info("Strategies recommended",
                risk_tolerance=profile.risk_tolerance.value,
                candidates=len(catalog), recommended=len(recommendations))
    return recommendations


def generate_risk_profile(answers: RiskQuestionnaire) -> RiskProfile:
    """Derive a risk profile from questionnaire answers; the first matching rule wins"""
    age = answers.age_group
    attitude = answers.risk_attitude

    if age == "60+" or attitude == "conservative":
        tolerance = RiskTolerance.LOW
    elif (age == "45-60" and attitude != "aggressive") or attitude == "moderate":
        tolerance = RiskTolerance.MEDIUM
    elif (age == "30-45" and attitude == "aggressive") or attitude == "growth-oriented":
        tolerance = RiskTolerance.HIGH
    else:
        tolerance = RiskTolerance.AGGRESSIVE

    if answers.time_horizon == "less_than_1_year":
        horizon = "short"
    elif answers.time_horizon == "1_to_3_years":
        horizon = "medium"
    else:
        horizon = "long"

    if answers.investment_experience in ("none", "beginner"):
        experience = "beginner"
    elif answers.investment_experience == "intermediate":
        experience = "intermediate"
    else:
        experience = "advanced"

    volatility = VOLATILITY_TOLERANCE[tolerance]
    if experience == "beginner":
        volatility = min(volatility, 6)
    elif experience == "advanced":
        volatility = max(volatility, 4)

    return RiskProfile(
        risk_tolerance=tolerance,
        investment_horizon=horizon,
        liquidity_needs=answers.liquidity_needs,
        volatility_tolerance=volatility,
        experience_level=experience
    )
