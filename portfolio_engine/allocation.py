from typing import Callable, Dict, List, Optional, Tuple
import numpy as np

from .config import RiskLevel, RiskTolerance
from .models import RiskProfile, StrategyRecommendation

CONSERVATIVE_TIER = "conservative"
MODERATE_TIER = "moderate"
AGGRESSIVE_TIER = "aggressive"
TIERS = (CONSERVATIVE_TIER, MODERATE_TIER, AGGRESSIVE_TIER)

# Target percentage range per tier for each tolerance
TIER_RANGES: Dict[RiskTolerance, Dict[str, Tuple[float, float]]] = {
    RiskTolerance.LOW: {
        CONSERVATIVE_TIER: (50, 70), MODERATE_TIER: (20, 40), AGGRESSIVE_TIER: (0, 10)
    },
    RiskTolerance.MEDIUM: {
        CONSERVATIVE_TIER: (30, 50), MODERATE_TIER: (30, 50), AGGRESSIVE_TIER: (10, 20)
    },
    RiskTolerance.HIGH: {
        CONSERVATIVE_TIER: (10, 30), MODERATE_TIER: (30, 50), AGGRESSIVE_TIER: (20, 40)
    },
    RiskTolerance.AGGRESSIVE: {
        CONSERVATIVE_TIER: (0, 20), MODERATE_TIER: (20, 40), AGGRESSIVE_TIER: (30, 50)
    },
}

TIER_OF = {
    RiskLevel.CONSERVATIVE: CONSERVATIVE_TIER,
    RiskLevel.MODERATE: MODERATE_TIER,
    RiskLevel.AGGRESSIVE: AGGRESSIVE_TIER,
    RiskLevel.EXPERIMENTAL: AGGRESSIVE_TIER,
}

# A sampler picks one value from a (low, high) range
Sampler = Callable[[float, float], float]


def midpoint_sampler(low: float, high: float) -> float:
    return (low + high) / 2


class RandomRangeSampler:
    """Uniform sampler backed by numpy's Generator; seedable for reproducible runs"""

    def __init__(self, seed: Optional[int] = None):
        self.rng = np.random.default_rng(seed)

    def __call__(self, low: float, high: float) -> float:
        return float(self.rng.uniform(low, high))


def optimize(profile: RiskProfile, recommendations: List[StrategyRecommendation],
             sampler: Optional[Sampler] = None) -> Dict[str, float]:
    """Split 100% across recommended strategies by risk tier and match score.

    A tier without strategies keeps its share unallocated, so the result only
    sums to 100 when every tier is represented.
    """
    sampler = sampler or midpoint_sampler
    ranges = TIER_RANGES[profile.risk_tolerance]

    targets = {tier: sampler(*ranges[tier]) for tier in TIERS}
    total = sum(targets.values())
    if total > 0:
        targets = {tier: value / total * 100 for tier, value in targets.items()}
    else:
        targets = {tier: 100 / len(TIERS) for tier in TIERS}

    by_tier: Dict[str, List[StrategyRecommendation]] = {tier: [] for tier in TIERS}
    for recommendation in recommendations:
        by_tier[TIER_OF[recommendation.strategy.risk_level]].append(recommendation)

    allocation: Dict[str, float] = {}
    for tier, members in by_tier.items():
        if not members:
            continue
        score_total = sum(r.match_score for r in members)
        for recommendation in members:
            if score_total > 0:
                share = targets[tier] * recommendation.match_score / score_total
            else:
                share = targets[tier] / len(members)
            allocation[recommendation.strategy.id] = round(share, 4)

    return allocation
