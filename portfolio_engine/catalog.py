import json
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import structlog

from .config import ProtocolType, RiskLevel, SupportedPlatforms, TOKEN_MINTS
from .error_handling import NotFound
from .models import Strategy, TokenAllocation, ProtocolConfig

logger = structlog.get_logger()


def _tokens(*pairs) -> List[TokenAllocation]:
    return [
        TokenAllocation(mint=TOKEN_MINTS.get(symbol, ""), symbol=symbol, allocation=allocation)
        for symbol, allocation in pairs
    ]


DEFAULT_STRATEGIES: List[Strategy] = [
    Strategy(
        id="lending-optimizer-conservative",
        name="Conservative Lending Optimizer",
        description="Supplies stablecoins and SOL to Solend reserves with a conservative collateral factor",
        protocol_type=ProtocolType.LENDING,
        risk_level=RiskLevel.CONSERVATIVE,
        tokens=_tokens(("USDC", 50), ("USDT", 30), ("SOL", 20)),
        estimated_apy_bps=580,
        tvl=4_500_000,
        fee_percentage=0.5,
        min_investment=100,
        protocol_config=ProtocolConfig(
            platform=SupportedPlatforms.SOLEND,
            collateral_factor=0.7
        ),
        tags=["lending", "stablecoin", "low-risk"],
        verified=True
    ),
    Strategy(
        id="marinade-liquid-staking",
        name="Marinade Liquid Staking",
        description="Stakes SOL through Marinade and holds auto-compounding mSOL",
        protocol_type=ProtocolType.STAKING,
        risk_level=RiskLevel.MODERATE,
        tokens=_tokens(("MSOL", 100)),
        estimated_apy_bps=720,
        tvl=8_000_000,
        fee_percentage=0.0,
        min_investment=50,
        protocol_config=ProtocolConfig(platform=SupportedPlatforms.MARINADE),
        tags=["staking", "sol"],
        verified=True
    ),
    Strategy(
        id="stablecoin-lp-optimizer",
        name="Stablecoin LP Optimizer",
        description="Provides USDC-USDT liquidity on Raydium",
        protocol_type=ProtocolType.LIQUIDITY_PROVIDING,
        risk_level=RiskLevel.CONSERVATIVE,
        tokens=_tokens(("USDC", 50), ("USDT", 50)),
        estimated_apy_bps=650,
        tvl=2_100_000,
        fee_percentage=0.3,
        min_investment=100,
        protocol_config=ProtocolConfig(
            platform=SupportedPlatforms.RAYDIUM,
            pool_address="2EXiumdi14E9b8Fy62QcA5Uh6WdHS2b38wtSxp72Mibj",
            lp_mint="As3EGgLtUVpdNpE6WCKauyNRrCCwcQ57trWQ3wyRXDa6",
            price_feeds={
                "USDC": "eaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
                "USDT": "2b89b9dc8fdf9f34709a5b106b472f0f39bb6ca9ce04b0fd7f2e971688e2e53b",
            },
            max_slippage=0.1
        ),
        tags=["liquidity", "stablecoin"],
        verified=True
    ),
    Strategy(
        id="multi-platform-yield-optimizer",
        name="Multi-Platform Yield Optimizer",
        description="Farms Raydium rewards across USDC, SOL and JUP pools and harvests twice a day",
        protocol_type=ProtocolType.YIELD_FARMING,
        risk_level=RiskLevel.MODERATE,
        tokens=_tokens(("USDC", 40), ("SOL", 30), ("JUP", 30)),
        estimated_apy_bps=1450,
        tvl=3_200_000,
        fee_percentage=1.0,
        min_investment=250,
        protocol_config=ProtocolConfig(
            platform=SupportedPlatforms.RAYDIUM,
            pool_address="RaYd1umP0o1nJY4nqPJz7vP9fzZDxzYceckJxTayNX9",
            harvest_frequency=43200,
            max_slippage=0.5
        ),
        tags=["yield", "farming", "multi-token"],
        verified=True
    ),
    Strategy(
        id="sol-ray-lp-aggressive",
        name="SOL-RAY Concentrated LP",
        description="Provides SOL-RAY liquidity on Raydium for trading fees and RAY emissions",
        protocol_type=ProtocolType.LIQUIDITY_PROVIDING,
        risk_level=RiskLevel.AGGRESSIVE,
        tokens=_tokens(("SOL", 50), ("RAY", 50)),
        estimated_apy_bps=3450,
        tvl=1_250_000,
        fee_percentage=1.5,
        min_investment=500,
        protocol_config=ProtocolConfig(
            platform=SupportedPlatforms.RAYDIUM,
            pool_address="AVs9TA4nWDzfPJE9gGVNJMVhcQy3V9PGazuz33BfG2RA",
            lp_mint="89ZKE4aoyfLBe2RuV6jM3JGNhaV18Nxh8eNtjRcndBip",
            price_feeds={
                "SOL": "ef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
                "RAY": "91568baa8beb53db23eb3fb7f22c6e8bd303d103919e19733f2bb642d3e7987a",
            },
            max_slippage=1.0
        ),
        tags=["liquidity", "high-yield"],
        verified=False
    ),
]


class StrategyCatalog:
    """In-memory strategy catalog keyed by strategy id"""

    def __init__(self, strategies: Optional[Iterable[Strategy]] = None):
        self._strategies: Dict[str, Strategy] = {}
        for strategy in DEFAULT_STRATEGIES if strategies is None else strategies:
            self.add(strategy)

    def add(self, strategy: Strategy):
        self._strategies[strategy.id] = strategy

    def list(self) -> List[Strategy]:
        return list(self._strategies.values())

    def get(self, strategy_id: str) -> Strategy:
        strategy = self._strategies.get(strategy_id)
        if strategy is None:
            raise NotFound(f"Strategy '{strategy_id}' not found")
        return strategy

    def find(self, strategy_id: str) -> Optional[Strategy]:
        return self._strategies.get(strategy_id)

    def __len__(self) -> int:
        return len(self._strategies)

    def __contains__(self, strategy_id: str) -> bool:
        return strategy_id in self._strategies

    def filter_strategies(
        self,
        protocol_type: Optional[ProtocolType] = None,
        risk_level: Optional[RiskLevel] = None,
        min_apy: Optional[float] = None,
        max_apy: Optional[float] = None,
        token: Optional[str] = None,
        verified_only: bool = False
    ) -> List[Strategy]:
        """Filter strategies; APY bounds are in percent"""
        results = []
        for strategy in self._strategies.values():
            if protocol_type and strategy.protocol_type != protocol_type:
                continue
            if risk_level and strategy.risk_level != risk_level:
                continue
            if min_apy is not None and strategy.estimated_apy < min_apy:
                continue
            if max_apy is not None and strategy.estimated_apy > max_apy:
                continue
            if token and not any(t.symbol.upper() == token.upper() for t in strategy.tokens):
                continue
            if verified_only and not strategy.verified:
                continue
            results.append(strategy)
        return results

    def trending(self, limit: int = 5) -> List[Strategy]:
        return sorted(self._strategies.values(), key=lambda s: s.tvl, reverse=True)[:limit]

    def mean_apy(self) -> float:
        if not self._strategies:
            return 0.0
        return sum(s.estimated_apy for s in self._strategies.values()) / len(self._strategies)

    def load_file(self, path: str) -> int:
        """Load a JSON list of strategies, replacing entries with the same id"""
        raw = json.loads(Path(path).read_text())
        if not isinstance(raw, list):
            raise ValueError(f"Strategy catalog {path} must contain a JSON list")

        loaded = 0
        for entry in raw:
            self.add(Strategy.model_validate(entry))
            loaded += 1

        logger.info("Strategy catalog loaded", path=path, strategies=loaded)
        return loaded
