from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime, date, timezone

from .config import (
    ProtocolType, RiskLevel, RiskTolerance, MarketTrend, RiskSeverity, AlertType
)

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# Strategy Models
class TokenAllocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    mint: str = ""
    symbol: str
    allocation: float  # percent of the strategy

class ProtocolConfig(BaseModel):
    """Platform routing key plus protocol-specific knobs."""
    model_config = ConfigDict(frozen=True, extra="allow")

    platform: str
    price_feeds: Dict[str, str] = {}
    pool_address: Optional[str] = None
    lp_mint: Optional[str] = None
    collateral_factor: Optional[float] = None
    harvest_frequency: Optional[int] = None  # seconds
    max_slippage: Optional[float] = None  # percent

class Strategy(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    protocol_type: ProtocolType
    risk_level: RiskLevel
    tokens: List[TokenAllocation]
    estimated_apy_bps: int
    tvl: float = 0.0
    fee_percentage: float = 0.0
    min_investment: float = 0.0
    protocol_config: ProtocolConfig
    tags: List[str] = []
    verified: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("tokens")
    @classmethod
    def validate_allocations(cls, v):
        if not v:
            raise ValueError("Strategy must allocate to at least one token")
        total = sum(token.allocation for token in v)
        if abs(total - 100.0) > 1e-6:
            raise ValueError(f"Token allocations must sum to 100, got {total}")
        return v

    @property
    def estimated_apy(self) -> float:
        """Estimated APY in percent."""
        return self.estimated_apy_bps / 100.0

    @property
    def platform(self) -> str:
        return self.protocol_config.platform

# Position Models
class TokenAmount(BaseModel):
    mint: str = ""
    symbol: str
    amount: float
    value: float = 0.0  # USD

class BorrowPosition(TokenAmount):
    interest_rate: float = 0.0

class SubPosition(BaseModel):
    protocol: str
    type: str  # lending, liquidity, staking, farming
    tokens: List[TokenAmount] = []
    rewards: List[TokenAmount] = []
    borrow_positions: List[BorrowPosition] = []
    health_factor: Optional[float] = None
    liquidation_threshold: Optional[float] = None

class Position(BaseModel):
    owner: str = ""
    strategy_id: str
    platform: Optional[str] = None
    # None when the protocol does not report a cost basis
    initial_investment: Optional[float] = Field(default=None, ge=0)
    investment_value: float = Field(ge=0)
    returns: float = 0.0
    apy: float = 0.0  # percent
    positions: List[SubPosition] = []
    created_at: datetime = Field(default_factory=utcnow)
    last_harvest_time: Optional[datetime] = None
    strategy_address: str = ""

    @property
    def position_id(self) -> str:
        return f"{self.owner}:{self.strategy_id}"

    def held_amounts(self) -> Dict[str, float]:
        """Token amounts held across sub-positions, keyed by symbol."""
        amounts: Dict[str, float] = {}
        for sub in self.positions:
            for token in sub.tokens:
                amounts[token.symbol] = amounts.get(token.symbol, 0.0) + token.amount
        return amounts

    def borrowed_amounts(self) -> Dict[str, float]:
        amounts: Dict[str, float] = {}
        for sub in self.positions:
            for borrow in sub.borrow_positions:
                amounts[borrow.symbol] = amounts.get(borrow.symbol, 0.0) + borrow.amount
        return amounts

class AdapterFailure(BaseModel):
    platform: str
    error_type: str
    message: str

class AggregationResult(BaseModel):
    positions: List[Position] = []
    failures: List[AdapterFailure] = []
    adapter_count: int = 0

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    @property
    def all_failed(self) -> bool:
        return self.adapter_count > 0 and len(self.failures) >= self.adapter_count

# Market Models
class PriceQuote(BaseModel):
    feed_id: str
    symbol: Optional[str] = None
    price: float
    confidence: float
    timestamp: datetime

class PricePoint(BaseModel):
    timestamp: datetime
    price: float

class LendingRate(BaseModel):
    supply: float
    borrow: float

class PoolStats(BaseModel):
    tvl: float
    volume_24h: float = 0.0
    fee: float = 0.0

class MarketData(BaseModel):
    """Protocol market data keyed by platform."""
    lending_rates: Dict[str, Dict[str, LendingRate]] = {}
    farming_apys: Dict[str, Dict[str, float]] = {}
    liquidity_pools: Dict[str, Dict[str, PoolStats]] = {}

    def merge(self, other: "MarketData") -> "MarketData":
        return MarketData(
            lending_rates={**self.lending_rates, **other.lending_rates},
            farming_apys={**self.farming_apys, **other.farming_apys},
            liquidity_pools={**self.liquidity_pools, **other.liquidity_pools},
        )

class MarketSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    reference_price: float
    trend: MarketTrend
    volatility_index: float = Field(ge=0, le=10)
    interest_rate: float
    total_value_locked: float
    timestamp: datetime = Field(default_factory=utcnow)

# Risk Models
class RiskProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    risk_tolerance: RiskTolerance
    investment_horizon: str = "medium"  # short, medium, long
    liquidity_needs: str = "medium"  # low, medium, high
    volatility_tolerance: int = Field(default=5, ge=1, le=10)
    experience_level: str = "intermediate"  # beginner, intermediate, advanced

class RiskQuestionnaire(BaseModel):
    age_group: str
    risk_attitude: str
    time_horizon: str
    investment_experience: str
    liquidity_needs: str = "medium"

class PositionRiskMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    health_factor: float
    volatility_exposure: float
    impermanent_loss_risk: float
    concentration_risk: float
    protocol_risk: float
    overall_risk_score: float

class AlertAction(BaseModel):
    label: str
    action: str

class RiskAlert(BaseModel):
    id: str
    owner: str
    timestamp: datetime = Field(default_factory=utcnow)
    severity: RiskSeverity
    type: AlertType
    message: str
    position_id: Optional[str] = None
    strategy_id: Optional[str] = None
    details: Dict[str, Any] = {}
    read: bool = False
    actions: List[AlertAction] = []

    @property
    def dedup_key(self):
        return (self.owner, self.type, self.strategy_id)

# Recommendation Models
class StrategyRecommendation(BaseModel):
    strategy: Strategy
    match_score: float
    expected_return: float
    risk_score: int
    confidence: float
    recommended_allocation: float
    reasons: List[str] = []

class RecommendedChange(BaseModel):
    action: str  # increase, decrease, maintain, exit
    percentage: float
    reason: str = ""

class RebalancingRecommendation(BaseModel):
    owner: str
    strategy_id: str
    current_allocation: float  # percent of the owner's portfolio
    position_return: float
    recommended_change: RecommendedChange
    potential_apy_delta: float
    risk_impact: int
    estimated_fees: float
    urgency: str  # low, medium, high

# Command Models
class ActionParams(BaseModel):
    amount: Optional[float] = None
    token_amounts: Dict[str, float] = {}
    max_slippage: Optional[float] = None
    settings: Dict[str, Any] = {}

# Analytics Models
class TransactionRecord(BaseModel):
    signature: str
    timestamp: datetime
    fee: float = 0.0  # network cost in native units
    logs: List[str] = []
    token_deltas: Dict[str, float] = {}
    succeeded: bool = True

class FeeSummary(BaseModel):
    paid: float = 0.0
    earned: float = 0.0

class DailyReturn(BaseModel):
    day: date
    value: float
    value_change: float
    return_rate: float  # percent

class RebalanceEvent(BaseModel):
    timestamp: datetime
    cost: float
    description: str

class PriceRange(BaseModel):
    min: float
    max: float
    current: float

class PositionAnalytics(BaseModel):
    strategy_id: str
    daily_returns: List[DailyReturn] = []
    impermanent_loss: Optional[float] = None
    fees: FeeSummary = Field(default_factory=FeeSummary)
    rebalance_events: List[RebalanceEvent] = []
    price_ranges: Dict[str, PriceRange] = {}
    total_return_rate: float = 0.0

# API Response Models
class AlertsResponse(BaseModel):
    total_count: int
    unread_count: int
    alerts: List[RiskAlert]

class RecommendationsResponse(BaseModel):
    recommendations: List[StrategyRecommendation]
    allocation: Dict[str, float]

class PositionsResponse(BaseModel):
    positions: List[Position]
    failures: List[AdapterFailure] = []
    partial: bool = False

class CommandResponse(BaseModel):
    status: str = "submitted"
    strategy_id: str
    action: str
    transaction: str
