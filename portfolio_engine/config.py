from pydantic_settings import BaseSettings
from typing import Optional, Dict
from enum import Enum

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    API_PORT: int = 8001

    # Monitoring loop
    MONITORING_INTERVAL_SECONDS: int = 300
    ADAPTER_TIMEOUT_SECONDS: float = 10.0
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    # Retry policy for UpstreamUnavailable
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 10.0

    # Market trend thresholds (mean supply rate, percent)
    BULL_RATE_THRESHOLD: float = 5.0
    BEAR_RATE_THRESHOLD: float = 2.0

    # Reference prices (Pyth feed ids)
    REFERENCE_ASSET: str = "SOL"
    REFERENCE_FEEDS: Dict[str, str] = {
        "SOL": "ef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d",
        "BTC": "e62df6c8b4a85fe1a67db44dc12de5db330f7ac66b72dc658afedf0f4a415b43",
        "ETH": "ff61491a931112ddf1bd8147cd1b641375f79f5825126d665480874634fd0ace",
        "USDC": "eaa020c61cc479712813461ce153894a96a6c00b21ed0cfc2798d1f9a9e9c94a",
    }

    # Data sources
    PYTH_HERMES_URL: str = "https://hermes.pyth.network"
    PYTH_BENCHMARKS_URL: str = "https://benchmarks.pyth.network"
    SOLANA_RPC_URL: str = "https://api.mainnet-beta.solana.com"
    SOLEND_API_BASE: str = "https://api.solend.fi"
    MARINADE_API_BASE: str = "https://api.marinade.finance"
    SHYFT_API_BASE: str = "https://defi.shyft.to/v0"
    SHYFT_API_KEY: str = ""

    # Outbound capabilities
    TX_RELAY_URL: str = "http://localhost:8090"
    NOTIFICATION_WEBHOOK_URL: Optional[str] = None

    # Catalog and allocation
    STRATEGY_CATALOG_PATH: Optional[str] = None
    ALLOCATION_SEED: Optional[int] = None

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Allow extra fields in .env

VERSION = "1.0.0"

# Global settings instance
settings = Settings()

# Protocol families
class ProtocolType(str, Enum):
    LENDING = "lending"
    YIELD_FARMING = "yield_farming"
    LIQUIDITY_PROVIDING = "liquidity_providing"
    STAKING = "staking"

# Strategy risk levels
class RiskLevel(str, Enum):
    CONSERVATIVE = "conservative"
    MODERATE = "moderate"
    AGGRESSIVE = "aggressive"
    EXPERIMENTAL = "experimental"

# Risk profile tolerance tiers
class RiskTolerance(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    AGGRESSIVE = "aggressive"

class MarketTrend(str, Enum):
    BULL = "bull"
    BEAR = "bear"
    NEUTRAL = "neutral"

# Risk Severity Levels
class RiskSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return SEVERITY_ORDER.index(self)

SEVERITY_ORDER = [RiskSeverity.LOW, RiskSeverity.MEDIUM, RiskSeverity.HIGH, RiskSeverity.CRITICAL]

# Alert Types
class AlertType(str, Enum):
    LIQUIDATION = "liquidation"
    IMPERMANENT_LOSS = "impermanent_loss"
    PROTOCOL_RISK = "protocol_risk"
    MARKET_VOLATILITY = "market_volatility"
    POSITION_DECLINE = "position_decline"

# Notification levels understood by sinks
class NotificationLevel:
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

# Supported platforms
class SupportedPlatforms:
    SOLEND = "solend"
    MARINADE = "marinade"
    RAYDIUM = "raydium"

# Alert thresholds
class AlertThresholds:
    LIQUIDATION_WARNING = 1.25
    LIQUIDATION_HIGH = 1.15
    LIQUIDATION_CRITICAL = 1.05
    IL_RISK_TRIGGER = 7.0
    IL_RISK_HIGH = 8.5
    IL_VOLATILITY_TRIGGER = 6.0
    DECLINE_TRIGGER = -0.15
    DECLINE_HIGH = -0.25
    CONCENTRATION_SHARE = 0.40
    MARKET_VOLATILITY_TRIGGER = 7.5
    HIGH_RISK_EXPOSURE_SHARE = 0.30

# Well-known Solana mints
TOKEN_MINTS = {
    "SOL": "So11111111111111111111111111111111111111112",
    "USDC": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
    "USDT": "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
    "MSOL": "mSoLzYCxHdYgdzU16g5QSh3i5K3z3KZK7ytfqcJm7So",
    "JUP": "JUPyiwrYJFskUPiHa7hkeR8VUtAeFoSYbKedZNsDvCN",
    "RAY": "4k3Dyjzvzp8eMZWUXbBCjEvwSkkk59S5iCNLY3QrkX6R",
}
