"""
Portfolio Risk Engine - DeFi Portfolio Risk & Optimization Service

Aggregates lending, staking, liquidity-provision and yield-farming positions
across Solana protocols and keeps their owners informed about risk.

Key Features:
- Protocol adapters for Solend, Marinade and Raydium behind one registry
- Partial-failure position aggregation with per-adapter timeouts
- Market snapshots from Pyth prices and protocol lending rates
- Per-position risk metrics and a deduplicating per-owner alert loop
- Strategy recommendations, tiered allocation and rebalancing advice
- Position analytics reconstructed from on-chain transaction history
- Structured logging with structlog

Version: 1.0.0
"""

from .config import VERSION, settings
from .main import app, create_app

__version__ = VERSION

__all__ = ["app", "create_app", "settings"]
