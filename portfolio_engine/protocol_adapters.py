"""
Protocol adapters: one capability interface, a registry keyed by platform,
and the concrete lending, liquid-staking and liquidity-pool adapters.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import structlog

from .config import ProtocolType, SupportedPlatforms, TOKEN_MINTS
from .error_handling import UpstreamUnavailable, Unsupported
from .external_apis import (
    TransactionSubmitter, SolendClient, MarinadeClient, ShyftClient,
    SolanaRpcClient, PythHermesClient
)
from .models import (
    ActionParams, BorrowPosition, LendingRate, MarketData, PoolStats,
    Position, Strategy, SubPosition, TokenAmount
)

logger = structlog.get_logger()

DEPOSIT = "deposit"
WITHDRAW = "withdraw"
HARVEST = "harvest"
REBALANCE = "rebalance"
ALL_ACTIONS = frozenset({DEPOSIT, WITHDRAW, HARVEST, REBALANCE})


class ProtocolAdapter(ABC):
    """Capability interface implemented once per supported protocol.

    Read methods raise ``UpstreamUnavailable`` when the protocol's data source
    cannot be reached and return empty results when there is simply nothing
    to report. ``execute_*`` methods make exactly one submission attempt and
    surface failures as typed errors; retry policy belongs to the caller.
    """

    platform: str = ""
    protocol_type: ProtocolType = ProtocolType.LENDING
    supported_actions: frozenset = ALL_ACTIONS

    def __init__(self, submitter: TransactionSubmitter):
        self.submitter = submitter

    @abstractmethod
    async def get_apy(self) -> Dict[str, float]:
        """Current APY in percent keyed by token symbol or pool label"""

    @abstractmethod
    async def get_user_positions(self, owner: str) -> List[Position]:
        """Positions held by ``owner``; empty when there are none"""

    async def get_market_data(self) -> MarketData:
        """Lending rates, farm APYs and pool stats this protocol exposes"""
        return MarketData()

    async def execute_deposit(self, owner: str, strategy: Strategy, params: ActionParams) -> str:
        return await self._submit(DEPOSIT, owner, strategy, params)

    async def execute_withdraw(self, owner: str, strategy: Strategy, params: ActionParams) -> str:
        return await self._submit(WITHDRAW, owner, strategy, params)

    async def execute_harvest(self, owner: str, strategy: Strategy, params: ActionParams) -> str:
        return await self._submit(HARVEST, owner, strategy, params)

    async def execute_rebalance(self, owner: str, strategy: Strategy, params: ActionParams) -> str:
        return await self._submit(REBALANCE, owner, strategy, params)

    def build_instruction(self, action: str, owner: str, strategy: Strategy,
                          params: ActionParams) -> Dict[str, Any]:
        return {
            "platform": self.platform,
            "action": action,
            "owner": owner,
            "strategy_id": strategy.id,
            "amount": params.amount,
            "token_amounts": params.token_amounts,
            "max_slippage": params.max_slippage,
            "settings": params.settings,
        }

    async def _submit(self, action: str, owner: str, strategy: Strategy, params: ActionParams) -> str:
        if action not in self.supported_actions:
            raise Unsupported(f"{self.platform} does not support {action}")

        payload = self.build_instruction(action, owner, strategy, params)
        logger.info("Submitting protocol action",
                    platform=self.platform, action=action,
                    owner=owner, strategy_id=strategy.id)

        signature = await self.submitter.submit(payload)

        logger.info("Protocol action submitted",
                    platform=self.platform, action=action, signature=signature)
        return signature

    async def aclose(self):
        """Release any HTTP clients held by the adapter"""
        return None


class AdapterRegistry:
    """Adapters keyed by the ``platform`` carried in a strategy's protocol config"""

    def __init__(self, adapters: Optional[Iterable[ProtocolAdapter]] = None):
        self._adapters: Dict[str, ProtocolAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProtocolAdapter):
        if adapter.platform in self._adapters:
            logger.warning("Replacing registered adapter", platform=adapter.platform)
        self._adapters[adapter.platform] = adapter

    def get(self, platform: str) -> ProtocolAdapter:
        adapter = self._adapters.get(platform)
        if adapter is None:
            raise Unsupported(f"No adapter registered for platform '{platform}'")
        return adapter

    def for_strategy(self, strategy: Strategy) -> ProtocolAdapter:
        return self.get(strategy.platform)

    def adapters(self) -> List[ProtocolAdapter]:
        return list(self._adapters.values())

    def platforms(self) -> List[str]:
        return list(self._adapters)

    def __contains__(self, platform: str) -> bool:
        return platform in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    async def aclose(self):
        await asyncio.gather(
            *(adapter.aclose() for adapter in self._adapters.values()),
            return_exceptions=True
        )


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class LendingMarketAdapter(ProtocolAdapter):
    """Solend-style lending market"""

    platform = SupportedPlatforms.SOLEND
    protocol_type = ProtocolType.LENDING
    # Interest accrues into the deposit; there is nothing to harvest
    supported_actions = frozenset({DEPOSIT, WITHDRAW, REBALANCE})

    def __init__(self, submitter: TransactionSubmitter, client: SolendClient, strategy_id: str):
        super().__init__(submitter)
        self.client = client
        self.strategy_id = strategy_id

    async def _rates(self) -> Dict[str, LendingRate]:
        reserves = await self.client.get_reserves()
        rates = {}
        for reserve in reserves:
            symbol = reserve.get("symbol")
            rate_data = reserve.get("rates") or {}
            if not symbol:
                continue
            rates[symbol] = LendingRate(
                supply=float(rate_data.get("supplyInterest", 0)),
                borrow=float(rate_data.get("borrowInterest", 0))
            )
        return rates

    async def get_apy(self) -> Dict[str, float]:
        rates = await self._rates()
        return {symbol: rate.supply for symbol, rate in rates.items()}

    async def get_market_data(self) -> MarketData:
        return MarketData(lending_rates={self.platform: await self._rates()})

    async def get_user_positions(self, owner: str) -> List[Position]:
        obligations, rates = await asyncio.gather(
            self.client.get_obligations(owner),
            self._rates()
        )

        positions = []
        for obligation in obligations:
            deposits = [
                TokenAmount(
                    mint=entry.get("mintAddress", ""),
                    symbol=entry["symbol"],
                    amount=float(entry.get("amount", 0)),
                    value=float(entry.get("marketValue", 0))
                )
                for entry in obligation.get("deposits", [])
            ]
            borrows = [
                BorrowPosition(
                    mint=entry.get("mintAddress", ""),
                    symbol=entry["symbol"],
                    amount=float(entry.get("amount", 0)),
                    value=float(entry.get("marketValue", 0)),
                    interest_rate=rates[entry["symbol"]].borrow if entry["symbol"] in rates else 0.0
                )
                for entry in obligation.get("borrows", [])
            ]

            deposited_value = sum(token.value for token in deposits)
            borrowed_value = sum(borrow.value for borrow in borrows)
            if deposited_value <= 0 and borrowed_value <= 0:
                continue

            health_factor = obligation.get("healthFactor")
            if health_factor is None and borrowed_value > 0 and obligation.get("unhealthyBorrowValue") is not None:
                health_factor = float(obligation["unhealthyBorrowValue"]) / borrowed_value

            # Weighted supply APY net of borrow cost
            earned = sum(token.value * rates[token.symbol].supply for token in deposits if token.symbol in rates)
            paid = sum(borrow.value * borrow.interest_rate for borrow in borrows)
            net_value = max(0.0, deposited_value - borrowed_value)
            apy = (earned - paid) / net_value if net_value > 0 else 0.0

            initial_value = obligation.get("initialValue")
            initial_value = float(initial_value) if initial_value is not None else None

            positions.append(Position(
                owner=owner,
                strategy_id=self.strategy_id,
                platform=self.platform,
                initial_investment=initial_value,
                investment_value=net_value,
                returns=net_value - initial_value if initial_value is not None else 0.0,
                apy=apy,
                positions=[SubPosition(
                    protocol=self.platform,
                    type="lending",
                    tokens=deposits,
                    borrow_positions=borrows,
                    health_factor=float(health_factor) if health_factor is not None else None,
                    liquidation_threshold=obligation.get("liquidationThreshold")
                )],
                created_at=_parse_timestamp(obligation.get("createdAt")) or datetime.now(timezone.utc),
                strategy_address=obligation.get("address", "")
            ))

        return positions

    async def aclose(self):
        await self.client.aclose()


async def _reference_price(oracle: PythHermesClient, feed_id: str) -> float:
    quotes = await oracle.get_latest_prices([feed_id])
    if not quotes:
        raise UpstreamUnavailable(f"No oracle price for feed {feed_id}")
    return quotes[0].price


class LiquidStakingAdapter(ProtocolAdapter):
    """Marinade liquid staking: SOL in, mSOL out"""

    platform = SupportedPlatforms.MARINADE
    protocol_type = ProtocolType.STAKING
    # Rewards compound into the mSOL exchange rate
    supported_actions = frozenset({DEPOSIT, WITHDRAW})

    def __init__(self, submitter: TransactionSubmitter, client: MarinadeClient,
                 rpc: SolanaRpcClient, oracle: PythHermesClient,
                 sol_feed_id: str, strategy_id: str):
        super().__init__(submitter)
        self.client = client
        self.rpc = rpc
        self.oracle = oracle
        self.sol_feed_id = sol_feed_id
        self.strategy_id = strategy_id

    async def get_apy(self) -> Dict[str, float]:
        return {"MSOL": await self.client.get_apy()}

    async def get_user_positions(self, owner: str) -> List[Position]:
        balance = await self.rpc.get_token_balance(owner, TOKEN_MINTS["MSOL"])
        if balance <= 0:
            return []

        msol_price, sol_price, apy = await asyncio.gather(
            self.client.get_msol_price(),
            _reference_price(self.oracle, self.sol_feed_id),
            self.client.get_apy()
        )

        value = balance * msol_price * sol_price
        return [Position(
            owner=owner,
            strategy_id=self.strategy_id,
            platform=self.platform,
            investment_value=value,
            apy=apy,
            positions=[SubPosition(
                protocol=self.platform,
                type="staking",
                tokens=[TokenAmount(mint=TOKEN_MINTS["MSOL"], symbol="MSOL", amount=balance, value=value)]
            )]
        )]

    async def aclose(self):
        await self.client.aclose()


class LiquidityPoolAdapter(ProtocolAdapter):
    """Raydium pools read through the Shyft DeFi API"""

    platform = SupportedPlatforms.RAYDIUM
    protocol_type = ProtocolType.LIQUIDITY_PROVIDING

    def __init__(self, submitter: TransactionSubmitter, client: ShyftClient,
                 rpc: SolanaRpcClient, oracle: PythHermesClient, strategies: List[Strategy]):
        super().__init__(submitter)
        self.client = client
        self.rpc = rpc
        self.oracle = oracle
        self.strategies = [s for s in strategies if s.protocol_config.pool_address]

    @staticmethod
    def pool_label(strategy: Strategy) -> str:
        return "-".join(token.symbol for token in strategy.tokens)

    async def _pool_details(self) -> Dict[str, Dict]:
        results = await asyncio.gather(
            *(self.client.get_liquidity_details(s.protocol_config.pool_address) for s in self.strategies),
            return_exceptions=True
        )

        details = {}
        for strategy, result in zip(self.strategies, results):
            if isinstance(result, Exception):
                logger.warning("Pool details unavailable",
                               pool=strategy.protocol_config.pool_address, error=str(result))
                continue
            details[strategy.id] = result

        if self.strategies and not details:
            raise UpstreamUnavailable("No pool data could be fetched")
        return details

    async def get_apy(self) -> Dict[str, float]:
        details = await self._pool_details()
        return {
            self.pool_label(strategy): float(details[strategy.id].get("apy", 0))
            for strategy in self.strategies if strategy.id in details
        }

    async def get_market_data(self) -> MarketData:
        details = await self._pool_details()
        farming, pools = {}, {}
        for strategy in self.strategies:
            data = details.get(strategy.id)
            if data is None:
                continue
            label = self.pool_label(strategy)
            farming[label] = float(data.get("apy", 0))
            pools[label] = PoolStats(
                tvl=float(data.get("tvl", 0)),
                volume_24h=float(data.get("volume24h", 0)),
                fee=float(data.get("fee24h", 0))
            )
        return MarketData(
            farming_apys={self.platform: farming},
            liquidity_pools={self.platform: pools}
        )

    async def _leg_prices(self, strategy: Strategy) -> Dict[str, float]:
        feeds = strategy.protocol_config.price_feeds
        if not feeds:
            return {}
        quotes = await self.oracle.get_latest_prices(list(feeds.values()))
        by_feed = {quote.feed_id: quote.price for quote in quotes}
        return {
            symbol: by_feed[feed_id.lower().removeprefix("0x")]
            for symbol, feed_id in feeds.items()
            if feed_id.lower().removeprefix("0x") in by_feed
        }

    async def get_user_positions(self, owner: str) -> List[Position]:
        positions = []
        details = None

        for strategy in self.strategies:
            lp_mint = strategy.protocol_config.lp_mint
            if not lp_mint:
                continue

            balance = await self.rpc.get_token_balance(owner, lp_mint)
            if balance <= 0:
                continue

            if details is None:
                details = await self._pool_details()
            pool = details.get(strategy.id)
            if pool is None:
                raise UpstreamUnavailable(f"Pool data missing for {strategy.id}")

            supply, prices = await asyncio.gather(
                self.rpc.get_token_supply(lp_mint),
                self._leg_prices(strategy)
            )
            share = balance / supply if supply > 0 else 0.0
            value = share * float(pool.get("tvl", 0))

            legs = []
            for token in strategy.tokens:
                leg_value = value * token.allocation / 100
                price = prices.get(token.symbol)
                legs.append(TokenAmount(
                    mint=token.mint,
                    symbol=token.symbol,
                    amount=leg_value / price if price else 0.0,
                    value=leg_value
                ))

            positions.append(Position(
                owner=owner,
                strategy_id=strategy.id,
                platform=self.platform,
                investment_value=value,
                apy=float(pool.get("apy", 0)),
                positions=[SubPosition(protocol=self.platform, type="liquidity", tokens=legs)],
                strategy_address=strategy.protocol_config.pool_address or ""
            ))

        return positions

    def build_instruction(self, action: str, owner: str, strategy: Strategy,
                          params: ActionParams) -> Dict[str, Any]:
        payload = super().build_instruction(action, owner, strategy, params)
        payload["pool_address"] = strategy.protocol_config.pool_address
        if payload["max_slippage"] is None:
            payload["max_slippage"] = strategy.protocol_config.max_slippage
        return payload

    async def aclose(self):
        await self.client.aclose()
