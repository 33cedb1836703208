import httpx
import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
import structlog
from datetime import datetime, timezone
from .config import settings
from .error_handling import (
    UpstreamUnavailable, InsufficientFunds, SlippageExceeded, Unsupported,
    retry_with_backoff
)
from .models import PriceQuote, PricePoint, TransactionRecord

logger = structlog.get_logger()

LAMPORTS_PER_SOL = 1_000_000_000

class BaseAPIClient:
    def __init__(self, base_url: str, headers: Optional[Dict] = None,
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url
        self.default_headers = headers or {}
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self.client is None:
            self.client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.default_headers,
                timeout=self.timeout,
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
                transport=self.transport
            )
        return self.client

    async def aclose(self):
        if self.client:
            await self.client.aclose()
            self.client = None

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make a single HTTP request, mapping transport failures to UpstreamUnavailable"""
        client = self._ensure_client()

        try:
            response = await client.request(method, endpoint, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for {method} {endpoint}",
                        error=str(e), status_code=e.response.status_code)
            raise UpstreamUnavailable(f"API request failed: {e.response.status_code}") from e
        except httpx.RequestError as e:
            logger.error(f"Request error for {method} {endpoint}", error=str(e))
            raise UpstreamUnavailable(f"Network error: {str(e)}") from e
        except ValueError as e:
            logger.error(f"Invalid JSON from {method} {endpoint}", error=str(e))
            raise UpstreamUnavailable(f"Invalid response body: {str(e)}") from e

def _normalize_feed_id(feed_id: str) -> str:
    return feed_id.lower().removeprefix("0x")

class PythHermesClient(BaseAPIClient):
    """Latest prices from the Pyth Hermes service"""

    def __init__(self, feed_symbols: Optional[Dict[str, str]] = None,
                 base_url: Optional[str] = None, transport=None):
        super().__init__(base_url or settings.PYTH_HERMES_URL,
                         {"accept": "application/json"}, transport=transport)
        # feed id -> token symbol
        self.feed_symbols = {
            _normalize_feed_id(feed_id): symbol
            for feed_id, symbol in (feed_symbols or {}).items()
        }

    async def get_latest_prices(self, feed_ids: List[str]) -> List[PriceQuote]:
        if not feed_ids:
            return []

        params = [("ids[]", feed_id) for feed_id in feed_ids] + [("parsed", "true")]
        data = await self._make_request("GET", "/v2/updates/price/latest", params=params)

        quotes = []
        for item in data.get("parsed", []):
            price_data = item.get("price") or {}
            try:
                expo = int(price_data.get("expo", 0))
                price = int(price_data["price"]) * 10 ** expo
                confidence = int(price_data["conf"]) * 10 ** expo
                publish_time = int(price_data["publish_time"])
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed price entry", feed_id=item.get("id"), error=str(e))
                continue

            feed_id = _normalize_feed_id(item.get("id", ""))
            quotes.append(PriceQuote(
                feed_id=feed_id,
                symbol=self.feed_symbols.get(feed_id),
                price=price,
                confidence=confidence,
                timestamp=datetime.fromtimestamp(publish_time, tz=timezone.utc)
            ))

        return quotes

class PythBenchmarksClient(BaseAPIClient):
    """Daily historical prices from the Pyth Benchmarks service"""

    def __init__(self, base_url: Optional[str] = None, transport=None):
        super().__init__(base_url or settings.PYTH_BENCHMARKS_URL, transport=transport)

    @retry_with_backoff(max_attempts=3, base_delay=0.5, max_delay=4.0)
    async def get_price_history(self, symbol: str, start: datetime, end: datetime) -> List[PricePoint]:
        params = {
            "symbol": f"Crypto.{symbol.upper()}/USD",
            "resolution": "D",
            "from": int(start.timestamp()),
            "to": int(end.timestamp())
        }

        data = await self._make_request("GET", "/v1/shims/tradingview/history", params=params)

        if data.get("s") != "ok":
            logger.info("No price history available", symbol=symbol, status=data.get("s"))
            return []

        return [
            PricePoint(timestamp=datetime.fromtimestamp(ts, tz=timezone.utc), price=float(close))
            for ts, close in zip(data.get("t", []), data.get("c", []))
        ]

def _ui_amount(balance: Optional[Dict]) -> float:
    if not balance:
        return 0.0
    token_amount = balance.get("uiTokenAmount") or {}
    if token_amount.get("uiAmount") is not None:
        return float(token_amount["uiAmount"])
    return float(token_amount.get("uiAmountString") or 0)

def parse_transaction(tx: Dict, owner: str, mint_symbols: Dict[str, str], signature: str) -> TransactionRecord:
    """Convert a jsonParsed getTransaction result into a TransactionRecord.

    Token deltas only cover balances owned by ``owner`` whose mint is known.
    """
    meta = tx.get("meta") or {}

    pre = {b["accountIndex"]: b for b in meta.get("preTokenBalances") or [] if b.get("owner") == owner}
    post = {b["accountIndex"]: b for b in meta.get("postTokenBalances") or [] if b.get("owner") == owner}

    deltas: Dict[str, float] = {}
    for index in set(pre) | set(post):
        entry = post.get(index) or pre.get(index)
        symbol = mint_symbols.get(entry.get("mint", ""))
        if not symbol:
            continue
        change = _ui_amount(post.get(index)) - _ui_amount(pre.get(index))
        if change:
            deltas[symbol] = deltas.get(symbol, 0.0) + change

    return TransactionRecord(
        signature=signature,
        timestamp=datetime.fromtimestamp(tx.get("blockTime") or 0, tz=timezone.utc),
        fee=(meta.get("fee") or 0) / LAMPORTS_PER_SOL,
        logs=meta.get("logMessages") or [],
        token_deltas=deltas,
        succeeded=meta.get("err") is None
    )

class SolanaRpcClient(BaseAPIClient):
    """JSON-RPC reader for balances and transaction history"""

    def __init__(self, rpc_url: Optional[str] = None, transport=None):
        super().__init__(rpc_url or settings.SOLANA_RPC_URL,
                         {"Content-Type": "application/json"}, transport=transport)

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": method,
            "params": params
        }

        data = await self._make_request("POST", "", json=payload)

        if data.get("error"):
            message = data["error"].get("message", "unknown error")
            logger.error(f"RPC error for {method}", error=message)
            raise UpstreamUnavailable(f"RPC error for {method}: {message}")

        return data.get("result")

    async def get_signatures_for_address(self, address: str, limit: int = 100,
                                         before: Optional[str] = None) -> List[Dict]:
        options: Dict[str, Any] = {"limit": limit}
        if before:
            options["before"] = before
        return await self._rpc("getSignaturesForAddress", [address, options]) or []

    @retry_with_backoff(max_attempts=3, base_delay=0.5, max_delay=4.0)
    async def get_transaction(self, signature: str) -> Optional[Dict]:
        return await self._rpc("getTransaction", [
            signature,
            {"encoding": "jsonParsed", "maxSupportedTransactionVersion": 0}
        ])

    async def get_token_balance(self, owner: str, mint: str) -> float:
        """Sum of ui amounts across the owner's token accounts for ``mint``"""
        result = await self._rpc("getTokenAccountsByOwner", [
            owner,
            {"mint": mint},
            {"encoding": "jsonParsed"}
        ])

        total = 0.0
        for account in (result or {}).get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            total += float(info["tokenAmount"].get("uiAmount") or 0)
        return total

    async def get_token_supply(self, mint: str) -> float:
        result = await self._rpc("getTokenSupply", [mint])
        value = (result or {}).get("value") or {}
        return float(value.get("uiAmount") or 0)

    async def get_transaction_history(self, address: str, mint_symbols: Dict[str, str],
                                      limit: int = 100) -> List[TransactionRecord]:
        """Fetch and parse the most recent transactions touching ``address``"""
        signatures = await self.get_signatures_for_address(address, limit=limit)
        records: List[TransactionRecord] = []

        # Process in batches to avoid overloading the RPC node
        batch_size = 10
        for i in range(0, len(signatures), batch_size):
            batch = [entry["signature"] for entry in signatures[i:i + batch_size]]
            results = await asyncio.gather(
                *(self.get_transaction(signature) for signature in batch),
                return_exceptions=True
            )

            for signature, result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.warning("Skipping unreadable transaction", signature=signature, error=str(result))
                    continue
                if result:
                    records.append(parse_transaction(result, address, mint_symbols, signature))

        records.sort(key=lambda record: record.timestamp)
        return records

class SolendClient(BaseAPIClient):
    """Lending-market REST API.

    ``/v1/reserves`` results carry ``symbol`` and ``rates.supplyInterest`` /
    ``rates.borrowInterest`` in percent. ``/v1/obligations`` results carry
    ``deposits`` and ``borrows`` lists plus an optional ``healthFactor``.
    """

    def __init__(self, base_url: Optional[str] = None, transport=None):
        super().__init__(base_url or settings.SOLEND_API_BASE, transport=transport)

    async def get_reserves(self) -> List[Dict]:
        data = await self._make_request("GET", "/v1/reserves", params={"scope": "all"})
        return data.get("results", [])

    async def get_obligations(self, owner: str) -> List[Dict]:
        data = await self._make_request("GET", "/v1/obligations", params={"wallet": owner})
        return data.get("results", [])

class MarinadeClient(BaseAPIClient):
    def __init__(self, base_url: Optional[str] = None, transport=None):
        super().__init__(base_url or settings.MARINADE_API_BASE, transport=transport)

    async def get_apy(self) -> float:
        """30-day staking APY in percent"""
        data = await self._make_request("GET", "/msol/apy/30d")
        return float(data.get("value", 0)) * 100

    async def get_msol_price(self) -> float:
        """Price of one mSOL in SOL"""
        data = await self._make_request("GET", "/msol/price_sol")
        return float(data)

class ShyftClient(BaseAPIClient):
    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None, transport=None):
        headers = {
            "accept": "application/json",
            "x-api-key": api_key if api_key is not None else settings.SHYFT_API_KEY
        }
        super().__init__(base_url or settings.SHYFT_API_BASE, headers, transport=transport)

    async def get_liquidity_details(self, pool_address: str) -> Dict:
        """tvl, apy, volume24h and fee24h for one pool"""
        data = await self._make_request("GET", "/pools/get_liquidity_details",
                                        params={"address": pool_address})
        return data.get("liquidity_details") or {}

class TransactionSubmitter(ABC):
    """Capability that signs and submits a protocol instruction"""

    @abstractmethod
    async def submit(self, payload: Dict[str, Any]) -> str:
        """Submit once and return the transaction reference"""

class RelayTransactionSubmitter(BaseAPIClient, TransactionSubmitter):
    """Posts instructions to a signing relay and maps its failures to typed errors"""

    ERROR_CODES = {
        "insufficient_funds": InsufficientFunds,
        "slippage_exceeded": SlippageExceeded,
        "unsupported": Unsupported,
    }
    STATUS_ERRORS = {
        400: Unsupported,
        402: InsufficientFunds,
        404: Unsupported,
        409: SlippageExceeded,
        422: Unsupported,
        501: Unsupported,
    }

    def __init__(self, relay_url: Optional[str] = None, transport=None):
        super().__init__(relay_url or settings.TX_RELAY_URL,
                         {"Content-Type": "application/json"}, transport=transport)

    async def submit(self, payload: Dict[str, Any]) -> str:
        client = self._ensure_client()

        try:
            response = await client.post("/transactions", json=payload)
        except httpx.RequestError as e:
            logger.error("Relay unreachable", action=payload.get("action"), error=str(e))
            raise UpstreamUnavailable(f"Relay unreachable: {str(e)}") from e

        if response.status_code < 400:
            signature = response.json().get("signature")
            if not signature:
                raise UpstreamUnavailable("Relay returned no transaction signature")
            return signature

        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            error = {}

        message = error.get("message") or f"Relay rejected transaction: {response.status_code}"
        error_class = self.ERROR_CODES.get(error.get("code")) or self.STATUS_ERRORS.get(response.status_code)
        if error_class is None:
            error_class = UpstreamUnavailable if response.status_code >= 500 else Unsupported

        logger.warning("Transaction rejected",
                       action=payload.get("action"),
                       platform=payload.get("platform"),
                       status_code=response.status_code,
                       error_type=error_class.__name__)
        raise error_class(message)
