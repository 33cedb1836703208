import pytest
import json
import httpx

from portfolio_engine.error_handling import (
    InsufficientFunds, SlippageExceeded, Unsupported, UpstreamUnavailable
)
from portfolio_engine.external_apis import (
    PythHermesClient, RelayTransactionSubmitter, SolanaRpcClient, SolendClient, parse_transaction
)

SOL_FEED = "ef0d8b6fda2ceba41da15d4095d1da392a0d2f8ed0c6c7bc0f4cfac8c280b56d"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


def relay_returning(status_code, body=None):
    def handler(request):
        return httpx.Response(status_code, json=body if body is not None else {})
    return RelayTransactionSubmitter("https://relay.test", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
class TestRelayTransactionSubmitter:
    async def test_returns_signature(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"signature": "5abc"})

        relay = RelayTransactionSubmitter("https://relay.test", transport=httpx.MockTransport(handler))
        assert await relay.submit({"action": "deposit", "platform": "solend"}) == "5abc"
        assert seen["path"] == "/transactions"
        assert seen["payload"]["action"] == "deposit"
        await relay.aclose()

    @pytest.mark.parametrize("status_code,body,error", [
        (402, None, InsufficientFunds),
        (409, None, SlippageExceeded),
        (400, {"error": {"code": "insufficient_funds", "message": "balance too low"}}, InsufficientFunds),
        (422, {"error": {"code": "slippage_exceeded"}}, SlippageExceeded),
        (404, None, Unsupported),
        (503, None, UpstreamUnavailable),
        (418, None, Unsupported),
    ])
    async def test_error_mapping(self, status_code, body, error):
        relay = relay_returning(status_code, body)
        with pytest.raises(error):
            await relay.submit({"action": "deposit"})

    async def test_relay_message_is_kept(self):
        relay = relay_returning(402, {"error": {"code": "insufficient_funds", "message": "balance too low"}})
        with pytest.raises(InsufficientFunds, match="balance too low"):
            await relay.submit({"action": "withdraw"})

    async def test_unreachable_relay(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        relay = RelayTransactionSubmitter("https://relay.test", transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamUnavailable):
            await relay.submit({"action": "deposit"})

    async def test_missing_signature(self):
        with pytest.raises(UpstreamUnavailable):
            await relay_returning(200, {"status": "queued"}).submit({"action": "deposit"})

    async def test_submits_once(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, json={})

        relay = RelayTransactionSubmitter("https://relay.test", transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamUnavailable):
            await relay.submit({"action": "harvest"})
        assert len(calls) == 1


@pytest.mark.asyncio
class TestPythHermesClient:
    async def test_parses_scaled_prices(self):
        def handler(request):
            assert request.url.params.get_list("ids[]") == [SOL_FEED]
            return httpx.Response(200, json={"parsed": [
                {"id": SOL_FEED, "price": {"price": "15000000000", "conf": "5000000",
                                           "expo": -8, "publish_time": 1700000000}},
                {"id": "broken", "price": {"expo": -8}},
            ]})

        client = PythHermesClient({"0x" + SOL_FEED: "SOL"}, base_url="https://hermes.test",
                                  transport=httpx.MockTransport(handler))
        [quote] = await client.get_latest_prices([SOL_FEED])

        assert quote.symbol == "SOL"
        assert quote.price == pytest.approx(150.0)
        assert quote.confidence == pytest.approx(0.05)
        assert quote.timestamp.year == 2023

    async def test_no_feeds_makes_no_request(self):
        def handler(request):
            raise AssertionError("unexpected request")

        client = PythHermesClient(base_url="https://hermes.test", transport=httpx.MockTransport(handler))
        assert await client.get_latest_prices([]) == []

    async def test_http_error_is_upstream_unavailable(self):
        client = PythHermesClient(base_url="https://hermes.test",
                                  transport=httpx.MockTransport(lambda request: httpx.Response(500)))
        with pytest.raises(UpstreamUnavailable):
            await client.get_latest_prices([SOL_FEED])


@pytest.mark.asyncio
class TestSolanaRpcClient:
    async def test_rpc_error_is_upstream_unavailable(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                             "error": {"code": -32005, "message": "node is behind"}})

        rpc = SolanaRpcClient("https://rpc.test", transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamUnavailable, match="node is behind"):
            await rpc.get_token_supply(USDC_MINT)

    async def test_token_balance_sums_accounts(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["method"] == "getTokenAccountsByOwner"
            account = lambda amount: {"account": {"data": {"parsed": {"info": {"tokenAmount": {"uiAmount": amount}}}}}}
            return httpx.Response(200, json={"result": {"value": [account(1.5), account(2.0), account(None)]}})

        rpc = SolanaRpcClient("https://rpc.test", transport=httpx.MockTransport(handler))
        assert await rpc.get_token_balance("owner", USDC_MINT) == pytest.approx(3.5)

    async def test_transaction_history(self, sample_wallet_address):
        def handler(request):
            body = json.loads(request.content)
            if body["method"] == "getSignaturesForAddress":
                return httpx.Response(200, json={"result": [{"signature": "s2"}, {"signature": "s1"}]})
            signature = body["params"][0]
            return httpx.Response(200, json={"result": {
                "blockTime": 1700000000 if signature == "s1" else 1700086400,
                "meta": {"fee": 5000, "err": None, "logMessages": [f"log {signature}"]}
            }})

        rpc = SolanaRpcClient("https://rpc.test", transport=httpx.MockTransport(handler))
        records = await rpc.get_transaction_history(sample_wallet_address, {})

        assert [r.signature for r in records] == ["s1", "s2"]
        assert records[0].fee == pytest.approx(0.000005)


class TestParseTransaction:
    def test_owner_token_deltas(self, sample_wallet_address):
        tx = {
            "blockTime": 1700000000,
            "meta": {
                "fee": 10000,
                "err": None,
                "logMessages": ["Program log: Fee: 0.25"],
                "preTokenBalances": [
                    {"accountIndex": 1, "mint": USDC_MINT, "owner": sample_wallet_address,
                     "uiTokenAmount": {"uiAmount": 100.0}},
                    {"accountIndex": 2, "mint": USDC_MINT, "owner": "someone-else",
                     "uiTokenAmount": {"uiAmount": 5.0}},
                ],
                "postTokenBalances": [
                    {"accountIndex": 1, "mint": USDC_MINT, "owner": sample_wallet_address,
                     "uiTokenAmount": {"uiAmount": 40.0}},
                    {"accountIndex": 2, "mint": USDC_MINT, "owner": "someone-else",
                     "uiTokenAmount": {"uiAmount": 65.0}},
                ],
            }
        }

        record = parse_transaction(tx, sample_wallet_address, {USDC_MINT: "USDC"}, "sig")

        assert record.token_deltas == {"USDC": pytest.approx(-60.0)}
        assert record.fee == pytest.approx(0.00001)
        assert record.succeeded

    def test_failed_transaction(self, sample_wallet_address):
        record = parse_transaction({"blockTime": 1, "meta": {"err": {"InstructionError": [0, "Custom"]}}},
                                   sample_wallet_address, {}, "sig")
        assert not record.succeeded
        assert record.token_deltas == {}


@pytest.mark.asyncio
class TestSolendClient:
    async def test_reserves(self):
        def handler(request):
            assert request.url.path == "/v1/reserves"
            return httpx.Response(200, json={"results": [{"symbol": "USDC"}]})

        client = SolendClient("https://solend.test", transport=httpx.MockTransport(handler))
        async with client:
            assert await client.get_reserves() == [{"symbol": "USDC"}]
        assert client.client is None

    async def test_invalid_json(self):
        client = SolendClient("https://solend.test",
                              transport=httpx.MockTransport(lambda request: httpx.Response(200, content=b"<html>")))
        with pytest.raises(UpstreamUnavailable):
            await client.get_obligations("owner")
