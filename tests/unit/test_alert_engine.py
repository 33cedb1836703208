import pytest
import asyncio
from unittest.mock import AsyncMock, MagicMock

from portfolio_engine.aggregator import PositionAggregator
from portfolio_engine.alert_engine import AlertEngine, AlertStore
from portfolio_engine.config import AlertType, MarketTrend, RiskSeverity, NotificationLevel
from portfolio_engine.error_handling import InsufficientData, UpstreamUnavailable
from portfolio_engine.models import RiskAlert
from portfolio_engine.protocol_adapters import AdapterRegistry


def build_engine(adapters, catalog, snapshot=None, sink=None, analyzer_error=None, notification_timeout=0.5):
    analyzer = MagicMock()
    analyzer.analyze = AsyncMock(return_value=snapshot, side_effect=analyzer_error)
    store = AlertStore()
    engine = AlertEngine(
        PositionAggregator(AdapterRegistry(adapters), timeout=0.5),
        analyzer,
        catalog,
        store,
        sink,
        notification_timeout=notification_timeout
    )
    return engine, store


def of_type(alerts, alert_type):
    return [a for a in alerts if a.type == alert_type]


@pytest.mark.asyncio
class TestAlertStore:
    def _alert(self, owner, alert_id, severity=RiskSeverity.MEDIUM, strategy_id="lend-1",
               alert_type=AlertType.LIQUIDATION):
        return RiskAlert(id=alert_id, owner=owner, severity=severity, type=alert_type,
                         message="m", strategy_id=strategy_id)

    async def test_duplicate_unread_is_suppressed(self, sample_wallet_address):
        store = AlertStore()
        assert await store.add_or_suppress(sample_wallet_address, self._alert(sample_wallet_address, "a1"))
        assert await store.add_or_suppress(sample_wallet_address, self._alert(sample_wallet_address, "a2")) is None
        assert await store.unread_count(sample_wallet_address) == 1

    async def test_read_alert_allows_new_one(self, sample_wallet_address):
        store = AlertStore()
        await store.add_or_suppress(sample_wallet_address, self._alert(sample_wallet_address, "a1"))
        await store.mark_read(sample_wallet_address, "a1")

        created = await store.add_or_suppress(sample_wallet_address, self._alert(sample_wallet_address, "a2"))
        assert created.id == "a2"
        assert len(await store.get_alerts(sample_wallet_address)) == 2

    async def test_higher_severity_escalates_in_place(self, sample_wallet_address):
        store = AlertStore()
        await store.add_or_suppress(sample_wallet_address, self._alert(sample_wallet_address, "a1"))
        escalated = await store.add_or_suppress(
            sample_wallet_address, self._alert(sample_wallet_address, "a2", RiskSeverity.CRITICAL)
        )

        assert escalated.id == "a1"
        assert escalated.severity == RiskSeverity.CRITICAL
        alerts = await store.get_alerts(sample_wallet_address)
        assert len(alerts) == 1

    async def test_mark_read_decrements_exactly_once(self, sample_wallet_address):
        store = AlertStore()
        await store.add_or_suppress(sample_wallet_address, self._alert(sample_wallet_address, "a1"))
        await store.add_or_suppress(sample_wallet_address,
                                    self._alert(sample_wallet_address, "a2", alert_type=AlertType.POSITION_DECLINE))
        before = await store.unread_count(sample_wallet_address)

        assert await store.mark_read(sample_wallet_address, "a1") is True
        assert await store.unread_count(sample_wallet_address) == before - 1

        assert await store.mark_read(sample_wallet_address, "a1") is False
        assert await store.mark_read(sample_wallet_address, "missing") is False
        assert await store.unread_count(sample_wallet_address) == before - 1

    async def test_owners_are_partitioned(self, sample_wallet_address):
        other_wallet = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"

        store = AlertStore()
        await store.add_or_suppress(sample_wallet_address, self._alert(sample_wallet_address, "a1"))
        assert await store.unread_count(other_wallet) == 0
        assert await store.clear(other_wallet) == 0
        assert await store.clear(sample_wallet_address) == 1
        assert await store.get_alerts(sample_wallet_address) == []

    async def test_per_owner_locks_are_released(self, sample_wallet_address):
        store = AlertStore()
        assert await store.unread_count(sample_wallet_address) == 0
        assert sample_wallet_address not in store._locks

        await store.add_or_suppress(sample_wallet_address, self._alert(sample_wallet_address, "a1"))
        assert sample_wallet_address in store._locks

        await store.clear(sample_wallet_address)
        assert sample_wallet_address not in store._locks


@pytest.mark.asyncio
class TestAlertEngine:
    async def test_critical_liquidation_once_then_suppressed(self, fake_adapter, catalog, make_position,
                                                             make_snapshot, recording_sink, sample_wallet_address):
        adapter = fake_adapter("solend", positions=[make_position(health_factor=1.02)])
        engine, store = build_engine([adapter], catalog, make_snapshot(), recording_sink)

        first = await engine.run_cycle(sample_wallet_address)
        liquidation = of_type(first, AlertType.LIQUIDATION)
        assert len(liquidation) == 1
        assert liquidation[0].severity == RiskSeverity.CRITICAL
        assert [a.label for a in liquidation[0].actions] == ["Add Collateral", "Reduce Debt"]

        second = await engine.run_cycle(sample_wallet_address)
        assert second == []
        assert len(of_type(await store.get_alerts(sample_wallet_address), AlertType.LIQUIDATION)) == 1

    @pytest.mark.parametrize("health_factor,severity", [
        (1.2, RiskSeverity.MEDIUM), (1.1, RiskSeverity.HIGH), (1.04, RiskSeverity.CRITICAL)
    ])
    async def test_liquidation_severity_bands(self, fake_adapter, catalog, make_position, make_snapshot,
                                              recording_sink, sample_wallet_address, health_factor, severity):
        adapter = fake_adapter("solend", positions=[make_position(health_factor=health_factor)])
        engine, _ = build_engine([adapter], catalog, make_snapshot(), recording_sink)

        alerts = of_type(await engine.run_cycle(sample_wallet_address), AlertType.LIQUIDATION)
        assert alerts[0].severity == severity

    async def test_worsening_health_escalates(self, fake_adapter, catalog, make_position, make_snapshot,
                                              recording_sink, sample_wallet_address):
        adapter = fake_adapter("solend", positions=[make_position(health_factor=1.2)])
        engine, store = build_engine([adapter], catalog, make_snapshot(), recording_sink)

        first = of_type(await engine.run_cycle(sample_wallet_address), AlertType.LIQUIDATION)
        adapter.positions = [make_position(health_factor=1.02)]
        second = of_type(await engine.run_cycle(sample_wallet_address), AlertType.LIQUIDATION)

        assert second[0].id == first[0].id
        assert second[0].severity == RiskSeverity.CRITICAL
        stored = of_type(await store.get_alerts(sample_wallet_address), AlertType.LIQUIDATION)
        assert len(stored) == 1
        levels = [n["severity"] for n in recording_sink.notifications if n["title"] == "Liquidation Risk"]
        assert levels == [NotificationLevel.WARNING, NotificationLevel.ERROR]

    async def test_position_decline(self, fake_adapter, catalog, make_position, make_snapshot,
                                    recording_sink, sample_wallet_address):
        positions = [make_position(value=700, initial=1000, health_factor=2.0),
                     make_position("stake-1", value=2000, initial=2000)]
        engine, _ = build_engine([fake_adapter("solend", positions=positions)], catalog, make_snapshot(), recording_sink)

        declines = of_type(await engine.run_cycle(sample_wallet_address), AlertType.POSITION_DECLINE)
        assert len(declines) == 1
        assert declines[0].severity == RiskSeverity.HIGH
        assert declines[0].strategy_id == "lend-1"

    async def test_zero_initial_value_skips_decline(self, fake_adapter, catalog, make_position, make_snapshot,
                                                    recording_sink, sample_wallet_address):
        position = make_position(value=0, initial=0, health_factor=2.0)
        engine, _ = build_engine([fake_adapter("solend", positions=[position])], catalog, make_snapshot(), recording_sink)
        assert of_type(await engine.run_cycle(sample_wallet_address), AlertType.POSITION_DECLINE) == []

    async def test_unknown_initial_value_skips_decline(self, fake_adapter, catalog, make_position, make_snapshot,
                                                       recording_sink, sample_wallet_address):
        position = make_position(value=100, health_factor=2.0).model_copy(update={"initial_investment": None})
        engine, _ = build_engine([fake_adapter("solend", positions=[position])], catalog, make_snapshot(), recording_sink)
        assert of_type(await engine.run_cycle(sample_wallet_address), AlertType.POSITION_DECLINE) == []

    async def test_concentration_alert_per_position(self, fake_adapter, catalog, make_position, make_snapshot,
                                                    recording_sink, sample_wallet_address):
        positions = [make_position(value=600, health_factor=2.0), make_position("stake-1", value=400)]
        engine, _ = build_engine([fake_adapter("solend", positions=positions)], catalog, make_snapshot(), recording_sink)

        alerts = of_type(await engine.run_cycle(sample_wallet_address), AlertType.PROTOCOL_RISK)

        assert len(alerts) == 1
        assert alerts[0].strategy_id == "lend-1"
        assert alerts[0].details["risk_type"] == "concentration"
        assert recording_sink.notifications[0]["severity"] == NotificationLevel.INFO
        assert recording_sink.notifications[0]["title"] == "Concentration Risk"

    async def test_market_volatility_and_impermanent_loss(self, fake_adapter, catalog, make_position,
                                                          make_snapshot, recording_sink, sample_wallet_address):
        positions = [make_position("lp-1", value=500, sub_type="liquidity"),
                     make_position("stake-1", value=500)]
        market = make_snapshot(trend=MarketTrend.BEAR, volatility=8.0)
        engine, _ = build_engine([fake_adapter("raydium", positions=positions)], catalog, market, recording_sink)

        alerts = await engine.run_cycle(sample_wallet_address)

        volatility = of_type(alerts, AlertType.MARKET_VOLATILITY)
        assert len(volatility) == 1
        assert volatility[0].severity == RiskSeverity.HIGH
        assert volatility[0].strategy_id is None

        il = of_type(alerts, AlertType.IMPERMANENT_LOSS)
        assert len(il) == 1
        assert il[0].severity == RiskSeverity.HIGH

    async def test_unknown_strategy_is_skipped(self, fake_adapter, catalog, make_position, make_snapshot,
                                               recording_sink, sample_wallet_address):
        position = make_position("unknown-strategy", health_factor=1.01)
        engine, _ = build_engine([fake_adapter("solend", positions=[position])], catalog, make_snapshot(), recording_sink)
        assert await engine.run_cycle(sample_wallet_address) == []

    async def test_cycle_skipped_without_market_snapshot(self, fake_adapter, catalog, make_position,
                                                         recording_sink, sample_wallet_address):
        adapter = fake_adapter("solend", positions=[make_position(health_factor=1.01)])
        engine, store = build_engine([adapter], catalog, sink=recording_sink,
                                     analyzer_error=InsufficientData("no SOL price"))

        assert await engine.run_cycle(sample_wallet_address) == []
        assert await store.unread_count(sample_wallet_address) == 0

    async def test_cycle_skipped_when_every_adapter_fails(self, fake_adapter, catalog, make_snapshot,
                                                          recording_sink, sample_wallet_address):
        adapter = fake_adapter("solend", error=UpstreamUnavailable("down"))
        engine, _ = build_engine([adapter], catalog, make_snapshot(), recording_sink)
        assert await engine.run_cycle(sample_wallet_address) == []

    async def test_partial_failure_still_alerts(self, fake_adapter, catalog, make_position, make_snapshot,
                                                recording_sink, sample_wallet_address):
        adapters = [fake_adapter("solend", positions=[make_position(health_factor=1.01)]),
                    fake_adapter("raydium", error=UpstreamUnavailable("down"))]
        engine, _ = build_engine(adapters, catalog, make_snapshot(), recording_sink)
        assert of_type(await engine.run_cycle(sample_wallet_address), AlertType.LIQUIDATION)

    async def test_sink_failure_does_not_propagate(self, fake_adapter, catalog, make_position, make_snapshot, recording_sink,
                                                   sample_wallet_address):
        recording_sink.error = RuntimeError("smtp down")
        adapter = fake_adapter("solend", positions=[make_position(health_factor=1.01)])
        engine, store = build_engine([adapter], catalog, make_snapshot(), recording_sink)

        alerts = await engine.run_cycle(sample_wallet_address)
        assert of_type(alerts, AlertType.LIQUIDATION)
        assert await store.unread_count(sample_wallet_address) == len(alerts)

    async def test_sink_timeout_does_not_propagate(self, fake_adapter, catalog, make_position, make_snapshot, recording_sink,
                                                   sample_wallet_address):
        recording_sink.delay = 1.0
        adapter = fake_adapter("solend", positions=[make_position(health_factor=1.01)])
        engine, _ = build_engine([adapter], catalog, make_snapshot(), recording_sink,
                                 notification_timeout=0.01)

        alerts = await asyncio.wait_for(engine.run_cycle(sample_wallet_address), timeout=2)
        assert of_type(alerts, AlertType.LIQUIDATION)
