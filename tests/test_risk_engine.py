"""Tests for the risk chain and its controllers."""

import asyncio
import threading
from datetime import datetime
from decimal import Decimal
from unittest.mock import AsyncMock, Mock

import pytest

from stablearb.config import AppConfig, RiskControllerType
from stablearb.errors import ExchangeError, InvalidConfigError
from stablearb.models import ArbitrageStatus, QuoteCurrency
from stablearb.risk_engine import (AbnormalPriceController, DailyLossLimitController,
                                   ExposureController, FrequencyController, PairBlacklistController,
                                   RiskController, RiskManager, TimeWindowController,
                                   build_risk_manager)
from stablearb.simulated_exchange import SimulatedExchange

D = Decimal


class StaticController(RiskController):
    def __init__(self, name, allowed=True, reason=None, error=None):
        self.name = name
        self.allowed = allowed
        self.reason = reason
        self.error = error
        self.recorded = []
        self.resets = 0

    async def check_opportunity(self, opportunity):
        if self.error:
            raise self.error
        return self.allowed, self.reason

    async def record_result(self, result):
        self.recorded.append(result)

    async def reset(self):
        self.resets += 1


class TestRiskManager:

    @pytest.mark.asyncio
    async def test_empty_chain_allows(self, make_opportunity):
        allowed, reasons = await RiskManager().validate_opportunity(make_opportunity())
        assert allowed
        assert reasons == []

    @pytest.mark.asyncio
    async def test_collects_every_reason_in_order(self, make_opportunity):
        """No short-circuit: all denials are reported in controller order"""
        manager = RiskManager([
            StaticController("A", False, "first"),
            StaticController("B", True),
            StaticController("C", False, "second"),
        ])
        allowed, reasons = await manager.validate_opportunity(make_opportunity())
        assert not allowed
        assert reasons == ["A: first", "C: second"]

    @pytest.mark.asyncio
    async def test_controller_error_is_a_denial(self, make_opportunity):
        manager = RiskManager([StaticController("Boom", error=RuntimeError("exploded"))])
        allowed, reasons = await manager.validate_opportunity(make_opportunity())
        assert not allowed
        assert reasons == ["Boom: risk check error - exploded"]

    @pytest.mark.asyncio
    async def test_record_and_reset_fan_out(self, make_result):
        a, b = StaticController("A"), StaticController("B")
        manager = RiskManager([a, b])
        result = make_result()
        await manager.record_result(result)
        await manager.reset_all()
        assert a.recorded == [result] and b.recorded == [result]
        assert a.resets == b.resets == 1


class TestDailyLossLimit:

    @pytest.fixture
    def controller(self, clock):
        return DailyLossLimitController(D("100"), clock=clock)

    @pytest.mark.asyncio
    async def test_loss_limit(self, controller, make_opportunity, make_result):
        """Two -50 losses sit at the limit, a third crosses it"""
        opp = make_opportunity()
        await controller.record_result(make_result(profit="-50"))
        await controller.record_result(make_result(profit="-50"))
        allowed, _ = await controller.check_opportunity(opp)
        assert allowed

        await controller.record_result(make_result(profit="-50"))
        allowed, reason = await controller.check_opportunity(opp)
        assert not allowed
        assert "daily loss limit" in reason

    @pytest.mark.asyncio
    async def test_only_completed_results_count(self, controller, make_result):
        await controller.record_result(make_result(profit="-500", status=ArbitrageStatus.FAILED))
        assert controller.daily_pnl == D("0")

    @pytest.mark.asyncio
    async def test_midnight_resets(self, controller, clock, make_opportunity, make_result):
        await controller.record_result(make_result(profit="-150"))
        clock.advance(86400)
        allowed, _ = await controller.check_opportunity(make_opportunity())
        assert allowed
        assert controller.daily_pnl == D("0")

    @pytest.mark.asyncio
    async def test_reset(self, controller, make_result):
        await controller.record_result(make_result(profit="12.5"))
        await controller.reset()
        assert controller.daily_pnl == D("0")


class TestAbnormalPrice:

    @pytest.fixture
    def controller(self, clock):
        return AbnormalPriceController("BTC", window_size=5, abnormal_threshold=D("10"),
                                       cooldown_period=60, clock=clock)

    @pytest.mark.asyncio
    async def test_jump_is_denied(self, controller, make_opportunity):
        for price in ("50000", "50100", "50200"):
            controller.add_price("BTCUSDT", D(price))

        allowed, _ = await controller.check_opportunity(make_opportunity("50300", "50400"))
        assert allowed

        controller.add_price("BTCUSDT", D("60000"))
        allowed, reason = await controller.check_opportunity(make_opportunity("60000", "60100"))
        assert not allowed
        assert "abnormal price movement" in reason

    @pytest.mark.asyncio
    async def test_cooldown_denies_everything(self, controller, clock, make_opportunity):
        """After a denial every check within the cooldown is denied"""
        controller.add_price("BTCUSDT", D("100"))
        allowed, _ = await controller.check_opportunity(make_opportunity("200", "201"))
        assert not allowed

        for _ in range(3):
            clock.advance(19)
            allowed, reason = await controller.check_opportunity(make_opportunity("100", "100.1"))
            assert not allowed
            assert "cooldown" in reason

        clock.advance(4)
        _, reason = await controller.check_opportunity(make_opportunity("100", "100.1"))
        assert reason is None or "cooldown" not in reason

    @pytest.mark.asyncio
    async def test_prices_recorded_per_leg(self, controller, make_opportunity):
        await controller.check_opportunity(make_opportunity("100", "101", buy_quote=QuoteCurrency.USDC))
        symbols = [(s, p) for _, s, p in controller._history]
        assert symbols == [("BTCUSDC", D("100")), ("BTCUSDT", D("101"))]

    def test_ring_is_capped(self, controller):
        for i in range(25):
            controller.add_price("BTCUSDT", D(100 + i))
        assert len(controller._history) == 10

    @pytest.mark.asyncio
    async def test_reset_clears_cooldown(self, controller, make_opportunity):
        controller.add_price("BTCUSDT", D("100"))
        await controller.check_opportunity(make_opportunity("200", "201"))
        await controller.reset()
        allowed, _ = await controller.check_opportunity(make_opportunity("100", "100.1"))
        assert allowed


class TestExposure:

    @pytest.fixture
    def exchange(self):
        exchange = SimulatedExchange()
        exchange.set_balance("BTC", "1.5")
        return exchange

    @pytest.mark.asyncio
    async def test_limit(self, exchange, make_opportunity):
        controller = ExposureController(exchange)
        controller.set_max_exposure("BTC", D("2"))

        allowed, reason = await controller.check_opportunity(
            make_opportunity("50000", "50025", max_trade_amount="50000"))
        assert not allowed
        assert "exposure" in reason

        allowed, _ = await controller.check_opportunity(
            make_opportunity("50000", "50025", max_trade_amount="10000"))
        assert allowed
        assert controller.positions["BTC"] == D("1.5")

    @pytest.mark.asyncio
    async def test_unconfigured_asset_allowed(self, exchange, make_opportunity):
        controller = ExposureController(exchange, {"ETH": D("1")})
        allowed, _ = await controller.check_opportunity(make_opportunity(max_trade_amount="1000000"))
        assert allowed

    @pytest.mark.asyncio
    async def test_balance_error_denies_through_manager(self, make_opportunity):
        client = Mock()
        client.get_account_balance = AsyncMock(side_effect=ExchangeError("venue down"))
        manager = RiskManager([ExposureController(client, {"BTC": D("5")})])
        allowed, reasons = await manager.validate_opportunity(make_opportunity())
        assert not allowed
        assert "risk check error" in reasons[0]

    @pytest.mark.asyncio
    async def test_reset_clears_positions(self, exchange, make_opportunity):
        controller = ExposureController(exchange, {"BTC": D("5")})
        await controller.check_opportunity(make_opportunity())
        await controller.reset()
        assert controller.positions == {}


class TestTimeWindow:

    def at(self, *args):
        moment = datetime(*args)
        return lambda: moment

    @pytest.mark.asyncio
    async def test_inside_and_outside(self, make_opportunity):
        # 2024-05-01 is a Wednesday
        inside = TimeWindowController(9, 0, 17, 0, now=self.at(2024, 5, 1, 12, 0))
        outside = TimeWindowController(9, 0, 17, 0, now=self.at(2024, 5, 1, 18, 0))
        assert (await inside.check_opportunity(make_opportunity()))[0]
        allowed, reason = await outside.check_opportunity(make_opportunity())
        assert not allowed
        assert "outside trading window" in reason

    @pytest.mark.asyncio
    async def test_bounds_are_inclusive(self, make_opportunity):
        edge = TimeWindowController(9, 0, 17, 0, now=self.at(2024, 5, 1, 17, 0, 30))
        assert (await edge.check_opportunity(make_opportunity()))[0]

    @pytest.mark.asyncio
    async def test_wraps_midnight(self, make_opportunity):
        for hour, minute, expected in ((23, 0, True), (5, 59, True), (12, 0, False)):
            controller = TimeWindowController(22, 0, 6, 0, now=self.at(2024, 5, 1, hour, minute))
            allowed, _ = await controller.check_opportunity(make_opportunity())
            assert allowed is expected

    @pytest.mark.asyncio
    async def test_weekend(self, make_opportunity):
        # 2024-05-04 is a Saturday
        closed = TimeWindowController(trade_on_weekends=False, now=self.at(2024, 5, 4, 12, 0))
        opened = TimeWindowController(trade_on_weekends=True, now=self.at(2024, 5, 4, 12, 0))
        allowed, reason = await closed.check_opportunity(make_opportunity())
        assert not allowed and "weekend" in reason
        assert (await opened.check_opportunity(make_opportunity()))[0]

    def test_invalid_hours(self):
        with pytest.raises(InvalidConfigError):
            TimeWindowController(24, 0, 17, 0)
        with pytest.raises(InvalidConfigError):
            TimeWindowController(9, 60, 17, 0)


class TestFrequency:

    @pytest.fixture
    def controller(self, clock):
        return FrequencyController(min_interval_seconds=30, max_trades_per_timeframe=2,
                                   timeframe_seconds=600, clock=clock)

    @pytest.mark.asyncio
    async def test_min_interval(self, controller, clock, make_opportunity, make_result):
        await controller.record_result(make_result())
        allowed, reason = await controller.check_opportunity(make_opportunity())
        assert not allowed
        assert "trade frequency too high" in reason

        clock.advance(30)
        assert (await controller.check_opportunity(make_opportunity()))[0]

    @pytest.mark.asyncio
    async def test_window_count(self, controller, clock, make_opportunity, make_result):
        await controller.record_result(make_result())
        clock.advance(30)
        await controller.record_result(make_result(status=ArbitrageStatus.FAILED))
        clock.advance(30)
        allowed, reason = await controller.check_opportunity(make_opportunity())
        assert not allowed
        assert "max 2" in reason

        # first trade leaves the 600s window
        clock.advance(541)
        assert (await controller.check_opportunity(make_opportunity()))[0]

    @pytest.mark.asyncio
    async def test_non_terminal_results_ignored(self, controller, make_opportunity, make_result):
        await controller.record_result(make_result(status=ArbitrageStatus.BUY_ORDER_PLACED))
        assert (await controller.check_opportunity(make_opportunity()))[0]

    @pytest.mark.asyncio
    async def test_reset(self, controller, make_opportunity, make_result):
        await controller.record_result(make_result())
        await controller.reset()
        assert (await controller.check_opportunity(make_opportunity()))[0]


class TestPairBlacklist:

    @pytest.mark.asyncio
    async def test_blacklisted_pair_blocks_base_asset(self, make_opportunity):
        controller = PairBlacklistController(["BTCUSDT"])
        allowed, reason = await controller.check_opportunity(
            make_opportunity(buy_quote=QuoteCurrency.USDC))
        assert not allowed
        assert "BTC is blacklisted" in reason

        allowed, _ = await controller.check_opportunity(make_opportunity("3000", "3002.5", base_asset="ETH"))
        assert allowed

    @pytest.mark.asyncio
    async def test_add_and_remove_base_asset(self, make_opportunity):
        controller = PairBlacklistController()
        controller.add_base_asset("ETH")
        assert controller.get_blacklist() == {"ETHUSDT", "ETHUSDC"}
        for quote in QuoteCurrency:
            allowed, _ = await controller.check_opportunity(
                make_opportunity("3000", "3002.5", base_asset="ETH", buy_quote=quote))
            assert not allowed

        controller.remove_base_asset("ETH")
        assert controller.get_blacklist() == set()

    def test_invalid_entries_ignored(self):
        controller = PairBlacklistController(["BTCEUR", "ETHUSDC"])
        assert controller.get_blacklist() == {"ETHUSDC"}

    @pytest.mark.asyncio
    async def test_reset_clears(self, make_opportunity):
        controller = PairBlacklistController(["BTCUSDC"])
        controller.remove_from_blacklist("BTC", QuoteCurrency.USDT)
        assert controller.get_blacklist() == {"BTCUSDC"}
        await controller.reset()
        assert (await controller.check_opportunity(make_opportunity()))[0]


class TestConcurrentAccess:
    """Controllers shared between threads keep a serial-equivalent state"""

    THREADS = 8
    PER_THREAD = 250

    def run_threads(self, *targets):
        barrier = threading.Barrier(len(targets))
        errors = []

        def start(target):
            barrier.wait()
            try:
                asyncio.run(target())
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=start, args=(t,)) for t in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        assert not any(thread.is_alive() for thread in threads)
        assert errors == []

    def test_daily_loss_accumulates_every_record(self, clock, make_result):
        controller = DailyLossLimitController(D("1000000"), clock=clock)
        loss = make_result(profit="-0.01")

        async def record():
            for _ in range(self.PER_THREAD):
                await controller.record_result(loss)

        async def check():
            for _ in range(self.PER_THREAD):
                allowed, _ = await controller.check_opportunity(None)
                assert allowed

        self.run_threads(*([record] * self.THREADS), check)
        assert controller.daily_pnl == D("-0.01") * self.THREADS * self.PER_THREAD

    def test_daily_loss_with_interleaved_resets(self, clock, make_result):
        controller = DailyLossLimitController(D("1000000"), clock=clock)
        loss = make_result(profit="-0.01")
        total = self.THREADS * self.PER_THREAD

        async def record():
            for _ in range(self.PER_THREAD):
                await controller.record_result(loss)

        async def reset():
            for _ in range(50):
                await controller.reset()

        self.run_threads(*([record] * self.THREADS), reset)
        # equals some serial order: the records made after the last reset
        recorded = controller.daily_pnl / D("-0.01")
        assert recorded == recorded.to_integral_value()
        assert 0 <= recorded <= total

        asyncio.run(controller.reset())
        asyncio.run(controller.record_result(loss))
        assert controller.daily_pnl == D("-0.01")

    def test_frequency_counts_every_trade(self, clock, make_result):
        total = self.THREADS * self.PER_THREAD
        controller = FrequencyController(min_interval_seconds=0, max_trades_per_timeframe=total,
                                         timeframe_seconds=3600, clock=clock)
        done = make_result()

        async def record():
            for _ in range(self.PER_THREAD):
                await controller.record_result(done)

        async def check():
            for _ in range(self.PER_THREAD):
                await controller.check_opportunity(None)

        self.run_threads(*([record] * self.THREADS), check, check)
        allowed, reason = asyncio.run(controller.check_opportunity(None))
        assert not allowed
        assert reason.startswith(f"{total} trades")

        controller.max_trades_per_timeframe = total + 1
        assert asyncio.run(controller.check_opportunity(None)) == (True, None)


def test_build_risk_manager_order(scripted_client):
    config = AppConfig()
    config.risk.enabled = [RiskControllerType.BLACKLIST, RiskControllerType.FREQUENCY,
                           RiskControllerType.DAILY_LOSS, RiskControllerType.EXPOSURE,
                           RiskControllerType.TIME_WINDOW, RiskControllerType.ABNORMAL_PRICE]
    manager = build_risk_manager(config, scripted_client, "BTC")
    assert manager.controller_names == ["PairBlacklist", "Frequency", "DailyLossLimit",
                                        "Exposure", "TimeWindow", "AbnormalPrice"]
