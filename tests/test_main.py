"""Tests for command line parsing and config overrides."""

from decimal import Decimal

import pytest

from main import apply_overrides, build_parser, main
from stablearb.config import RiskControllerType, StrategyType, load_config
from stablearb.errors import InvalidConfigError


class TestParser:

    def test_simulate_defaults(self):
        args = build_parser().parse_args(["simulate"])
        assert args.command == "simulate"
        assert args.base_asset == "BTC"
        assert args.log_level == "info"
        assert args.runtime == 60
        assert args.volatility == 1.0
        assert args.opportunity_probability == 30.0
        assert args.min_profit is None

    def test_live_flags(self):
        args = build_parser().parse_args(
            ["--base-asset", "eth", "--strategies", "twap,depth", "live", "--sandbox",
             "--min-profit", "0.05", "--interval", "500"])
        assert args.sandbox is True
        assert args.min_profit == 0.05
        assert args.interval == 500

    def test_analytics_dates(self):
        args = build_parser().parse_args(
            ["analytics", "--time-range", "custom", "--start-date", "2024-01-01", "--end-date", "2024-01-31"])
        assert args.start_date.isoformat() == "2024-01-01"

    def test_bad_date(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["analytics", "--start-date", "01/02/2024"])

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestOverrides:

    def test_flags_win(self):
        args = build_parser().parse_args(
            ["--strategies", "trend", "--risk-controllers", "frequency,blacklist",
             "simulate", "--min-profit", "0.2", "--max-amount", "250"])
        config = apply_overrides(args, load_config(None))
        assert config.arbitrage.min_profit_percentage == Decimal("0.2")
        assert config.arbitrage.max_trade_amount_usdt == Decimal("250")
        assert config.strategy.enabled == [StrategyType.TREND]
        assert config.risk.enabled == [RiskControllerType.FREQUENCY, RiskControllerType.BLACKLIST]

    def test_unset_flags_keep_config(self):
        args = build_parser().parse_args(["simulate"])
        config = apply_overrides(args, load_config(None))
        assert config.arbitrage.check_interval_ms == 1000
        assert config.strategy.enabled == [StrategyType.SIMPLE]

    def test_unknown_strategy(self):
        args = build_parser().parse_args(["--strategies", "martingale", "simulate"])
        with pytest.raises(InvalidConfigError):
            apply_overrides(args, load_config(None))

    def test_invalid_amount(self):
        args = build_parser().parse_args(["simulate", "--max-amount", "-5"])
        with pytest.raises(InvalidConfigError):
            apply_overrides(args, load_config(None))


class TestMain:

    def test_unknown_strategy_exits(self):
        with pytest.raises(SystemExit) as exc:
            main(["--strategies", "martingale", "simulate"])
        assert exc.value.code == 2

    def test_custom_range_needs_dates(self):
        with pytest.raises(SystemExit):
            main(["analytics", "--time-range", "custom"])
